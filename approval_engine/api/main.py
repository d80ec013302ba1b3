from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from ..core.logging import setup_logging
from ..core.config import settings
from ..services.errors import ApprovalError
from .routers import approvals, health

logger = setup_logging()
app = FastAPI(title="Ops Portal Approval Engine")

STATUS_BY_CATEGORY = {
    "not_found": status.HTTP_404_NOT_FOUND,
    "authorization": status.HTTP_403_FORBIDDEN,
    "concurrency": status.HTTP_409_CONFLICT,
    "duplicate": status.HTTP_409_CONFLICT,
    "resolution": status.HTTP_409_CONFLICT,
    "configuration": status.HTTP_422_UNPROCESSABLE_ENTITY,
    "invalid": status.HTTP_422_UNPROCESSABLE_ENTITY,
}

# Flow exists and is valid, it is just referenced by approvals
STATUS_BY_KIND = {"FlowInUse": status.HTTP_409_CONFLICT}


@app.exception_handler(ApprovalError)
async def approval_error_handler(request: Request, exc: ApprovalError):
    code = STATUS_BY_KIND.get(exc.kind, STATUS_BY_CATEGORY.get(exc.category, status.HTTP_400_BAD_REQUEST))
    logger.warning(
        f"Approval request failed: {exc.message}",
        kind=exc.kind,
        category=exc.category,
        path=request.url.path,
    )
    return JSONResponse(status_code=code, content=exc.to_dict())


# Add custom exception handler for validation errors
@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    logger.error(f"Validation error: {exc.errors()}")
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={"detail": jsonable_encoder(exc.errors()), "body": str(await request.body())},
    )


# Configure CORS to allow portal frontend access
# CORS_ORIGINS can be set in .env as comma-separated list
# Example: CORS_ORIGINS=http://localhost:3000,https://portal.example.com
allowed_origins = [origin.strip() for origin in settings.cors_origins.split(",")]

app.add_middleware(
    CORSMiddleware,
    allow_origins=allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(health.router)
app.include_router(approvals.router)
