from pydantic import Field
from pydantic_settings import BaseSettings

class Settings(BaseSettings):
    app_name: str = Field("ops-portal-approvals", alias="APP_NAME")
    app_env: str = Field("dev", alias="APP_ENV")

    # Logging
    log_level: str = Field("INFO", alias="LOG_LEVEL")
    log_json: bool = Field(False, alias="LOG_JSON")

    # Storage backend: "sqlite" (persistent) or "memory" (demo/testing)
    approvals_storage: str = Field("sqlite", alias="APPROVALS_STORAGE")
    approvals_db_path: str = Field("approvals.db", alias="APPROVALS_DB_PATH")

    # Flow selection: "highest" = higher priority wins, "lowest" = lower priority wins
    flow_priority_order: str = Field("highest", alias="FLOW_PRIORITY_ORDER")
    seed_default_flows: bool = Field(True, alias="SEED_DEFAULT_FLOWS")

    # Roles allowed to cancel any request and to reassign halted steps (comma-separated)
    admin_role_codes: str = Field("CEO,HR_MANAGER", alias="ADMIN_ROLE_CODES")
    require_rejection_comment: bool = Field(True, alias="REQUIRE_REJECTION_COMMENT")

    # JSON file with staff records for the built-in org directory (optional)
    org_directory_path: str | None = Field(default=None, alias="ORG_DIRECTORY_PATH")

    # Azure Service Bus (lifecycle events for notification/audit consumers)
    service_bus_connection_string: str | None = Field(default=None, alias="SERVICE_BUS_CONNECTION_STRING")
    service_bus_entity_name: str = Field("approval-events", alias="SERVICE_BUS_ENTITY_NAME")

    # CORS allowed origins (comma-separated list for production deployment)
    cors_origins: str = Field("http://localhost:3000,http://127.0.0.1:3000", alias="CORS_ORIGINS")

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8", "populate_by_name": True}

    @property
    def admin_roles(self) -> set[str]:
        return {code.strip() for code in self.admin_role_codes.split(",") if code.strip()}

settings = Settings()
