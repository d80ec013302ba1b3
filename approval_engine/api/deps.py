from functools import lru_cache
from typing import Annotated

from fastapi import Header, HTTPException
from pydantic import BaseModel, Field

from ..core.config import settings
from ..models.approval import ApproverType
from ..services.engine import SYSTEM_ACTOR, ApprovalEngine
from ..services.events import create_event_publisher
from ..services.flows import FlowRegistry, seed_default_flows
from ..services.org import InMemoryOrgDirectory
from ..services.resolver import ApproverResolver
from ..services.storage import create_store


@lru_cache
def get_engine() -> ApprovalEngine:
    """Build the process-wide engine from settings (overridden in tests)."""
    store = create_store()
    registry = FlowRegistry(store)
    if settings.seed_default_flows:
        seed_default_flows(registry)

    if settings.org_directory_path:
        org = InMemoryOrgDirectory.from_json(settings.org_directory_path)
    else:
        org = InMemoryOrgDirectory()

    publisher = create_event_publisher(
        settings.service_bus_connection_string,
        settings.service_bus_entity_name,
    )
    return ApprovalEngine(store, registry, ApproverResolver(org), publisher, org)


def get_current_user(x_user_id: Annotated[str | None, Header()] = None) -> str:
    """Acting user, forwarded by the portal's auth gateway in X-User-Id."""
    if not x_user_id:
        raise HTTPException(status_code=401, detail="Missing X-User-Id header")
    # Reserved for the scheduled SLA job, which calls the engine directly
    if x_user_id == SYSTEM_ACTOR:
        raise HTTPException(status_code=403, detail=f"User id '{SYSTEM_ACTOR}' is reserved")
    return x_user_id


class StepRequest(BaseModel):
    step_order: int = 0
    name: str = "Approval Step"
    approver_type: ApproverType = ApproverType.ROLE
    approver_role_code: str | None = None
    specific_approver_id: str | None = None
    approver_level: int | None = None
    is_final: bool = False
    can_skip: bool = False
    escalation_role_code: str | None = None
    escalation_hours: int = 0
    instructions: str | None = None


class FlowCreateRequest(BaseModel):
    code: str
    name: str
    description: str | None = None
    target_type: str
    is_active: bool = True
    priority: int = 0
    branch_id: str | None = None
    region_id: str | None = None
    department_id: str | None = None
    position_id: str | None = None
    steps: list[StepRequest]


class FlowUpdateRequest(BaseModel):
    """Only the fields that are set are changed."""
    name: str | None = None
    description: str | None = None
    target_type: str | None = None
    priority: int | None = None
    branch_id: str | None = None
    region_id: str | None = None
    department_id: str | None = None
    position_id: str | None = None
    steps: list[StepRequest] | None = None


class SubmitRequest(BaseModel):
    target_type: str
    target_id: str
    is_urgent: bool = False
    flow_code: str | None = None


class DecisionRequest(BaseModel):
    comment: str | None = None
    expected_step_order: int | None = None


class DelegateRequest(DecisionRequest):
    delegate_to: list[str] = Field(min_length=1)


class CancelRequest(BaseModel):
    reason: str | None = None


class EscalateRequest(BaseModel):
    reason: str | None = None


class ReassignRequest(BaseModel):
    approver_ids: list[str] = Field(min_length=1)
    comment: str | None = None
