"""
Data model for the approval workflow engine.

Flows and their steps are configuration owned by the FlowRegistry.
Instances, step instances, decisions and delegates are runtime state owned
by the ApprovalEngine and persisted through an ApprovalStore.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field


class ApproverType(str, Enum):
    """How the approvers of a step are resolved."""

    ROLE = "ROLE"
    SPECIFIC_USER = "SPECIFIC_USER"
    REQUESTER_MANAGER = "REQUESTER_MANAGER"
    MANAGER_CHAIN_LEVEL_N = "MANAGER_CHAIN_LEVEL_N"


class InstanceStatus(str, Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    CANCELLED = "CANCELLED"


class StepStatus(str, Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    SKIPPED = "SKIPPED"


class DecisionAction(str, Enum):
    APPROVE = "APPROVE"
    REJECT = "REJECT"
    DELEGATE = "DELEGATE"
    RETURN = "RETURN"        # Sent back to the requester for more information
    ESCALATE = "ESCALATE"    # SLA breach, escalation role added to the step
    REASSIGN = "REASSIGN"    # Administrative remediation of a halted step


TERMINAL_STATUSES = frozenset({
    InstanceStatus.APPROVED,
    InstanceStatus.REJECTED,
    InstanceStatus.CANCELLED,
})

# Actions a step approver may submit through decide()
APPROVER_ACTIONS = frozenset({
    DecisionAction.APPROVE,
    DecisionAction.REJECT,
    DecisionAction.DELEGATE,
    DecisionAction.RETURN,
})


class ApprovalFlowStep(BaseModel):
    flow_id: Optional[int] = None
    step_order: int
    name: str = "Approval Step"
    approver_type: ApproverType = ApproverType.ROLE
    approver_role_code: Optional[str] = None
    specific_approver_id: Optional[str] = None
    approver_level: Optional[int] = None
    is_final: bool = False
    can_skip: bool = False
    escalation_role_code: Optional[str] = None
    escalation_hours: int = 0
    instructions: Optional[str] = None

    model_config = {"frozen": True}


class ApprovalFlow(BaseModel):
    id: Optional[int] = None
    code: str
    name: str
    description: Optional[str] = None
    target_type: str
    is_active: bool = True
    priority: int = 0
    version: int = 1

    # Scope: None means the flow applies to every requester
    branch_id: Optional[str] = None
    region_id: Optional[str] = None
    department_id: Optional[str] = None
    position_id: Optional[str] = None

    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    model_config = {"frozen": True}

    def matches_scope(self, profile: dict[str, Any]) -> bool:
        """True when every scope attribute set on the flow equals the requester's."""
        for attr in ("branch_id", "region_id", "department_id", "position_id"):
            expected = getattr(self, attr)
            if expected is not None and profile.get(attr) != expected:
                return False
        return True


class ApprovalInstance(BaseModel):
    id: str
    flow_id: int
    flow_version: int = 1
    target_type: str
    target_id: str
    requester_id: str
    status: InstanceStatus = InstanceStatus.PENDING
    current_step_order: int
    is_urgent: bool = False
    halt_reason: Optional[str] = None
    resolved_by: Optional[str] = None
    final_comment: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    completed_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def is_halted(self) -> bool:
        return self.status == InstanceStatus.PENDING and self.halt_reason is not None


class ApprovalStepInstance(BaseModel):
    instance_id: str
    step_order: int
    name: str = "Approval Step"
    status: StepStatus = StepStatus.PENDING
    decided_by: Optional[str] = None
    decided_at: Optional[datetime] = None
    comment: Optional[str] = None
    activated_at: Optional[datetime] = None


class ApprovalDecision(BaseModel):
    id: str
    instance_id: str
    step_order: int
    actor_id: str
    action: DecisionAction
    comment: Optional[str] = None
    delegate_to: list[str] = Field(default_factory=list)
    created_at: datetime

    model_config = {"frozen": True}


class StepUpdate(BaseModel):
    """Conditional change of one step instance (applied only while it is PENDING)."""

    step_order: int
    status: StepStatus
    decided_by: Optional[str] = None
    decided_at: Optional[datetime] = None
    comment: Optional[str] = None


class InstanceTransition(BaseModel):
    """
    Everything one engine operation writes, applied by the store as a unit.

    The store applies it only if the instance is still in `expected_status`
    at `expected_step_order` and every step in `step_updates` is still
    PENDING; otherwise nothing is written.
    """

    instance_id: str
    expected_status: InstanceStatus = InstanceStatus.PENDING
    expected_step_order: int
    changes: dict[str, Any] = Field(default_factory=dict)
    step_updates: list[StepUpdate] = Field(default_factory=list)
    # Step orders that become current as part of this transition
    activated_steps: dict[int, datetime] = Field(default_factory=dict)
    decision: Optional[ApprovalDecision] = None
    delegates: list[str] = Field(default_factory=list)
    delegate_step_order: Optional[int] = None


class InstanceSnapshot(BaseModel):
    """Authoritative view of one instance, returned to callers and attached to errors."""

    instance: ApprovalInstance
    steps: list[ApprovalStepInstance]
    decisions: list[ApprovalDecision] = Field(default_factory=list)
    current_approvers: list[str] = Field(default_factory=list)
    current_step_name: Optional[str] = None

    def to_dict(self) -> dict:
        return self.model_dump(mode="json")


class ApprovalStats(BaseModel):
    pending: int
    approved_today: int
    rejected_today: int
    avg_approval_time_hours: float


class ApprovalCompleted(BaseModel):
    """Terminal outcome handed to the domain module that owns the target."""

    instance_id: str
    target_type: str
    target_id: str
    status: InstanceStatus
    actor_id: Optional[str] = None
    comment: Optional[str] = None
