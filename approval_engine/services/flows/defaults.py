"""
Default approval flows installed on a fresh portal database.
"""

from loguru import logger

from ...models.approval import ApprovalFlow, ApprovalFlowStep, ApproverType
from .registry import FlowRegistry


def _role_step(order: int, name: str, role: str, *, final: bool = False,
               escalate_to: str | None = None, escalation_hours: int = 0,
               instructions: str | None = None) -> ApprovalFlowStep:
    return ApprovalFlowStep(
        step_order=order,
        name=name,
        approver_type=ApproverType.ROLE,
        approver_role_code=role,
        is_final=final,
        escalation_role_code=escalate_to,
        escalation_hours=escalation_hours,
        instructions=instructions,
    )


DEFAULT_FLOWS: list[tuple[ApprovalFlow, list[ApprovalFlowStep]]] = [
    (
        ApprovalFlow(code="LEAVE_DEFAULT", name="Default Leave Approval", target_type="leave", priority=0,
                     description="Standard leave approval: Branch Manager -> HR Manager"),
        [
            _role_step(1, "Branch Manager Review", "BRANCH_MANAGER", escalate_to="REGIONAL_MANAGER",
                       escalation_hours=48,
                       instructions="Review leave dates and check team availability before approving."),
            _role_step(2, "HR Final Approval", "HR_MANAGER", final=True,
                       instructions="Verify leave balance and policy compliance."),
        ],
    ),
    (
        ApprovalFlow(code="LEAVE_MANAGER", name="Manager Leave Approval", target_type="leave", priority=10,
                     position_id="BRANCH_MANAGER",
                     description="For branch managers: Regional Manager -> HR Manager"),
        [
            _role_step(1, "Regional Manager Review", "REGIONAL_MANAGER", escalate_to="CEO", escalation_hours=48),
            _role_step(2, "HR Final Approval", "HR_MANAGER", final=True),
        ],
    ),
    (
        ApprovalFlow(code="CLAIM_DEFAULT", name="Default Claim Approval", target_type="claim", priority=0,
                     description="Branch Manager -> HR Manager -> Accountant"),
        [
            _role_step(1, "Branch Manager Review", "BRANCH_MANAGER", escalate_to="REGIONAL_MANAGER",
                       escalation_hours=72),
            _role_step(2, "HR Review", "HR_MANAGER"),
            _role_step(3, "Accountant Payment Approval", "ACCOUNTANT", final=True),
        ],
    ),
    (
        ApprovalFlow(code="CLAIM_HIGH_VALUE", name="High Value Claim Approval", target_type="claim", priority=0,
                     description="Requested explicitly by flow code for high value claims"),
        [
            _role_step(1, "Branch Manager Review", "BRANCH_MANAGER"),
            _role_step(2, "Regional Manager Review", "REGIONAL_MANAGER"),
            _role_step(3, "Accountant Review", "ACCOUNTANT"),
            _role_step(4, "HR Final Approval", "HR_MANAGER", final=True),
        ],
    ),
    (
        ApprovalFlow(code="STAFF_LOAN_DEFAULT", name="Default Staff Loan Approval", target_type="staff_loan",
                     priority=0, description="Branch Manager -> HR Manager -> Accountant -> CEO"),
        [
            _role_step(1, "Branch Manager Review", "BRANCH_MANAGER"),
            _role_step(2, "HR Review", "HR_MANAGER"),
            _role_step(3, "Accountant Review", "ACCOUNTANT"),
            _role_step(4, "CEO Approval", "CEO", final=True),
        ],
    ),
    (
        ApprovalFlow(code="SALARY_ADVANCE_DEFAULT", name="Salary Advance Approval", target_type="salary_advance",
                     priority=0, description="Branch Manager -> HR Manager -> Accountant"),
        [
            _role_step(1, "Branch Manager Review", "BRANCH_MANAGER"),
            _role_step(2, "HR Review", "HR_MANAGER"),
            _role_step(3, "Accountant Disbursement", "ACCOUNTANT", final=True),
        ],
    ),
    (
        ApprovalFlow(code="PETTY_CASH_REPLENISHMENT_DEFAULT", name="Petty Cash Replenishment Approval",
                     target_type="petty_cash_replenishment", priority=0,
                     description="Regional Manager -> Accountant"),
        [
            _role_step(1, "Regional Manager Review", "REGIONAL_MANAGER", escalate_to="CEO", escalation_hours=48),
            _role_step(2, "Accountant Disbursement", "ACCOUNTANT", final=True),
        ],
    ),
]


def seed_default_flows(registry: FlowRegistry) -> int:
    """
    Install DEFAULT_FLOWS, skipping codes that already exist.

    Returns:
        Number of flows created
    """
    created = 0
    for flow, steps in DEFAULT_FLOWS:
        if registry.get_flow_by_code(flow.code) is not None:
            continue
        registry.create_flow(flow, steps)
        created += 1

    logger.info("Approval flows seeded", created=created, defined=len(DEFAULT_FLOWS))
    return created
