"""
Approver resolution.

Each approver type maps to one pure strategy function of
(step, requester, directory). The resolver dispatches on step.approver_type,
unions in any delegates recorded for the step, and always removes the
requester: nobody approves their own request.
"""

from typing import Callable, Iterable

from loguru import logger

from ..models.approval import ApprovalFlowStep, ApproverType
from .errors import (
    ChainExhausted,
    MalformedFlow,
    NoEligibleApprover,
    NoManagerAssigned,
    ResolutionError,
)
from .org import OrgDirectoryBase


def _resolve_role(step: ApprovalFlowStep, requester_id: str, org: OrgDirectoryBase) -> set[str]:
    if not step.approver_role_code:
        raise MalformedFlow(f"Step {step.step_order} is ROLE-based but has no approver_role_code")
    return set(org.get_users_by_role(step.approver_role_code))


def _resolve_specific_user(step: ApprovalFlowStep, requester_id: str, org: OrgDirectoryBase) -> set[str]:
    if not step.specific_approver_id:
        raise MalformedFlow(f"Step {step.step_order} is SPECIFIC_USER but has no specific_approver_id")
    if not org.is_active(step.specific_approver_id):
        return set()
    return {step.specific_approver_id}


def _resolve_requester_manager(step: ApprovalFlowStep, requester_id: str, org: OrgDirectoryBase) -> set[str]:
    manager = org.get_manager(requester_id)
    if manager is None:
        raise NoManagerAssigned(f"Requester {requester_id} has no manager assigned")
    return {manager} if org.is_active(manager) else set()


def _resolve_manager_chain(step: ApprovalFlowStep, requester_id: str, org: OrgDirectoryBase) -> set[str]:
    depth = step.approver_level or 0
    if depth < 1:
        raise MalformedFlow(f"Step {step.step_order} is MANAGER_CHAIN_LEVEL_N but approver_level is {depth}")
    chain = org.get_manager_chain(requester_id, depth)
    if len(chain) < depth:
        raise ChainExhausted(
            f"Reporting chain of {requester_id} has {len(chain)} level(s), step needs {depth}",
            depth=depth,
            available=len(chain),
        )
    manager = chain[depth - 1]
    return {manager} if org.is_active(manager) else set()


STRATEGIES: dict[ApproverType, Callable[[ApprovalFlowStep, str, OrgDirectoryBase], set[str]]] = {
    ApproverType.ROLE: _resolve_role,
    ApproverType.SPECIFIC_USER: _resolve_specific_user,
    ApproverType.REQUESTER_MANAGER: _resolve_requester_manager,
    ApproverType.MANAGER_CHAIN_LEVEL_N: _resolve_manager_chain,
}


class ApproverResolver:
    """Computes the concrete set of users allowed to decide a step."""

    def __init__(self, org: OrgDirectoryBase):
        self.org = org

    def resolve_approvers(
        self,
        step: ApprovalFlowStep,
        requester_id: str,
        delegates: Iterable[str] = (),
    ) -> set[str]:
        """
        Resolve approvers for a step.

        Args:
            step: Step template from the instance's flow
            requester_id: User who submitted the target object
            delegates: Extra approvers recorded for this step (delegation,
                escalation or administrative reassignment)

        Returns:
            Non-empty set of user ids, never containing the requester

        Raises:
            NoManagerAssigned / ChainExhausted: org data cannot satisfy the
                step and no delegates exist
            NoEligibleApprover: the set is empty once the requester is removed
        """
        delegates = set(delegates)
        strategy = STRATEGIES[step.approver_type]

        try:
            approvers = strategy(step, requester_id, self.org)
        except ResolutionError:
            if not delegates:
                raise
            # Reassigned steps are decided by their delegates alone
            approvers = set()

        approvers |= delegates
        approvers.discard(requester_id)

        if not approvers:
            raise NoEligibleApprover(
                f"No eligible approver for step {step.step_order} ({step.name})"
            )

        logger.debug(
            "Resolved approvers",
            step_order=step.step_order,
            approver_type=step.approver_type.value,
            count=len(approvers),
        )
        return approvers

    def is_authorized(
        self,
        step: ApprovalFlowStep,
        requester_id: str,
        actor_id: str,
        delegates: Iterable[str] = (),
    ) -> bool:
        if actor_id == requester_id:
            return False
        return actor_id in self.resolve_approvers(step, requester_id, delegates)
