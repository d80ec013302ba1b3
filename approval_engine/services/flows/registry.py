"""
Flow registry: storage, validation and selection of approval flows.

A flow is treated as an immutable snapshot once any instance references it.
Structural edits (steps, target type, scope) are then refused with
FlowInUse; administrators create a new flow and deactivate the old one.
Activation, priority, name and description only influence future
selection and may always change.
"""

from typing import Any, Optional

from loguru import logger

from ...core.config import settings
from ...models.approval import ApprovalFlow, ApprovalFlowStep, ApproverType
from ..errors import FlowInUse, FlowNotFound, MalformedFlow, NoApplicableFlow
from ..storage.approval_store_base import ApprovalStoreBase

PRIORITY_HIGHEST_WINS = "highest"
PRIORITY_LOWEST_WINS = "lowest"

# Changing these alters how instances are routed
STRUCTURAL_FIELDS = frozenset({"target_type", "branch_id", "region_id", "department_id", "position_id"})


def validate_steps(steps: list[ApprovalFlowStep], flow_label: str = "flow") -> list[ApprovalFlowStep]:
    """
    Check step templates and return them sorted by step_order.

    Raises:
        MalformedFlow: empty flow, non-positive or duplicate step_order, no
            final step, a final step that is not the last one, or an
            incomplete approver configuration
    """
    if not steps:
        raise MalformedFlow(f"{flow_label} has no steps configured")

    ordered = sorted(steps, key=lambda s: s.step_order)
    seen: set[int] = set()
    for step in ordered:
        if step.step_order < 1:
            raise MalformedFlow(f"{flow_label}: step_order must be positive (got {step.step_order})")
        if step.step_order in seen:
            raise MalformedFlow(f"{flow_label}: duplicate step_order {step.step_order}")
        seen.add(step.step_order)

        if step.approver_type == ApproverType.ROLE and not step.approver_role_code:
            raise MalformedFlow(f"{flow_label}: step {step.step_order} needs approver_role_code")
        if step.approver_type == ApproverType.SPECIFIC_USER and not step.specific_approver_id:
            raise MalformedFlow(f"{flow_label}: step {step.step_order} needs specific_approver_id")
        if step.approver_type == ApproverType.MANAGER_CHAIN_LEVEL_N and (step.approver_level or 0) < 1:
            raise MalformedFlow(f"{flow_label}: step {step.step_order} needs approver_level >= 1")
        if step.escalation_hours < 0:
            raise MalformedFlow(f"{flow_label}: step {step.step_order} has negative escalation_hours")

    finals = [s for s in ordered if s.is_final]
    if not finals:
        raise MalformedFlow(f"{flow_label} has no final step")
    if len(finals) > 1 or finals[0] is not ordered[-1]:
        raise MalformedFlow(f"{flow_label}: only the last step may be final")

    return ordered


class FlowRegistry:
    """Holds flow definitions keyed by target type and selects the flow for new requests."""

    def __init__(self, store: ApprovalStoreBase, priority_order: Optional[str] = None):
        self.store = store
        self.priority_order = (priority_order or settings.flow_priority_order).lower()
        if self.priority_order not in (PRIORITY_HIGHEST_WINS, PRIORITY_LOWEST_WINS):
            raise ValueError(f"Unknown flow priority order: {self.priority_order}")

    # ------------------------------------------------------------- selection

    def _sort_key(self, flow: ApprovalFlow) -> tuple[int, int]:
        priority = -flow.priority if self.priority_order == PRIORITY_HIGHEST_WINS else flow.priority
        return (priority, flow.id)

    def select_flow(
        self,
        target_type: str,
        profile: Optional[dict[str, Any]] = None,
        flow_code: Optional[str] = None,
    ) -> ApprovalFlow:
        """
        Pick the single flow that governs a new request.

        Args:
            target_type: Business object type (claim, leave, staff_loan, ...)
            profile: Requester org attributes used to match scoped flows
            flow_code: Explicit flow requested by the caller

        Raises:
            NoApplicableFlow: nothing active matches
        """
        if flow_code:
            flow = self.store.get_flow_by_code(flow_code)
            if flow is None or not flow.is_active or flow.target_type != target_type:
                raise NoApplicableFlow(f"No active approval flow '{flow_code}' for '{target_type}'")
            return flow

        profile = profile or {}
        candidates = [
            flow for flow in self.store.list_flows(target_type=target_type, active_only=True)
            if flow.matches_scope(profile)
        ]
        if not candidates:
            raise NoApplicableFlow(f"No active approval flow found for '{target_type}'")

        selected = min(candidates, key=self._sort_key)
        logger.debug(
            "Selected approval flow",
            target_type=target_type,
            flow_code=selected.code,
            candidates=len(candidates),
        )
        return selected

    def load_steps(self, flow_id: int) -> list[ApprovalFlowStep]:
        """Return the validated steps of a flow, sorted by step_order."""
        flow = self.get_flow(flow_id)
        return validate_steps(self.store.get_flow_steps(flow_id), f"Flow {flow.code}")

    # ---------------------------------------------------------------- admin

    def get_flow(self, flow_id: int) -> ApprovalFlow:
        flow = self.store.get_flow(flow_id)
        if flow is None:
            raise FlowNotFound(f"Approval flow {flow_id} not found")
        return flow

    def get_flow_by_code(self, code: str) -> Optional[ApprovalFlow]:
        return self.store.get_flow_by_code(code)

    def list_flows(self, target_type: Optional[str] = None, active_only: bool = True) -> list[ApprovalFlow]:
        flows = self.store.list_flows(target_type=target_type, active_only=active_only)
        return sorted(flows, key=lambda f: (f.target_type, *self._sort_key(f)))

    def create_flow(self, flow: ApprovalFlow, steps: list[ApprovalFlowStep]) -> ApprovalFlow:
        if self.store.get_flow_by_code(flow.code) is not None:
            raise MalformedFlow(f"Flow code '{flow.code}' already exists")
        ordered = validate_steps(steps, f"Flow {flow.code}")
        created = self.store.add_flow(flow.model_copy(update={"version": 1}), ordered)
        logger.info("Approval flow created", flow_id=created.id, code=created.code, steps=len(ordered))
        return created

    def _ensure_unreferenced(self, flow: ApprovalFlow) -> None:
        references = self.store.count_flow_references(flow.id)
        if references:
            raise FlowInUse(
                f"Flow {flow.code} is referenced by {references} approval(s); "
                f"create a new flow and deactivate this one instead"
            )

    def update_flow(
        self,
        flow_id: int,
        changes: dict[str, Any],
        steps: Optional[list[ApprovalFlowStep]] = None,
    ) -> ApprovalFlow:
        """
        Change flow attributes and, optionally, replace its steps.

        Structural edits (scope, target type, steps) bump the version once,
        however many of them arrive together.
        """
        flow = self.get_flow(flow_id)
        changes = {k: v for k, v in changes.items() if k not in ("id", "code", "version", "created_at", "updated_at")}
        ordered = validate_steps(steps, f"Flow {flow.code}") if steps is not None else None
        if ordered is not None or STRUCTURAL_FIELDS & changes.keys():
            self._ensure_unreferenced(flow)
            changes["version"] = flow.version + 1
        if ordered is not None:
            self.store.replace_flow_steps(flow_id, ordered)
        updated = self.store.update_flow(flow_id, changes)
        logger.info(
            "Approval flow updated",
            flow_id=flow_id,
            fields=sorted(changes),
            steps=len(ordered) if ordered is not None else None,
        )
        return updated

    def replace_steps(self, flow_id: int, steps: list[ApprovalFlowStep]) -> list[ApprovalFlowStep]:
        flow = self.get_flow(flow_id)
        self._ensure_unreferenced(flow)
        ordered = validate_steps(steps, f"Flow {flow.code}")
        self.store.replace_flow_steps(flow_id, ordered)
        self.store.update_flow(flow_id, {"version": flow.version + 1})
        logger.info("Approval flow steps replaced", flow_id=flow_id, steps=len(ordered))
        return ordered

    def add_step(self, flow_id: int, step: ApprovalFlowStep) -> list[ApprovalFlowStep]:
        """
        Insert a step at its step_order, shifting later steps down.

        With step_order 0 a final step is appended and takes over the final
        flag; any other step goes in just before the current final step.
        """
        existing = self.store.get_flow_steps(flow_id)
        position = step.step_order
        if position < 1:
            if existing and existing[-1].is_final and not step.is_final:
                position = existing[-1].step_order
            else:
                position = max((s.step_order for s in existing), default=0) + 1

        steps = [
            s.model_copy(update={"step_order": s.step_order + 1}) if s.step_order >= position else s
            for s in existing
        ]
        if step.is_final:
            steps = [s.model_copy(update={"is_final": False}) for s in steps]
        return self.replace_steps(flow_id, [*steps, step.model_copy(update={"step_order": position})])

    def remove_step(self, flow_id: int, step_order: int) -> list[ApprovalFlowStep]:
        existing = self.store.get_flow_steps(flow_id)
        remaining = [s for s in existing if s.step_order != step_order]
        if len(remaining) == len(existing):
            raise FlowNotFound(f"Flow {flow_id} has no step {step_order}")
        return self.replace_steps(flow_id, remaining)

    def activate(self, flow_id: int) -> ApprovalFlow:
        self.get_flow(flow_id)
        return self.store.update_flow(flow_id, {"is_active": True})

    def deactivate(self, flow_id: int) -> ApprovalFlow:
        self.get_flow(flow_id)
        return self.store.update_flow(flow_id, {"is_active": False})

    def delete_flow(self, flow_id: int) -> None:
        flow = self.get_flow(flow_id)
        self._ensure_unreferenced(flow)
        self.store.delete_flow(flow_id)
        logger.info("Approval flow deleted", flow_id=flow_id, code=flow.code)
