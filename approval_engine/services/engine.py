"""
Approval engine: the state machine that drives approval instances.

An instance is PENDING at one step_order until it reaches a terminal state
(APPROVED, REJECTED, CANCELLED). Every mutation is computed from a snapshot
and handed to the store as an InstanceTransition guarded on the instance's
status and current step, so concurrent callers deciding the same step can
never both succeed. Events are published and completion handlers run only
after the store has committed.
"""

import uuid
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timedelta, UTC
from typing import Callable, Iterable, Optional

from loguru import logger

from ..core.config import settings
from ..models.approval import (
    APPROVER_ACTIONS,
    ApprovalCompleted,
    ApprovalDecision,
    ApprovalFlowStep,
    ApprovalInstance,
    ApprovalStats,
    ApprovalStepInstance,
    ApproverType,
    DecisionAction,
    InstanceSnapshot,
    InstanceStatus,
    InstanceTransition,
    StepStatus,
    StepUpdate,
)
from .errors import (
    ApprovalError,
    DuplicateInstance,
    InstanceAlreadyTerminal,
    InstanceNotFound,
    InvalidDecision,
    NoEligibleApprover,
    NotAuthorized,
    ResolutionError,
    StepMismatch,
)
from .events.event_publisher import (
    ApprovalEvent,
    EventSink,
    InstanceApproved,
    InstanceCancelled,
    InstanceCreated,
    InstanceHalted,
    InstanceRejected,
    InstanceReturned,
    StepAdvanced,
    StepDelegated,
    StepEscalated,
    StepReassigned,
)
from .flows.registry import FlowRegistry
from .org import OrgDirectoryBase
from .resolver import ApproverResolver
from .storage.approval_store_base import ApprovalStoreBase

SYSTEM_ACTOR = "system"

CompletionHandler = Callable[[ApprovalCompleted], None]


@dataclass
class _Activation:
    """Outcome of moving an instance onto the next actionable step."""

    step_order: int
    skipped: list[int] = field(default_factory=list)
    approvers: set[str] = field(default_factory=set)
    halt_reason: Optional[str] = None
    completed: bool = False


class ApprovalEngine:
    """
    Runs approval instances against their flows.

    Usage:
        engine = ApprovalEngine(store, registry, ApproverResolver(org), sink, org)
        instance = engine.submit("claim", "CLM-1001", requester_id="u-17")
        engine.decide(instance.id, "u-3", DecisionAction.APPROVE)
    """

    def __init__(
        self,
        store: ApprovalStoreBase,
        registry: FlowRegistry,
        resolver: ApproverResolver,
        event_sink: EventSink,
        org: OrgDirectoryBase,
        *,
        admin_roles: Optional[Iterable[str]] = None,
        require_rejection_comment: Optional[bool] = None,
    ):
        self.store = store
        self.registry = registry
        self.resolver = resolver
        self.event_sink = event_sink
        self.org = org
        self.admin_roles = set(admin_roles) if admin_roles is not None else settings.admin_roles
        self.require_rejection_comment = (
            settings.require_rejection_comment
            if require_rejection_comment is None
            else require_rejection_comment
        )
        self._completion_handlers: dict[str, list[CompletionHandler]] = defaultdict(list)

    # ------------------------------------------------------------- helpers

    @staticmethod
    def _now() -> datetime:
        return datetime.now(UTC)

    def _load(self, instance_id: str) -> ApprovalInstance:
        instance = self.store.get_instance(instance_id)
        if instance is None:
            raise InstanceNotFound(f"Approval instance {instance_id} not found")
        return instance

    def _templates(self, instance: ApprovalInstance) -> dict[int, ApprovalFlowStep]:
        return {s.step_order: s for s in self.registry.load_steps(instance.flow_id)}

    def _current_approvers(self, instance: ApprovalInstance, step: ApprovalFlowStep) -> set[str]:
        delegates = self.store.get_delegates(instance.id, step.step_order)
        return self.resolver.resolve_approvers(step, instance.requester_id, delegates)

    def is_admin(self, user_id: str) -> bool:
        return self.org.is_active(user_id) and bool(self.org.get_user_roles(user_id) & self.admin_roles)

    def _fail(self, error: ApprovalError, instance_id: str) -> ApprovalError:
        """Attach the current snapshot to an error raised for an existing instance."""
        try:
            error.with_snapshot(self.get_instance(instance_id))
        except ApprovalError:
            pass
        return error

    def _plan_activation(
        self,
        instance_id: str,
        requester_id: str,
        templates: list[ApprovalFlowStep],
        start_index: int,
    ) -> _Activation:
        """
        Find the next step that can be acted on, starting at templates[start_index].

        Steps marked can_skip are skipped when nobody can approve them.
        Any other unresolvable step halts the instance there.
        """
        skipped: list[int] = []
        for step in templates[start_index:]:
            delegates = self.store.get_delegates(instance_id, step.step_order)
            try:
                approvers = self.resolver.resolve_approvers(step, requester_id, delegates)
            except ResolutionError as e:
                if step.can_skip:
                    logger.info(
                        "Skipping step with no eligible approver",
                        instance_id=instance_id,
                        step_order=step.step_order,
                        reason=e.message,
                    )
                    skipped.append(step.step_order)
                    continue
                logger.warning(
                    "Approval halted: no approver for step",
                    instance_id=instance_id,
                    step_order=step.step_order,
                    reason=e.kind,
                )
                return _Activation(step.step_order, skipped, halt_reason=f"{e.kind}: {e.message}")
            return _Activation(step.step_order, skipped, approvers=approvers)

        # Every remaining step was skipped
        return _Activation(templates[-1].step_order, skipped, completed=True)

    def _apply(self, transition: InstanceTransition) -> None:
        """Hand a transition to the store; map a lost race to a concurrency error."""
        if self.store.apply_transition(transition):
            return

        current = self.store.get_instance(transition.instance_id)
        logger.warning(
            "Approval transition rejected: state changed concurrently",
            instance_id=transition.instance_id,
            expected_step_order=transition.expected_step_order,
            status=current.status.value if current else None,
        )
        if current is not None and current.is_terminal:
            error: ApprovalError = InstanceAlreadyTerminal(
                f"Approval {transition.instance_id} is already {current.status.value}"
            )
        else:
            error = StepMismatch(
                f"Step {transition.expected_step_order} of approval {transition.instance_id} "
                f"was already decided"
            )
        raise self._fail(error, transition.instance_id)

    def _halt(self, instance: ApprovalInstance, error: ResolutionError) -> None:
        """
        Record that nobody can decide the instance's current step any more
        (e.g. every holder of the role was deactivated after activation).
        """
        reason = f"{error.kind}: {error.message}"
        if instance.is_terminal or instance.halt_reason == reason:
            return
        applied = self.store.apply_transition(InstanceTransition(
            instance_id=instance.id,
            expected_step_order=instance.current_step_order,
            changes={"halt_reason": reason},
        ))
        if not applied:
            return

        logger.warning(
            "Approval halted: current step lost its approvers",
            instance_id=instance.id,
            step_order=instance.current_step_order,
            reason=error.kind,
        )
        if instance.halt_reason is None:
            self._publish(InstanceHalted(**self._event_kwargs(
                instance, step_order=instance.current_step_order, reason=reason,
            )))

    def _decision(
        self,
        instance: ApprovalInstance,
        actor_id: str,
        action: DecisionAction,
        comment: Optional[str],
        now: datetime,
        delegate_to: Iterable[str] = (),
    ) -> ApprovalDecision:
        return ApprovalDecision(
            id=str(uuid.uuid4()),
            instance_id=instance.id,
            step_order=instance.current_step_order,
            actor_id=actor_id,
            action=action,
            comment=comment,
            delegate_to=sorted(delegate_to),
            created_at=now,
        )

    def _publish(self, event: ApprovalEvent) -> None:
        try:
            self.event_sink.publish(event)
        except Exception as e:
            logger.warning(
                f"Failed to publish {event.event_type}: {e}",
                instance_id=event.instance_id,
            )

    def _event_kwargs(self, instance: ApprovalInstance, **extra) -> dict:
        return {
            "instance_id": instance.id,
            "target_type": instance.target_type,
            "target_id": instance.target_id,
            "requester_id": instance.requester_id,
            **extra,
        }

    def _complete(self, instance: ApprovalInstance, actor_id: Optional[str], comment: Optional[str]) -> None:
        record = ApprovalCompleted(
            instance_id=instance.id,
            target_type=instance.target_type,
            target_id=instance.target_id,
            status=instance.status,
            actor_id=actor_id,
            comment=comment,
        )
        for handler in self._completion_handlers.get(instance.target_type, []):
            try:
                handler(record)
            except Exception:
                logger.exception(
                    "Completion handler failed",
                    instance_id=instance.id,
                    target_type=instance.target_type,
                )

    def register_completion_handler(self, target_type: str, handler: CompletionHandler) -> None:
        """Call `handler` whenever an instance for `target_type` reaches a terminal state."""
        self._completion_handlers[target_type].append(handler)

    # ------------------------------------------------------------- submit

    def submit(
        self,
        target_type: str,
        target_id: str,
        requester_id: str,
        *,
        is_urgent: bool = False,
        flow_code: Optional[str] = None,
    ) -> ApprovalInstance:
        """
        Start an approval for a business object.

        Raises:
            DuplicateInstance: the target already has a PENDING approval
            NoApplicableFlow / MalformedFlow: flow configuration problem
        """
        existing = self.store.find_active_instance(target_type, target_id)
        if existing is not None:
            raise self._fail(
                DuplicateInstance(
                    f"Active approval {existing.id} already exists for {target_type}/{target_id}",
                    existing_id=existing.id,
                ),
                existing.id,
            )

        profile = self.org.get_profile(requester_id)
        flow = self.registry.select_flow(target_type, profile, flow_code)
        templates = self.registry.load_steps(flow.id)

        instance_id = str(uuid.uuid4())
        now = self._now()
        activation = self._plan_activation(instance_id, requester_id, templates, 0)

        steps = []
        for template in templates:
            step = ApprovalStepInstance(instance_id=instance_id, step_order=template.step_order, name=template.name)
            if template.step_order in activation.skipped:
                step.status = StepStatus.SKIPPED
                step.decided_at = now
            elif template.step_order == activation.step_order and not activation.completed:
                step.activated_at = now
            steps.append(step)

        instance = ApprovalInstance(
            id=instance_id,
            flow_id=flow.id,
            flow_version=flow.version,
            target_type=target_type,
            target_id=target_id,
            requester_id=requester_id,
            status=InstanceStatus.APPROVED if activation.completed else InstanceStatus.PENDING,
            current_step_order=activation.step_order,
            is_urgent=is_urgent,
            halt_reason=activation.halt_reason,
            created_at=now,
            updated_at=now,
            completed_at=now if activation.completed else None,
        )

        try:
            self.store.create_instance(instance, steps)
        except DuplicateInstance as e:
            if e.existing_id:
                raise self._fail(e, e.existing_id)
            raise

        logger.info(
            "Approval submitted",
            instance_id=instance_id,
            target_type=target_type,
            target_id=target_id,
            flow_code=flow.code,
            step_order=instance.current_step_order,
            halted=instance.is_halted,
        )

        self._publish(InstanceCreated(**self._event_kwargs(
            instance,
            step_order=instance.current_step_order,
            actor_id=requester_id,
            flow_code=flow.code,
            current_approvers=sorted(activation.approvers),
        )))
        if activation.halt_reason:
            self._publish(InstanceHalted(**self._event_kwargs(
                instance, step_order=instance.current_step_order, reason=activation.halt_reason,
            )))
        if activation.completed:
            self._publish(InstanceApproved(**self._event_kwargs(instance, step_order=instance.current_step_order)))
            self._complete(instance, None, None)

        return instance

    # ------------------------------------------------------------- decide

    def decide(
        self,
        instance_id: str,
        actor_id: str,
        action: DecisionAction | str,
        comment: Optional[str] = None,
        *,
        delegate_to: Optional[Iterable[str]] = None,
        expected_step_order: Optional[int] = None,
    ) -> ApprovalInstance:
        """
        Apply an approver's decision to the current step.

        Args:
            instance_id: Approval instance id
            actor_id: User submitting the decision
            action: APPROVE, REJECT, DELEGATE or RETURN
            comment: Free text; required for REJECT (when configured) and RETURN
            delegate_to: Users added to the step's approvers (DELEGATE only)
            expected_step_order: Step the caller was shown; a different current
                step raises StepMismatch

        Returns:
            The instance after the transition

        Raises:
            InstanceNotFound, InstanceAlreadyTerminal, StepMismatch,
            NotAuthorized, InvalidDecision, ResolutionError subclasses
        """
        try:
            action = DecisionAction(action)
        except ValueError:
            raise InvalidDecision(f"Unknown approval action: {action}") from None
        if action not in APPROVER_ACTIONS:
            raise InvalidDecision(f"{action.value} cannot be submitted as an approver decision")

        instance = self._load(instance_id)
        if instance.is_terminal:
            raise self._fail(
                InstanceAlreadyTerminal(f"Approval {instance_id} is already {instance.status.value}"),
                instance_id,
            )

        step_order = instance.current_step_order
        if expected_step_order is not None and expected_step_order != step_order:
            raise self._fail(
                StepMismatch(f"Approval {instance_id} is at step {step_order}, not {expected_step_order}"),
                instance_id,
            )

        step_instances = {s.step_order: s for s in self.store.get_step_instances(instance_id)}
        if step_instances[step_order].status != StepStatus.PENDING:
            raise self._fail(StepMismatch(f"Step {step_order} of approval {instance_id} is already decided"), instance_id)

        templates = self._templates(instance)
        template = templates[step_order]
        try:
            approvers = self._current_approvers(instance, template)
        except ResolutionError as e:
            self._halt(instance, e)
            raise self._fail(e, instance_id)
        if actor_id not in approvers:
            raise self._fail(
                NotAuthorized(f"User {actor_id} is not an approver for step {step_order} ({template.name})"),
                instance_id,
            )

        comment = comment.strip() if comment else None
        now = self._now()

        if action == DecisionAction.APPROVE:
            return self._approve(instance, templates, actor_id, comment, now)
        if action == DecisionAction.REJECT:
            return self._reject(instance, actor_id, comment, now)
        if action == DecisionAction.DELEGATE:
            return self._delegate(instance, actor_id, comment, list(delegate_to or []), now)
        return self._return(instance, actor_id, comment, now)

    def _approve(
        self,
        instance: ApprovalInstance,
        templates: dict[int, ApprovalFlowStep],
        actor_id: str,
        comment: Optional[str],
        now: datetime,
    ) -> ApprovalInstance:
        step_order = instance.current_step_order
        ordered = [templates[k] for k in sorted(templates)]
        index = next(i for i, s in enumerate(ordered) if s.step_order == step_order)

        if templates[step_order].is_final or index == len(ordered) - 1:
            activation = _Activation(step_order, completed=True)
        else:
            activation = self._plan_activation(instance.id, instance.requester_id, ordered, index + 1)

        step_updates = [StepUpdate(
            step_order=step_order,
            status=StepStatus.APPROVED,
            decided_by=actor_id,
            decided_at=now,
            comment=comment,
        )]
        step_updates += [
            StepUpdate(step_order=k, status=StepStatus.SKIPPED, decided_at=now, comment="No eligible approver")
            for k in activation.skipped
        ]

        if activation.completed:
            changes = {
                "status": InstanceStatus.APPROVED,
                "current_step_order": activation.step_order,
                "halt_reason": None,
                "resolved_by": actor_id,
                "final_comment": comment,
                "completed_at": now,
            }
            activated = {}
        else:
            changes = {"current_step_order": activation.step_order, "halt_reason": activation.halt_reason}
            activated = {activation.step_order: now}

        self._apply(InstanceTransition(
            instance_id=instance.id,
            expected_step_order=step_order,
            changes=changes,
            step_updates=step_updates,
            activated_steps=activated,
            decision=self._decision(instance, actor_id, DecisionAction.APPROVE, comment, now),
        ))
        updated = self._load(instance.id)

        logger.info(
            "Approval decision applied",
            instance_id=instance.id,
            action=DecisionAction.APPROVE.value,
            step_order=step_order,
            status=updated.status.value,
            next_step_order=updated.current_step_order,
        )

        if activation.completed:
            self._publish(InstanceApproved(**self._event_kwargs(
                updated, step_order=step_order, actor_id=actor_id, comment=comment,
            )))
            self._complete(updated, actor_id, comment)
        else:
            self._publish(StepAdvanced(**self._event_kwargs(
                updated,
                step_order=activation.step_order,
                actor_id=actor_id,
                comment=comment,
                previous_step_order=step_order,
                skipped_steps=activation.skipped,
                current_approvers=sorted(activation.approvers),
            )))
            if activation.halt_reason:
                self._publish(InstanceHalted(**self._event_kwargs(
                    updated, step_order=activation.step_order, reason=activation.halt_reason,
                )))
        return updated

    def _reject(self, instance: ApprovalInstance, actor_id: str, comment: Optional[str], now: datetime) -> ApprovalInstance:
        if self.require_rejection_comment and not comment:
            raise self._fail(InvalidDecision("A comment is required when rejecting"), instance.id)

        step_order = instance.current_step_order
        self._apply(InstanceTransition(
            instance_id=instance.id,
            expected_step_order=step_order,
            changes={
                "status": InstanceStatus.REJECTED,
                "resolved_by": actor_id,
                "final_comment": comment,
                "completed_at": now,
            },
            step_updates=[StepUpdate(
                step_order=step_order,
                status=StepStatus.REJECTED,
                decided_by=actor_id,
                decided_at=now,
                comment=comment,
            )],
            decision=self._decision(instance, actor_id, DecisionAction.REJECT, comment, now),
        ))
        updated = self._load(instance.id)

        logger.info(
            "Approval decision applied",
            instance_id=instance.id,
            action=DecisionAction.REJECT.value,
            step_order=step_order,
            status=updated.status.value,
        )
        self._publish(InstanceRejected(**self._event_kwargs(
            updated, step_order=step_order, actor_id=actor_id, comment=comment,
        )))
        self._complete(updated, actor_id, comment)
        return updated

    def _delegate(
        self,
        instance: ApprovalInstance,
        actor_id: str,
        comment: Optional[str],
        delegate_to: list[str],
        now: datetime,
    ) -> ApprovalInstance:
        delegates = {d for d in delegate_to if d}
        if not delegates:
            raise self._fail(InvalidDecision("DELEGATE requires at least one delegate"), instance.id)
        if instance.requester_id in delegates:
            raise self._fail(InvalidDecision("An approval cannot be delegated to its requester"), instance.id)
        inactive = sorted(d for d in delegates if not self.org.is_active(d))
        if inactive:
            raise self._fail(InvalidDecision(f"Cannot delegate to inactive users: {', '.join(inactive)}"), instance.id)

        step_order = instance.current_step_order
        self._apply(InstanceTransition(
            instance_id=instance.id,
            expected_step_order=step_order,
            decision=self._decision(instance, actor_id, DecisionAction.DELEGATE, comment, now, delegates),
            delegates=sorted(delegates),
            delegate_step_order=step_order,
        ))
        updated = self._load(instance.id)

        logger.info(
            "Approval step delegated",
            instance_id=instance.id,
            step_order=step_order,
            actor_id=actor_id,
            delegates=len(delegates),
        )
        self._publish(StepDelegated(**self._event_kwargs(
            updated, step_order=step_order, actor_id=actor_id, comment=comment, delegate_to=sorted(delegates),
        )))
        return updated

    def _return(self, instance: ApprovalInstance, actor_id: str, comment: Optional[str], now: datetime) -> ApprovalInstance:
        if not comment:
            raise self._fail(InvalidDecision("A comment is required when returning for more information"), instance.id)

        step_order = instance.current_step_order
        self._apply(InstanceTransition(
            instance_id=instance.id,
            expected_step_order=step_order,
            decision=self._decision(instance, actor_id, DecisionAction.RETURN, comment, now),
        ))
        updated = self._load(instance.id)

        logger.info("Approval returned for more information", instance_id=instance.id, step_order=step_order)
        self._publish(InstanceReturned(**self._event_kwargs(
            updated, step_order=step_order, actor_id=actor_id, comment=comment,
        )))
        return updated

    # ------------------------------------------------- cancel / remediation

    def cancel(self, instance_id: str, actor_id: str, reason: Optional[str] = None) -> ApprovalInstance:
        """
        Cancel a pending approval.

        Only the requester or a holder of an administrator role may cancel.
        """
        instance = self._load(instance_id)
        if instance.is_terminal:
            raise self._fail(
                InstanceAlreadyTerminal(f"Approval {instance_id} is already {instance.status.value}"),
                instance_id,
            )
        if actor_id != instance.requester_id and not self.is_admin(actor_id):
            raise self._fail(NotAuthorized(f"User {actor_id} may not cancel approval {instance_id}"), instance_id)

        now = self._now()
        self._apply(InstanceTransition(
            instance_id=instance_id,
            expected_step_order=instance.current_step_order,
            changes={
                "status": InstanceStatus.CANCELLED,
                "resolved_by": actor_id,
                "final_comment": reason,
                "completed_at": now,
            },
        ))
        updated = self._load(instance_id)

        logger.info("Approval cancelled", instance_id=instance_id, actor_id=actor_id)
        self._publish(InstanceCancelled(**self._event_kwargs(
            updated, step_order=updated.current_step_order, actor_id=actor_id, comment=reason,
        )))
        self._complete(updated, actor_id, reason)
        return updated

    def escalate(self, instance_id: str, actor_id: str = SYSTEM_ACTOR, reason: Optional[str] = None) -> ApprovalInstance:
        """
        Add the current step's escalation role to its approvers.

        Called by the scheduled SLA job (actor "system") or an administrator.
        """
        instance = self._load(instance_id)
        if instance.is_terminal:
            raise self._fail(
                InstanceAlreadyTerminal(f"Approval {instance_id} is already {instance.status.value}"),
                instance_id,
            )
        if actor_id != SYSTEM_ACTOR and not self.is_admin(actor_id):
            raise self._fail(NotAuthorized(f"User {actor_id} may not escalate approvals"), instance_id)

        step_order = instance.current_step_order
        template = self._templates(instance)[step_order]
        if not template.escalation_role_code:
            raise self._fail(
                InvalidDecision(f"Step {step_order} ({template.name}) has no escalation role"),
                instance_id,
            )

        escalation_users = set(self.org.get_users_by_role(template.escalation_role_code))
        escalation_users.discard(instance.requester_id)
        if not escalation_users:
            raise self._fail(
                NoEligibleApprover(f"No active user holds escalation role {template.escalation_role_code}"),
                instance_id,
            )

        now = self._now()
        self._apply(InstanceTransition(
            instance_id=instance_id,
            expected_step_order=step_order,
            changes={"halt_reason": None},
            decision=self._decision(instance, actor_id, DecisionAction.ESCALATE, reason, now, escalation_users),
            delegates=sorted(escalation_users),
            delegate_step_order=step_order,
        ))
        updated = self._load(instance_id)

        logger.info(
            "Approval step escalated",
            instance_id=instance_id,
            step_order=step_order,
            role=template.escalation_role_code,
        )
        self._publish(StepEscalated(**self._event_kwargs(
            updated,
            step_order=step_order,
            actor_id=actor_id,
            comment=reason,
            escalation_role_code=template.escalation_role_code,
            delegate_to=sorted(escalation_users),
        )))
        return updated

    def reassign(
        self,
        instance_id: str,
        admin_id: str,
        approver_ids: Iterable[str],
        comment: Optional[str] = None,
    ) -> ApprovalInstance:
        """
        Administrative remediation: add approvers to the current step.

        Clears the halt state of an instance stuck on an unresolvable step.
        """
        instance = self._load(instance_id)
        if instance.is_terminal:
            raise self._fail(
                InstanceAlreadyTerminal(f"Approval {instance_id} is already {instance.status.value}"),
                instance_id,
            )
        if not self.is_admin(admin_id):
            raise self._fail(NotAuthorized(f"User {admin_id} may not reassign approvals"), instance_id)

        approvers = {a for a in approver_ids if a}
        approvers.discard(instance.requester_id)
        if not approvers:
            raise self._fail(InvalidDecision("Reassignment needs at least one approver other than the requester"), instance_id)

        step_order = instance.current_step_order
        now = self._now()
        self._apply(InstanceTransition(
            instance_id=instance_id,
            expected_step_order=step_order,
            changes={"halt_reason": None},
            decision=self._decision(instance, admin_id, DecisionAction.REASSIGN, comment, now, approvers),
            delegates=sorted(approvers),
            delegate_step_order=step_order,
        ))
        updated = self._load(instance_id)

        logger.info(
            "Approval step reassigned",
            instance_id=instance_id,
            step_order=step_order,
            admin_id=admin_id,
            was_halted=instance.is_halted,
        )
        self._publish(StepReassigned(**self._event_kwargs(
            updated, step_order=step_order, actor_id=admin_id, comment=comment, delegate_to=sorted(approvers),
        )))
        return updated

    # ------------------------------------------------------------- queries

    def get_instance(self, instance_id: str) -> InstanceSnapshot:
        instance = self._load(instance_id)
        steps = self.store.get_step_instances(instance_id)

        approvers: list[str] = []
        step_name = None
        if not instance.is_terminal:
            template = self._templates(instance).get(instance.current_step_order)
            if template is not None:
                step_name = template.name
                try:
                    approvers = sorted(self._current_approvers(instance, template))
                except ResolutionError as e:
                    self._halt(instance, e)
                    instance = self._load(instance_id)

        return InstanceSnapshot(
            instance=instance,
            steps=steps,
            decisions=self.store.get_decisions(instance_id),
            current_approvers=approvers,
            current_step_name=step_name,
        )

    def get_instance_by_target(self, target_type: str, target_id: str) -> Optional[InstanceSnapshot]:
        """Latest approval of a business object (active one if any)."""
        instances = self.store.find_instances(target_type=target_type, target_id=target_id)
        if not instances:
            return None
        active = [i for i in instances if not i.is_terminal]
        return self.get_instance((active or instances)[-1].id)

    def get_history(self, instance_id: str) -> list[ApprovalDecision]:
        self._load(instance_id)
        return self.store.get_decisions(instance_id)

    @staticmethod
    def _pending_order(instance: ApprovalInstance) -> tuple:
        return (not instance.is_urgent, instance.created_at)

    def list_pending(self, user_id: str) -> list[ApprovalInstance]:
        """Pending approvals the user can decide right now, urgent first then oldest."""
        results = []
        for instance in self.store.find_instances(status=InstanceStatus.PENDING):
            template = self._templates(instance).get(instance.current_step_order)
            if template is None:
                continue
            try:
                approvers = self._current_approvers(instance, template)
            except ResolutionError as e:
                self._halt(instance, e)
                continue
            if user_id in approvers:
                results.append(instance)
        return sorted(results, key=self._pending_order)

    def list_pending_for_role(self, role_code: str) -> list[ApprovalInstance]:
        """Pending approvals whose current step is assigned to a role."""
        results = []
        for instance in self.store.find_instances(status=InstanceStatus.PENDING):
            template = self._templates(instance).get(instance.current_step_order)
            if (
                template is not None
                and template.approver_type == ApproverType.ROLE
                and template.approver_role_code == role_code
            ):
                results.append(instance)
        return sorted(results, key=self._pending_order)

    def list_submitted(self, requester_id: str, status: Optional[InstanceStatus] = None) -> list[ApprovalInstance]:
        instances = self.store.find_instances(requester_id=requester_id, status=status)
        return sorted(instances, key=lambda i: i.created_at, reverse=True)

    def list_overdue(self, now: Optional[datetime] = None) -> list[ApprovalInstance]:
        """
        Pending approvals whose current step has been waiting longer than its
        escalation_hours. Read-only; the scheduled job decides whether to escalate.
        """
        now = now or self._now()
        overdue = []
        for instance in self.store.find_instances(status=InstanceStatus.PENDING):
            template = self._templates(instance).get(instance.current_step_order)
            if template is None or template.escalation_hours <= 0:
                continue
            step = next(
                (s for s in self.store.get_step_instances(instance.id) if s.step_order == instance.current_step_order),
                None,
            )
            since = (step.activated_at if step and step.activated_at else instance.created_at)
            if now - since >= timedelta(hours=template.escalation_hours):
                overdue.append(instance)
        return overdue

    def get_stats(self, actor_id: Optional[str] = None, now: Optional[datetime] = None) -> ApprovalStats:
        now = now or self._now()
        start_of_day = now.replace(hour=0, minute=0, second=0, microsecond=0)

        if actor_id is None:
            pending = len(self.store.find_instances(status=InstanceStatus.PENDING))
        else:
            pending = len(self.list_pending(actor_id))

        approved_today = len(self.store.list_decisions(
            since=start_of_day, actor_id=actor_id, action=DecisionAction.APPROVE,
        ))
        rejected_today = len(self.store.list_decisions(
            since=start_of_day, actor_id=actor_id, action=DecisionAction.REJECT,
        ))

        approved = self.store.find_instances(status=InstanceStatus.APPROVED)
        if actor_id is not None:
            approved = [i for i in approved if i.resolved_by == actor_id]
        durations = [
            (i.completed_at - i.created_at).total_seconds() / 3600
            for i in approved
            if i.completed_at is not None
        ]
        avg_hours = round(sum(durations) / len(durations), 1) if durations else 0.0

        return ApprovalStats(
            pending=pending,
            approved_today=approved_today,
            rejected_today=rejected_today,
            avg_approval_time_hours=avg_hours,
        )
