"""
Tests for the approval engine state machine.

Covers the claim scenarios from the portal (Branch Manager -> HR Manager ->
Accountant), rejection short-circuit, self-approval exclusion, delegation,
return-for-information, cancellation, halting and administrative
reassignment, auto-skip, escalation and the query surface.
"""

from datetime import timedelta
from unittest.mock import Mock

import pytest

from approval_engine.models.approval import (
    ApprovalFlow,
    ApprovalFlowStep,
    ApproverType,
    DecisionAction,
    InstanceStatus,
    StepStatus,
)
from approval_engine.services.engine import ApprovalEngine
from approval_engine.services.errors import (
    DuplicateInstance,
    InstanceAlreadyTerminal,
    InstanceNotFound,
    InvalidDecision,
    NoApplicableFlow,
    NoEligibleApprover,
    NotAuthorized,
    StepMismatch,
)
from approval_engine.services.flows import FlowRegistry, seed_default_flows
from approval_engine.services.resolver import ApproverResolver


def _approve_all(engine, instance_id, *actors):
    for actor in actors:
        engine.decide(instance_id, actor, DecisionAction.APPROVE)


# ------------------------------------------------------------------ scenarios

def test_claim_default_full_approval(engine, sink):
    """Three approvals walk the claim through every step to APPROVED"""
    instance = engine.submit("claim", "CLM-1001", "emp-1")

    assert instance.status == InstanceStatus.PENDING
    assert instance.current_step_order == 1
    snapshot = engine.get_instance(instance.id)
    assert [s.status for s in snapshot.steps] == [StepStatus.PENDING] * 3
    assert snapshot.current_approvers == ["bm-1", "bm-2"]
    assert snapshot.current_step_name == "Branch Manager Review"

    after_bm = engine.decide(instance.id, "bm-1", DecisionAction.APPROVE)
    assert after_bm.current_step_order == 2

    after_hr = engine.decide(instance.id, "hr-1", "APPROVE", "Policy ok")
    assert after_hr.current_step_order == 3

    final = engine.decide(instance.id, "acc-1", DecisionAction.APPROVE)
    assert final.status == InstanceStatus.APPROVED
    assert final.completed_at is not None
    assert final.resolved_by == "acc-1"

    steps = engine.get_instance(instance.id).steps
    assert [s.decided_by for s in steps] == ["bm-1", "hr-1", "acc-1"]
    assert [e.event_type for e in sink.events] == [
        "InstanceCreated", "StepAdvanced", "StepAdvanced", "InstanceApproved",
    ]


def test_rejection_short_circuits_remaining_steps(engine, sink):
    """HR rejection at step 2 ends the instance; step 3 never becomes current"""
    instance = engine.submit("claim", "CLM-1002", "emp-1")
    engine.decide(instance.id, "bm-2", DecisionAction.APPROVE)

    rejected = engine.decide(instance.id, "hr-1", DecisionAction.REJECT, "Receipts missing")

    assert rejected.status == InstanceStatus.REJECTED
    assert rejected.current_step_order == 2
    assert rejected.final_comment == "Receipts missing"

    steps = {s.step_order: s for s in engine.get_instance(instance.id).steps}
    assert steps[2].status == StepStatus.REJECTED
    assert steps[3].status == StepStatus.PENDING
    assert steps[3].activated_at is None

    with pytest.raises(InstanceAlreadyTerminal) as exc:
        engine.decide(instance.id, "acc-1", DecisionAction.APPROVE)
    assert exc.value.snapshot.instance.status == InstanceStatus.REJECTED
    assert sink.events[-1].event_type == "InstanceRejected"


def test_reject_requires_comment(engine):
    instance = engine.submit("claim", "CLM-1003", "emp-1")

    with pytest.raises(InvalidDecision):
        engine.decide(instance.id, "bm-1", DecisionAction.REJECT, "   ")

    assert engine.get_instance(instance.id).instance.status == InstanceStatus.PENDING
    assert engine.get_history(instance.id) == []


def test_reject_without_comment_when_not_required(build_engine, memory_store):
    engine = build_engine(memory_store, require_rejection_comment=False)
    instance = engine.submit("claim", "CLM-1004", "emp-1")

    rejected = engine.decide(instance.id, "bm-1", DecisionAction.REJECT)

    assert rejected.status == InstanceStatus.REJECTED


def test_unauthorized_actor_gets_snapshot(engine):
    instance = engine.submit("claim", "CLM-1005", "emp-1")

    with pytest.raises(NotAuthorized) as exc:
        engine.decide(instance.id, "acc-1", DecisionAction.APPROVE)

    error = exc.value
    assert error.category == "authorization"
    assert error.snapshot.instance.current_step_order == 1
    assert error.to_dict()["error"] == "NotAuthorized"
    assert engine.get_history(instance.id) == []


def test_requester_is_never_an_approver(engine):
    """A branch manager submitting a claim cannot approve it themselves"""
    instance = engine.submit("claim", "CLM-1006", "bm-1")

    assert engine.get_instance(instance.id).current_approvers == ["bm-2"]
    with pytest.raises(NotAuthorized):
        engine.decide(instance.id, "bm-1", DecisionAction.APPROVE)


def test_unknown_instance_and_action(engine):
    with pytest.raises(InstanceNotFound):
        engine.decide("missing", "bm-1", DecisionAction.APPROVE)

    instance = engine.submit("claim", "CLM-1007", "emp-1")
    with pytest.raises(InvalidDecision):
        engine.decide(instance.id, "bm-1", "SHRUG")
    with pytest.raises(InvalidDecision):
        engine.decide(instance.id, "bm-1", DecisionAction.ESCALATE)


def test_expected_step_order_mismatch(engine):
    instance = engine.submit("claim", "CLM-1008", "emp-1")
    engine.decide(instance.id, "bm-1", DecisionAction.APPROVE)

    with pytest.raises(StepMismatch) as exc:
        engine.decide(instance.id, "hr-1", DecisionAction.APPROVE, expected_step_order=1)

    assert exc.value.snapshot.instance.current_step_order == 2


def test_audit_trail_counts_only_successful_decisions(engine):
    instance = engine.submit("claim", "CLM-1009", "emp-1")

    engine.decide(instance.id, "bm-1", DecisionAction.DELEGATE, delegate_to=["rm-1"])
    with pytest.raises(NotAuthorized):
        engine.decide(instance.id, "hr-1", DecisionAction.APPROVE)
    engine.decide(instance.id, "rm-1", DecisionAction.APPROVE)
    with pytest.raises(StepMismatch):
        engine.decide(instance.id, "hr-1", DecisionAction.APPROVE, expected_step_order=1)
    engine.decide(instance.id, "hr-1", DecisionAction.APPROVE)

    history = engine.get_history(instance.id)
    assert [(d.step_order, d.actor_id, d.action) for d in history] == [
        (1, "bm-1", DecisionAction.DELEGATE),
        (1, "rm-1", DecisionAction.APPROVE),
        (2, "hr-1", DecisionAction.APPROVE),
    ]


# --------------------------------------------------------- submit / resubmit

def test_duplicate_submission_rejected(engine):
    first = engine.submit("claim", "CLM-2001", "emp-1")

    with pytest.raises(DuplicateInstance) as exc:
        engine.submit("claim", "CLM-2001", "emp-1")

    assert exc.value.existing_id == first.id
    assert exc.value.snapshot.instance.id == first.id


def test_resubmission_after_rejection_creates_new_instance(engine):
    first = engine.submit("claim", "CLM-2002", "emp-1")
    engine.decide(first.id, "bm-1", DecisionAction.REJECT, "Wrong cost centre")

    second = engine.submit("claim", "CLM-2002", "emp-1")

    assert second.id != first.id
    assert second.current_step_order == 1
    assert engine.get_instance_by_target("claim", "CLM-2002").instance.id == second.id
    assert engine.get_instance(first.id).instance.status == InstanceStatus.REJECTED


def test_no_applicable_flow(engine):
    with pytest.raises(NoApplicableFlow):
        engine.submit("gift_voucher", "GV-1", "emp-1")


def test_scoped_flow_selected_for_branch_managers(engine):
    """Leave requests from branch managers use the manager-specific flow"""
    manager_leave = engine.submit("leave", "LV-1", "bm-1")
    staff_leave = engine.submit("leave", "LV-2", "emp-1")

    manager_flow = engine.registry.get_flow(manager_leave.flow_id)
    staff_flow = engine.registry.get_flow(staff_leave.flow_id)
    assert manager_flow.code == "LEAVE_MANAGER"
    assert staff_flow.code == "LEAVE_DEFAULT"
    assert engine.get_instance(manager_leave.id).current_approvers == ["rm-1"]


def test_explicit_flow_code(engine):
    instance = engine.submit("claim", "CLM-2003", "emp-1", flow_code="CLAIM_HIGH_VALUE")

    assert len(engine.get_instance(instance.id).steps) == 4
    assert instance.flow_version == 1


# ---------------------------------------------------------------- delegation

def test_delegate_extends_current_step(engine, sink):
    instance = engine.submit("claim", "CLM-3001", "emp-1")

    delegated = engine.decide(
        instance.id, "bm-1", DecisionAction.DELEGATE, "On leave next week", delegate_to=["rm-1"],
    )

    assert delegated.current_step_order == 1
    assert "rm-1" in engine.get_instance(instance.id).current_approvers
    assert sink.events[-1].event_type == "StepDelegated"
    assert sink.events[-1].delegate_to == ["rm-1"]

    engine.decide(instance.id, "rm-1", DecisionAction.APPROVE)
    assert engine.get_instance(instance.id).instance.current_step_order == 2


def test_delegate_validation(engine, org):
    instance = engine.submit("claim", "CLM-3002", "emp-1")
    org.add_user("old-1", active=False)

    with pytest.raises(InvalidDecision):
        engine.decide(instance.id, "bm-1", DecisionAction.DELEGATE)
    with pytest.raises(InvalidDecision):
        engine.decide(instance.id, "bm-1", DecisionAction.DELEGATE, delegate_to=["emp-1"])
    with pytest.raises(InvalidDecision):
        engine.decide(instance.id, "bm-1", DecisionAction.DELEGATE, delegate_to=["old-1"])


def test_return_for_more_information(engine, sink):
    instance = engine.submit("claim", "CLM-3003", "emp-1")

    with pytest.raises(InvalidDecision):
        engine.decide(instance.id, "bm-1", DecisionAction.RETURN)

    returned = engine.decide(instance.id, "bm-1", DecisionAction.RETURN, "Attach the fuel receipt")

    assert returned.status == InstanceStatus.PENDING
    assert returned.current_step_order == 1
    assert sink.events[-1].event_type == "InstanceReturned"
    assert engine.get_history(instance.id)[-1].action == DecisionAction.RETURN


# -------------------------------------------------------------- cancellation

def test_requester_can_cancel(engine, sink):
    instance = engine.submit("claim", "CLM-4001", "emp-1")

    cancelled = engine.cancel(instance.id, "emp-1", "Submitted twice")

    assert cancelled.status == InstanceStatus.CANCELLED
    assert cancelled.resolved_by == "emp-1"
    assert sink.events[-1].event_type == "InstanceCancelled"
    with pytest.raises(InstanceAlreadyTerminal):
        engine.decide(instance.id, "bm-1", DecisionAction.APPROVE)
    with pytest.raises(InstanceAlreadyTerminal):
        engine.cancel(instance.id, "emp-1")


def test_cancel_permissions(engine):
    instance = engine.submit("claim", "CLM-4002", "emp-1")

    with pytest.raises(NotAuthorized):
        engine.cancel(instance.id, "bm-2")

    cancelled = engine.cancel(instance.id, "ceo-1", "Duplicate of CLM-4001")
    assert cancelled.status == InstanceStatus.CANCELLED


# ---------------------------------------------- halting and remediation

def test_no_eligible_approver_halts_instance(engine, org, sink):
    """Only branch manager is the requester: the instance halts for an admin"""
    org.deactivate("bm-2")

    instance = engine.submit("claim", "CLM-5001", "bm-1")

    assert instance.status == InstanceStatus.PENDING
    assert instance.is_halted
    assert instance.halt_reason.startswith("NoEligibleApprover")
    assert [e.event_type for e in sink.events] == ["InstanceCreated", "InstanceHalted"]

    with pytest.raises(NoEligibleApprover) as exc:
        engine.decide(instance.id, "rm-1", DecisionAction.APPROVE)
    assert exc.value.category == "resolution"
    assert exc.value.snapshot.instance.is_halted


def test_reassign_clears_halt(engine, org, sink):
    org.deactivate("bm-2")
    instance = engine.submit("claim", "CLM-5002", "bm-1")

    with pytest.raises(NotAuthorized):
        engine.reassign(instance.id, "bm-1", ["rm-1"])

    reassigned = engine.reassign(instance.id, "hr-1", ["rm-1"], "Regional manager covers BR-01")

    assert not reassigned.is_halted
    assert engine.get_instance(instance.id).current_approvers == ["rm-1"]
    assert sink.events[-1].event_type == "StepReassigned"

    engine.decide(instance.id, "rm-1", DecisionAction.APPROVE)
    assert engine.get_instance(instance.id).instance.current_step_order == 2
    actions = [d.action for d in engine.get_history(instance.id)]
    assert actions == [DecisionAction.REASSIGN, DecisionAction.APPROVE]


def test_deactivated_admin_loses_admin_rights(engine, org):
    instance = engine.submit("claim", "CLM-5007", "emp-1")
    org.deactivate("hr-1")

    assert not engine.is_admin("hr-1")
    with pytest.raises(NotAuthorized):
        engine.cancel(instance.id, "hr-1", "Leaving anyway")
    with pytest.raises(NotAuthorized):
        engine.reassign(instance.id, "hr-1", ["rm-1"])

    assert engine.is_admin("ceo-1")
    assert engine.get_instance(instance.id).instance.status == InstanceStatus.PENDING


def test_reassign_requires_someone_other_than_requester(engine):
    instance = engine.submit("claim", "CLM-5003", "emp-1")

    with pytest.raises(InvalidDecision):
        engine.reassign(instance.id, "ceo-1", ["emp-1"])


def test_halt_when_advancing_to_unresolvable_step(engine, org, sink):
    instance = engine.submit("claim", "CLM-5004", "emp-1")
    org.deactivate("hr-1")

    advanced = engine.decide(instance.id, "bm-1", DecisionAction.APPROVE)

    assert advanced.current_step_order == 2
    assert advanced.is_halted
    assert [e.event_type for e in sink.events][-2:] == ["StepAdvanced", "InstanceHalted"]


def test_active_step_losing_every_approver_halts(engine, org, sink):
    """Both branch managers leave after the claim reached them"""
    instance = engine.submit("claim", "CLM-5005", "emp-1")
    org.deactivate("bm-1")
    org.deactivate("bm-2")

    with pytest.raises(NoEligibleApprover) as exc:
        engine.decide(instance.id, "bm-1", DecisionAction.APPROVE)

    assert exc.value.snapshot.instance.is_halted
    halted = engine.get_instance(instance.id).instance
    assert halted.status == InstanceStatus.PENDING
    assert halted.halt_reason.startswith("NoEligibleApprover")
    assert len(sink.of_type("InstanceHalted")) == 1
    # No decision is recorded for the failed attempt
    assert engine.get_history(instance.id) == []

    # Asking again does not announce the halt twice
    with pytest.raises(NoEligibleApprover):
        engine.decide(instance.id, "bm-2", DecisionAction.APPROVE)
    assert len(sink.of_type("InstanceHalted")) == 1

    reassigned = engine.reassign(instance.id, "ceo-1", ["rm-1"])
    assert not reassigned.is_halted


def test_queries_record_a_halt_they_discover(engine, org, sink):
    instance = engine.submit("claim", "CLM-5006", "emp-1")
    org.deactivate("bm-1")
    org.deactivate("bm-2")

    assert engine.list_pending("bm-1") == []

    assert engine.get_instance(instance.id).instance.is_halted
    assert len(sink.of_type("InstanceHalted")) == 1


def _create_flow(engine, code, target_type, steps):
    return engine.registry.create_flow(
        ApprovalFlow(code=code, name=code.title(), target_type=target_type),
        steps,
    )


def test_can_skip_step_is_skipped_when_unresolvable(engine):
    _create_flow(engine, "EXPENSE_SKIP", "expense", [
        ApprovalFlowStep(step_order=1, name="Manager", approver_type=ApproverType.REQUESTER_MANAGER, can_skip=True),
        ApprovalFlowStep(step_order=2, name="Accounts", approver_role_code="ACCOUNTANT", is_final=True),
    ])

    # ceo-1 has no manager
    instance = engine.submit("expense", "EXP-1", "ceo-1")

    assert instance.current_step_order == 2
    assert not instance.is_halted
    steps = engine.get_instance(instance.id).steps
    assert steps[0].status == StepStatus.SKIPPED
    assert steps[1].activated_at is not None


def test_skipped_final_step_completes_instance(engine, sink):
    _create_flow(engine, "EXPENSE_CHAIN", "expense", [
        ApprovalFlowStep(step_order=1, name="Accounts", approver_role_code="ACCOUNTANT"),
        ApprovalFlowStep(
            step_order=2,
            name="Fifth-line manager",
            approver_type=ApproverType.MANAGER_CHAIN_LEVEL_N,
            approver_level=5,
            can_skip=True,
            is_final=True,
        ),
    ])
    instance = engine.submit("expense", "EXP-2", "emp-1")

    final = engine.decide(instance.id, "acc-1", DecisionAction.APPROVE)

    assert final.status == InstanceStatus.APPROVED
    assert engine.get_instance(instance.id).steps[1].status == StepStatus.SKIPPED
    assert sink.events[-1].event_type == "InstanceApproved"


def test_manager_chain_resolution(engine):
    _create_flow(engine, "EXPENSE_LEVEL_2", "expense", [
        ApprovalFlowStep(
            step_order=1,
            name="Second-line manager",
            approver_type=ApproverType.MANAGER_CHAIN_LEVEL_N,
            approver_level=2,
            is_final=True,
        ),
    ])

    instance = engine.submit("expense", "EXP-3", "emp-1")

    assert engine.get_instance(instance.id).current_approvers == ["rm-1"]


# ---------------------------------------------------------------- escalation

def test_overdue_and_escalation(engine, sink):
    instance = engine.submit("claim", "CLM-6001", "emp-1")

    assert engine.list_overdue(now=instance.created_at + timedelta(hours=1)) == []
    overdue = engine.list_overdue(now=instance.created_at + timedelta(hours=73))
    assert [i.id for i in overdue] == [instance.id]

    escalated = engine.escalate(instance.id, reason="SLA breached")

    assert escalated.current_step_order == 1
    assert "rm-1" in engine.get_instance(instance.id).current_approvers
    assert sink.events[-1].event_type == "StepEscalated"
    assert sink.events[-1].escalation_role_code == "REGIONAL_MANAGER"

    engine.decide(instance.id, "rm-1", DecisionAction.APPROVE)
    assert engine.get_history(instance.id)[0].action == DecisionAction.ESCALATE


def test_escalation_rules(engine):
    instance = engine.submit("claim", "CLM-6002", "emp-1")

    with pytest.raises(NotAuthorized):
        engine.escalate(instance.id, "bm-1")

    engine.decide(instance.id, "bm-1", DecisionAction.APPROVE)
    # HR review has no escalation role
    with pytest.raises(InvalidDecision):
        engine.escalate(instance.id)


# ------------------------------------------------------------------- queries

def test_list_pending_urgent_first(engine):
    normal = engine.submit("claim", "CLM-7001", "emp-1")
    urgent = engine.submit("claim", "CLM-7002", "emp-1", is_urgent=True)

    pending = engine.list_pending("bm-2")

    assert [i.id for i in pending] == [urgent.id, normal.id]
    assert engine.list_pending("acc-1") == []
    assert engine.list_pending("emp-1") == []
    assert len(engine.list_pending_for_role("BRANCH_MANAGER")) == 2
    assert engine.list_pending_for_role("ACCOUNTANT") == []


def test_list_submitted_newest_first(engine):
    first = engine.submit("claim", "CLM-7003", "emp-1")
    second = engine.submit("leave", "LV-7003", "emp-1")
    engine.cancel(first.id, "emp-1")

    assert [i.id for i in engine.list_submitted("emp-1")] == [second.id, first.id]
    assert [i.id for i in engine.list_submitted("emp-1", InstanceStatus.CANCELLED)] == [first.id]
    assert engine.list_submitted("bm-1") == []


def test_get_instance_by_target_missing(engine):
    assert engine.get_instance_by_target("claim", "nope") is None


def test_stats(engine):
    approved = engine.submit("claim", "CLM-7004", "emp-1")
    _approve_all(engine, approved.id, "bm-1", "hr-1", "acc-1")
    rejected = engine.submit("claim", "CLM-7005", "emp-1")
    engine.decide(rejected.id, "bm-1", DecisionAction.REJECT, "Not eligible")
    engine.submit("claim", "CLM-7006", "emp-1")

    mine = engine.get_stats("bm-1")
    assert mine.pending == 1
    assert mine.approved_today == 1
    assert mine.rejected_today == 1

    overall = engine.get_stats()
    assert overall.pending == 1
    assert overall.approved_today == 3
    assert overall.avg_approval_time_hours >= 0.0


# --------------------------------------------------- collaborator boundaries

def test_completion_handler_called_on_terminal_states(engine):
    outcomes = []
    engine.register_completion_handler("claim", outcomes.append)
    engine.register_completion_handler("leave", lambda record: outcomes.append("wrong type"))

    instance = engine.submit("claim", "CLM-8001", "emp-1")
    engine.decide(instance.id, "bm-1", DecisionAction.REJECT, "Duplicate")

    assert len(outcomes) == 1
    assert outcomes[0].status == InstanceStatus.REJECTED
    assert outcomes[0].target_id == "CLM-8001"
    assert outcomes[0].actor_id == "bm-1"


def test_failing_completion_handler_does_not_undo_transition(engine):
    engine.register_completion_handler("claim", Mock(side_effect=RuntimeError("claims module down")))
    instance = engine.submit("claim", "CLM-8002", "emp-1")

    cancelled = engine.cancel(instance.id, "emp-1")

    assert cancelled.status == InstanceStatus.CANCELLED


def test_publish_failure_does_not_roll_back(memory_store, org):
    """Approval state is authoritative; notification is best effort"""
    registry = FlowRegistry(memory_store, priority_order="highest")
    seed_default_flows(registry)
    failing_sink = Mock()
    failing_sink.publish.side_effect = ConnectionError("Service Bus unreachable")
    engine = ApprovalEngine(memory_store, registry, ApproverResolver(org), failing_sink, org,
                            admin_roles={"CEO"}, require_rejection_comment=True)

    instance = engine.submit("claim", "CLM-8003", "emp-1")
    advanced = engine.decide(instance.id, "bm-1", DecisionAction.APPROVE)

    assert advanced.current_step_order == 2
    assert failing_sink.publish.call_count == 2


def test_engine_on_sqlite_store(sqlite_engine):
    instance = sqlite_engine.submit("claim", "CLM-9001", "emp-1", is_urgent=True)
    _approve_all(sqlite_engine, instance.id, "bm-1", "hr-1", "acc-1")

    snapshot = sqlite_engine.get_instance(instance.id)
    assert snapshot.instance.status == InstanceStatus.APPROVED
    assert snapshot.instance.is_urgent is True
    assert len(snapshot.decisions) == 3
    assert snapshot.current_approvers == []
