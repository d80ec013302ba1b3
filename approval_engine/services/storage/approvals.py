"""
In-memory approval store (for demo and unit tests).
In production, use the SQLite store or a server database.
"""
import threading
from datetime import datetime, UTC
from typing import Any, Dict, Optional

from ...models.approval import (
    ApprovalDecision,
    ApprovalFlow,
    ApprovalFlowStep,
    ApprovalInstance,
    ApprovalStepInstance,
    DecisionAction,
    InstanceStatus,
    InstanceTransition,
    StepStatus,
)
from ..errors import DuplicateInstance
from .approval_store_base import ApprovalStoreBase, MUTABLE_FLOW_FIELDS, MUTABLE_INSTANCE_FIELDS


class InMemoryApprovalStore(ApprovalStoreBase):
    def __init__(self):
        self._lock = threading.RLock()
        self._reset()

    def _reset(self):
        self._flows: Dict[int, ApprovalFlow] = {}
        self._flow_steps: Dict[int, list[ApprovalFlowStep]] = {}
        self._next_flow_id = 1
        self._instances: Dict[str, ApprovalInstance] = {}
        self._steps: Dict[str, Dict[int, ApprovalStepInstance]] = {}
        self._decisions: list[ApprovalDecision] = []
        self._delegates: Dict[tuple[str, int], set[str]] = {}

    def add_flow(self, flow: ApprovalFlow, steps: list[ApprovalFlowStep]) -> ApprovalFlow:
        """Store a flow and its steps, assigning the next integer id"""
        with self._lock:
            now = datetime.now(UTC)
            stored = flow.model_copy(update={
                "id": self._next_flow_id,
                "created_at": now,
                "updated_at": now,
            })
            self._next_flow_id += 1
            self._flows[stored.id] = stored
            self._flow_steps[stored.id] = [s.model_copy(update={"flow_id": stored.id}) for s in steps]
            return stored

    def get_flow(self, flow_id: int) -> Optional[ApprovalFlow]:
        with self._lock:
            return self._flows.get(flow_id)

    def get_flow_by_code(self, code: str) -> Optional[ApprovalFlow]:
        with self._lock:
            return next((f for f in self._flows.values() if f.code == code), None)

    def list_flows(self, target_type: Optional[str] = None, active_only: bool = False) -> list[ApprovalFlow]:
        with self._lock:
            flows = sorted(self._flows.values(), key=lambda f: f.id)
        if target_type is not None:
            flows = [f for f in flows if f.target_type == target_type]
        if active_only:
            flows = [f for f in flows if f.is_active]
        return flows

    def get_flow_steps(self, flow_id: int) -> list[ApprovalFlowStep]:
        with self._lock:
            return sorted(self._flow_steps.get(flow_id, []), key=lambda s: s.step_order)

    def update_flow(self, flow_id: int, changes: dict[str, Any]) -> Optional[ApprovalFlow]:
        with self._lock:
            flow = self._flows.get(flow_id)
            if flow is None:
                return None
            updates = {k: v for k, v in changes.items() if k in MUTABLE_FLOW_FIELDS}
            updates["updated_at"] = datetime.now(UTC)
            self._flows[flow_id] = flow.model_copy(update=updates)
            return self._flows[flow_id]

    def replace_flow_steps(self, flow_id: int, steps: list[ApprovalFlowStep]) -> None:
        with self._lock:
            self._flow_steps[flow_id] = [s.model_copy(update={"flow_id": flow_id}) for s in steps]

    def delete_flow(self, flow_id: int) -> bool:
        with self._lock:
            if flow_id not in self._flows:
                return False
            del self._flows[flow_id]
            self._flow_steps.pop(flow_id, None)
            return True

    def count_flow_references(self, flow_id: int) -> int:
        with self._lock:
            return sum(1 for i in self._instances.values() if i.flow_id == flow_id)

    def create_instance(self, instance: ApprovalInstance, steps: list[ApprovalStepInstance]) -> None:
        """Store an instance and its materialized steps (one active instance per target)"""
        with self._lock:
            existing = self.find_active_instance(instance.target_type, instance.target_id)
            if existing is not None:
                raise DuplicateInstance(
                    f"Active approval {existing.id} already exists for "
                    f"{instance.target_type}/{instance.target_id}",
                    existing_id=existing.id,
                )
            self._instances[instance.id] = instance.model_copy()
            self._steps[instance.id] = {s.step_order: s.model_copy() for s in steps}

    def apply_transition(self, transition: InstanceTransition) -> bool:
        """Compare-and-set: validate every guard first, then write everything"""
        with self._lock:
            instance = self._instances.get(transition.instance_id)
            if instance is None:
                return False
            if instance.status != transition.expected_status:
                return False
            if instance.current_step_order != transition.expected_step_order:
                return False

            steps = self._steps[transition.instance_id]
            for update in transition.step_updates:
                step = steps.get(update.step_order)
                if step is None or step.status != StepStatus.PENDING:
                    return False

            changes = {k: v for k, v in transition.changes.items() if k in MUTABLE_INSTANCE_FIELDS}
            changes["updated_at"] = datetime.now(UTC)
            self._instances[transition.instance_id] = instance.model_copy(update=changes)

            for update in transition.step_updates:
                steps[update.step_order] = steps[update.step_order].model_copy(update={
                    "status": update.status,
                    "decided_by": update.decided_by,
                    "decided_at": update.decided_at,
                    "comment": update.comment,
                })
            for step_order, activated_at in transition.activated_steps.items():
                if step_order in steps:
                    steps[step_order] = steps[step_order].model_copy(update={"activated_at": activated_at})

            if transition.decision is not None:
                self._decisions.append(transition.decision)
            if transition.delegates:
                step_order = transition.delegate_step_order or transition.expected_step_order
                key = (transition.instance_id, step_order)
                self._delegates.setdefault(key, set()).update(transition.delegates)
            return True

    def get_instance(self, instance_id: str) -> Optional[ApprovalInstance]:
        with self._lock:
            instance = self._instances.get(instance_id)
            return instance.model_copy() if instance else None

    def get_step_instances(self, instance_id: str) -> list[ApprovalStepInstance]:
        with self._lock:
            steps = self._steps.get(instance_id, {})
            return [steps[order].model_copy() for order in sorted(steps)]

    def get_decisions(self, instance_id: str) -> list[ApprovalDecision]:
        with self._lock:
            return [d for d in self._decisions if d.instance_id == instance_id]

    def get_delegates(self, instance_id: str, step_order: int) -> set[str]:
        with self._lock:
            return set(self._delegates.get((instance_id, step_order), set()))

    def find_instances(
        self,
        *,
        target_type: Optional[str] = None,
        target_id: Optional[str] = None,
        requester_id: Optional[str] = None,
        status: Optional[InstanceStatus] = None,
        flow_id: Optional[int] = None,
    ) -> list[ApprovalInstance]:
        with self._lock:
            instances = list(self._instances.values())

        results = []
        for instance in instances:
            if target_type is not None and instance.target_type != target_type:
                continue
            if target_id is not None and instance.target_id != target_id:
                continue
            if requester_id is not None and instance.requester_id != requester_id:
                continue
            if status is not None and instance.status != status:
                continue
            if flow_id is not None and instance.flow_id != flow_id:
                continue
            results.append(instance.model_copy())
        results.sort(key=lambda i: i.created_at)
        return results

    def list_decisions(
        self,
        *,
        since: Optional[datetime] = None,
        actor_id: Optional[str] = None,
        action: Optional[DecisionAction] = None,
    ) -> list[ApprovalDecision]:
        with self._lock:
            decisions = list(self._decisions)
        return [
            d for d in decisions
            if (since is None or d.created_at >= since)
            and (actor_id is None or d.actor_id == actor_id)
            and (action is None or d.action == action)
        ]

    def clear(self) -> None:
        """Drop all state (for tests and demos)"""
        with self._lock:
            self._reset()
