"""
Abstract base class for approval state storage.

Defines the interface that all approval stores must implement, enabling
dependency injection and easy swapping of storage backends. The store is
the only writer of approval state: every runtime mutation goes through
create_instance() or apply_transition(), both of which are atomic.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Optional

from ...models.approval import (
    ApprovalDecision,
    ApprovalFlow,
    ApprovalFlowStep,
    ApprovalInstance,
    ApprovalStepInstance,
    DecisionAction,
    InstanceStatus,
    InstanceTransition,
)

# Columns of approval_instances that a transition may change
MUTABLE_INSTANCE_FIELDS = frozenset({
    "status",
    "current_step_order",
    "halt_reason",
    "resolved_by",
    "final_comment",
    "completed_at",
})

# Columns of approval_flows that may change after creation
MUTABLE_FLOW_FIELDS = frozenset({
    "name",
    "description",
    "target_type",
    "is_active",
    "priority",
    "version",
    "branch_id",
    "region_id",
    "department_id",
    "position_id",
})


class ApprovalStoreBase(ABC):
    """
    Abstract base class for approval persistence.

    Implementations can use:
    - In-memory storage (for testing/demo)
    - SQLite (for single-instance deployments)
    - SQL Server / PostgreSQL (for production)
    """

    # ---------------------------------------------------------------- flows

    @abstractmethod
    def add_flow(self, flow: ApprovalFlow, steps: list[ApprovalFlowStep]) -> ApprovalFlow:
        """
        Persist a new flow with its steps.

        Returns:
            The stored flow with id and timestamps assigned
        """
        pass

    @abstractmethod
    def get_flow(self, flow_id: int) -> Optional[ApprovalFlow]:
        pass

    @abstractmethod
    def get_flow_by_code(self, code: str) -> Optional[ApprovalFlow]:
        pass

    @abstractmethod
    def list_flows(self, target_type: Optional[str] = None, active_only: bool = False) -> list[ApprovalFlow]:
        """List flows ordered by id."""
        pass

    @abstractmethod
    def get_flow_steps(self, flow_id: int) -> list[ApprovalFlowStep]:
        """Return the stored steps of a flow ordered by step_order (unvalidated)."""
        pass

    @abstractmethod
    def update_flow(self, flow_id: int, changes: dict[str, Any]) -> Optional[ApprovalFlow]:
        pass

    @abstractmethod
    def replace_flow_steps(self, flow_id: int, steps: list[ApprovalFlowStep]) -> None:
        pass

    @abstractmethod
    def delete_flow(self, flow_id: int) -> bool:
        pass

    @abstractmethod
    def count_flow_references(self, flow_id: int) -> int:
        """Number of instances (any status) created from the flow."""
        pass

    # ------------------------------------------------------------ instances

    @abstractmethod
    def create_instance(self, instance: ApprovalInstance, steps: list[ApprovalStepInstance]) -> None:
        """
        Persist a new instance together with all its step instances.

        Raises:
            DuplicateInstance: a PENDING instance already exists for
                (target_type, target_id)
        """
        pass

    @abstractmethod
    def apply_transition(self, transition: InstanceTransition) -> bool:
        """
        Atomically apply a transition.

        Returns:
            True if applied; False if the instance or any targeted step was no
            longer in the expected state (nothing is written in that case)
        """
        pass

    @abstractmethod
    def get_instance(self, instance_id: str) -> Optional[ApprovalInstance]:
        pass

    @abstractmethod
    def get_step_instances(self, instance_id: str) -> list[ApprovalStepInstance]:
        """Step instances ordered by step_order."""
        pass

    @abstractmethod
    def get_decisions(self, instance_id: str) -> list[ApprovalDecision]:
        """Decisions of an instance in the order they were recorded."""
        pass

    @abstractmethod
    def get_delegates(self, instance_id: str, step_order: int) -> set[str]:
        pass

    @abstractmethod
    def find_instances(
        self,
        *,
        target_type: Optional[str] = None,
        target_id: Optional[str] = None,
        requester_id: Optional[str] = None,
        status: Optional[InstanceStatus] = None,
        flow_id: Optional[int] = None,
    ) -> list[ApprovalInstance]:
        """Instances matching every given filter, oldest first."""
        pass

    @abstractmethod
    def list_decisions(
        self,
        *,
        since: Optional[datetime] = None,
        actor_id: Optional[str] = None,
        action: Optional[DecisionAction] = None,
    ) -> list[ApprovalDecision]:
        pass

    def find_active_instance(self, target_type: str, target_id: str) -> Optional[ApprovalInstance]:
        matches = self.find_instances(
            target_type=target_type,
            target_id=target_id,
            status=InstanceStatus.PENDING,
        )
        return matches[0] if matches else None
