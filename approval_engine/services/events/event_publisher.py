"""
Approval lifecycle events and the sinks that carry them.

Enables downstream systems to react to approval transitions:
- Notification services can alert the next approvers
- Audit systems can persist every decision
- Domain modules (claims, loans, leave) can finalize their objects
- Analytics systems can monitor turnaround times

The engine only calls EventSink.publish(); delivery is best-effort and never
affects the approval transition that produced the event.
"""

import json
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, asdict, field
from datetime import datetime, UTC
from typing import Optional

from loguru import logger


@dataclass
class ApprovalEvent:
    """
    Base lifecycle event.

    Every event identifies the instance and the target object so consumers
    never need to query the engine to route it.
    """

    instance_id: str
    target_type: str
    target_id: str
    requester_id: str
    step_order: Optional[int] = None
    actor_id: Optional[str] = None
    comment: Optional[str] = None
    event_type: str = "ApprovalEvent"
    timestamp: Optional[str] = None

    def __post_init__(self):
        """Set timestamp if not provided"""
        if self.timestamp is None:
            self.timestamp = datetime.now(UTC).isoformat()

    def to_dict(self) -> dict:
        """
        Convert event to dictionary for JSON serialization.

        Returns:
            Dictionary representation suitable for Service Bus message body
        """
        return asdict(self)

    def to_json(self) -> str:
        return json.dumps(self.to_dict())


@dataclass
class InstanceCreated(ApprovalEvent):
    flow_code: Optional[str] = None
    current_approvers: list[str] = field(default_factory=list)
    event_type: str = "InstanceCreated"


@dataclass
class StepAdvanced(ApprovalEvent):
    """The instance moved to `step_order`; `previous_step_order` was approved or skipped."""

    previous_step_order: Optional[int] = None
    skipped_steps: list[int] = field(default_factory=list)
    current_approvers: list[str] = field(default_factory=list)
    event_type: str = "StepAdvanced"


@dataclass
class InstanceApproved(ApprovalEvent):
    event_type: str = "InstanceApproved"


@dataclass
class InstanceRejected(ApprovalEvent):
    event_type: str = "InstanceRejected"


@dataclass
class InstanceCancelled(ApprovalEvent):
    event_type: str = "InstanceCancelled"


@dataclass
class InstanceHalted(ApprovalEvent):
    """No approver could be resolved for the current step; administrators must act."""

    reason: Optional[str] = None
    event_type: str = "InstanceHalted"


@dataclass
class StepDelegated(ApprovalEvent):
    delegate_to: list[str] = field(default_factory=list)
    event_type: str = "StepDelegated"


@dataclass
class StepEscalated(ApprovalEvent):
    escalation_role_code: Optional[str] = None
    delegate_to: list[str] = field(default_factory=list)
    event_type: str = "StepEscalated"


@dataclass
class StepReassigned(ApprovalEvent):
    delegate_to: list[str] = field(default_factory=list)
    event_type: str = "StepReassigned"


@dataclass
class InstanceReturned(ApprovalEvent):
    """An approver asked the requester for more information."""

    event_type: str = "InstanceReturned"


class EventSink(ABC):
    """Consumer boundary for lifecycle events."""

    @abstractmethod
    def publish(self, event: ApprovalEvent) -> None:
        pass


class EventPublisher(EventSink):
    """
    Publishes events to Azure Service Bus (Queue or Topic).

    Usage:
        # Production with Service Bus Queue
        from azure.servicebus import ServiceBusClient
        client = ServiceBusClient.from_connection_string(conn_str)
        sender = client.get_queue_sender(queue_name="approval-events")
        publisher = EventPublisher(service_bus_sender=sender)

        # Disabled mode (no Service Bus configured)
        publisher = EventPublisher(service_bus_sender=None)
    """

    def __init__(
        self,
        service_bus_sender: Optional[object] = None,
        entity_name: str = "approval-events"
    ):
        """
        Initialize event publisher.

        Args:
            service_bus_sender: Azure Service Bus sender (ServiceBusSender) or None to disable
            entity_name: Service Bus queue or topic name (default: approval-events)
        """
        self.service_bus_sender = service_bus_sender
        self.entity_name = entity_name

    def publish(self, event: ApprovalEvent) -> None:
        """
        Publish a lifecycle event to Service Bus.

        Note:
            If service_bus_sender is None, this is a no-op (disabled mode).
            Useful for local development or when Service Bus is not configured.
        """
        if self.service_bus_sender is None:
            return

        from azure.servicebus import ServiceBusMessage

        message = ServiceBusMessage(
            event.to_json(),
            content_type="application/json",
            subject=event.event_type,
            application_properties={
                "event_type": event.event_type,
                "target_type": event.target_type,
            },
        )
        self.service_bus_sender.send_messages(message)


class InMemoryEventSink(EventSink):
    """Keeps published events in memory (for tests, demos and polling consumers)."""

    def __init__(self):
        self._lock = threading.Lock()
        self.events: list[ApprovalEvent] = []

    def publish(self, event: ApprovalEvent) -> None:
        with self._lock:
            self.events.append(event)

    def of_type(self, event_type: str) -> list[ApprovalEvent]:
        return [e for e in self.events if e.event_type == event_type]

    def clear(self) -> None:
        with self._lock:
            self.events.clear()


class FanOutEventSink(EventSink):
    """Forwards each event to several sinks; one failing sink does not block the others."""

    def __init__(self, sinks: list[EventSink]):
        self.sinks = list(sinks)

    def publish(self, event: ApprovalEvent) -> None:
        for sink in self.sinks:
            try:
                sink.publish(event)
            except Exception as e:
                logger.warning(
                    f"Event sink {type(sink).__name__} failed: {e}",
                    event_type=event.event_type,
                    instance_id=event.instance_id,
                )


def create_event_publisher(connection_string: Optional[str] = None, entity_name: str = "approval-events") -> EventPublisher:
    """
    Build a Service Bus publisher, or a disabled one when no connection string is set.
    """
    if not connection_string:
        return EventPublisher(service_bus_sender=None, entity_name=entity_name)

    from azure.servicebus import ServiceBusClient

    client = ServiceBusClient.from_connection_string(connection_string)
    sender = client.get_queue_sender(queue_name=entity_name)
    logger.info("Service Bus event publishing enabled", entity_name=entity_name)
    return EventPublisher(service_bus_sender=sender, entity_name=entity_name)
