from .event_publisher import (
    ApprovalEvent,
    EventPublisher,
    EventSink,
    FanOutEventSink,
    InMemoryEventSink,
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
    create_event_publisher,
)

__all__ = [
    "ApprovalEvent",
    "EventPublisher",
    "EventSink",
    "FanOutEventSink",
    "InMemoryEventSink",
    "InstanceApproved",
    "InstanceCancelled",
    "InstanceCreated",
    "InstanceHalted",
    "InstanceRejected",
    "InstanceReturned",
    "StepAdvanced",
    "StepDelegated",
    "StepEscalated",
    "StepReassigned",
    "create_event_publisher",
]
