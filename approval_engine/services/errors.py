"""
Error taxonomy for the approval engine.

Every error carries a stable `kind` (the class name) and a `category` so
callers can decide how to react without string matching:

- configuration: broken or missing flow setup, surfaced to administrators
- authorization: the actor may not act on this step
- concurrency: the instance moved on, refresh and re-display
- resolution: no approver could be resolved, needs human remediation
- duplicate: an active instance already exists for the target
- not_found: unknown instance or flow
- invalid: malformed request (missing comment, unknown action, ...)

Errors raised for an existing instance carry `snapshot`, the current
authoritative InstanceSnapshot, so UIs can reconcile state.
"""

from typing import Optional


class ApprovalError(Exception):
    category = "error"

    def __init__(self, message: str, *, snapshot=None):
        super().__init__(message)
        self.message = message
        self.snapshot = snapshot

    @property
    def kind(self) -> str:
        return type(self).__name__

    def with_snapshot(self, snapshot) -> "ApprovalError":
        self.snapshot = snapshot
        return self

    def to_dict(self) -> dict:
        return {
            "error": self.kind,
            "category": self.category,
            "detail": self.message,
            "instance": self.snapshot.to_dict() if self.snapshot is not None else None,
        }


# Configuration errors

class ConfigurationError(ApprovalError):
    category = "configuration"


class NoApplicableFlow(ConfigurationError):
    pass


class MalformedFlow(ConfigurationError):
    pass


class FlowInUse(ConfigurationError):
    pass


class FlowNotFound(ApprovalError):
    category = "not_found"


# Authorization errors

class NotAuthorized(ApprovalError):
    category = "authorization"


# Concurrency errors

class ConcurrencyError(ApprovalError):
    category = "concurrency"


class StepMismatch(ConcurrencyError):
    pass


class InstanceAlreadyTerminal(ConcurrencyError):
    pass


# Resolution errors

class ResolutionError(ApprovalError):
    category = "resolution"


class NoManagerAssigned(ResolutionError):
    pass


class ChainExhausted(ResolutionError):
    def __init__(self, message: str, *, depth: Optional[int] = None, available: Optional[int] = None, snapshot=None):
        super().__init__(message, snapshot=snapshot)
        self.depth = depth
        self.available = available


class NoEligibleApprover(ResolutionError):
    pass


# Other

class DuplicateInstance(ApprovalError):
    category = "duplicate"

    def __init__(self, message: str, *, existing_id: Optional[str] = None, snapshot=None):
        super().__init__(message, snapshot=snapshot)
        self.existing_id = existing_id


class InstanceNotFound(ApprovalError):
    category = "not_found"


class InvalidDecision(ApprovalError):
    category = "invalid"
