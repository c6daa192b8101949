class CirculationError(Exception):
    """Base exception for circulation failures.

    ``kind`` names the error family, ``reason`` is a machine-readable code
    callers can branch on.
    """

    kind = "circulation_error"

    def __init__(self, reason: str, message: str = "") -> None:
        self.reason = reason
        self.message = message or reason.replace("_", " ").capitalize()
        super().__init__(self.message)

    def to_dict(self) -> dict:
        return {"kind": self.kind, "reason": self.reason, "detail": self.message}


class NotFoundError(CirculationError):
    """Requested book, member, transaction, reservation or fine does not exist."""

    kind = "not_found"


class InvalidStateError(CirculationError):
    """The record is not in a state that allows the operation."""

    kind = "invalid_state"


class PolicyDeniedError(CirculationError):
    """The availability policy rejected the request."""

    kind = "policy_denied"


class ConflictError(CirculationError):
    """Lost a race for a record; the caller should retry."""

    kind = "conflict"


class UpstreamUnavailableError(CirculationError):
    """The catalog store or member directory failed."""

    kind = "upstream_unavailable"
