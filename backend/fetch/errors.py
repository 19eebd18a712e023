from __future__ import annotations

from enum import Enum


class FetchFailureReason(str, Enum):
    network = "network"
    timeout = "timeout"
    # Service rejected the request parameters.
    validation = "validation"
    # Service answered but the body is not an entity page.
    malformed = "malformed"


TRANSIENT_REASONS = frozenset({FetchFailureReason.network, FetchFailureReason.timeout})


class FetchError(Exception):
    def __init__(self, reason: FetchFailureReason, message: str = "") -> None:
        self.reason = reason
        self.message = message or f"Fetch failed ({reason.value})"
        super().__init__(self.message)

    @property
    def is_transient(self) -> bool:
        return self.reason in TRANSIENT_REASONS

    def to_dict(self) -> dict[str, str]:
        return {"reason": self.reason.value, "message": self.message}


class SupersededRequest(Exception):
    """
    A newer request took over the slot before this one could be committed.

    Not a failure: the caller's result is simply obsolete.
    """

    def __init__(self, slot: str, token: int) -> None:
        self.slot = slot
        self.token = token
        super().__init__(f"Request {token} on slot {slot!r} was superseded")
