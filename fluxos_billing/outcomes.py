"""Best-effort side effects attached to a primary billing result."""

from dataclasses import dataclass
from typing import Any


@dataclass
class BestEffortOutcome:
    """Result of a side effect whose failure must not fail the caller.

    Args:
        action: What was attempted (e.g. "tag_customer_canceled")
        target: Provider ID the action applied to
        ok: Whether the action succeeded
        error: Error message when it did not
    """

    action: str
    target: str | None = None
    ok: bool = True
    error: str | None = None

    @classmethod
    def failed(cls, action: str, target: str | None, error: Exception) -> "BestEffortOutcome":
        return cls(action=action, target=target, ok=False, error=str(error))

    def to_dict(self) -> dict[str, Any]:
        return {
            "action": self.action,
            "target": self.target,
            "ok": self.ok,
            "error": self.error,
        }
