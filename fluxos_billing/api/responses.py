"""
Response envelope.

Every endpoint answers with ``{success, message?, data?, statusCode}``;
extra top-level keys are allowed for clients that read them directly.
"""

from typing import Any

from fastapi.responses import JSONResponse

from ..outcomes import BestEffortOutcome


def envelope(
    data: Any = None,
    message: str | None = None,
    status_code: int = 200,
    headers: dict[str, str] | None = None,
    **extra: Any,
) -> JSONResponse:
    content: dict[str, Any] = {"success": status_code < 400}
    if message is not None:
        content["message"] = message
    if data is not None:
        content["data"] = data
    content["statusCode"] = status_code
    content.update(extra)
    return JSONResponse(status_code=status_code, content=content, headers=headers)


def with_side_effects(data: dict[str, Any], outcomes: list[BestEffortOutcome]) -> dict[str, Any]:
    """Attach best-effort outcomes as ``sideEffects``; omitted when there are none."""
    if outcomes:
        data["sideEffects"] = [outcome.to_dict() for outcome in outcomes]
    return data
