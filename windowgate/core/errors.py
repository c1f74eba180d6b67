"""Library-level exception types.

This module defines the errors raised by rules and the coordinator, enabling
consistent error handling and logging for callers.

Errors raised by the wrapped action are never wrapped here: they propagate to
the caller of ``perform`` unchanged.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, NotRequired, TypedDict


class ErrorDetails(TypedDict, total=False):
    """Structured error context for observability.

    Fields are optional so each error only carries what it knows.
    """

    code: str
    message: str
    hint: str
    field: str
    actual_value: Any
    perform_id: str
    context: NotRequired[dict[str, Any]]


@dataclass(eq=False)
class AppError(Exception):
    """Base error for windowgate failures.

    Attributes:
        code: Stable, machine-readable error code.
        message: Human-readable error message.
        details: Optional structured details for debugging/observability.
    """

    code: str
    message: str
    details: ErrorDetails | None = None

    def __post_init__(self) -> None:
        # Populate Exception args so str(error) is useful in logs/tracebacks.
        super().__init__(self.message)


class ConfigurationError(AppError, ValueError):
    """Raised when a rule, coordinator or call argument is invalid.

    Always raised before any waiting starts, so no rule state is touched.
    """


class AdmissionCancelledError(AppError):
    """Raised when a ``perform`` call is cancelled while waiting for capacity.

    Nothing has been committed to any rule when this is raised.
    """
