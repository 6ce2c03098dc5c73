"""Shared exception types for the planner."""

from __future__ import annotations


class PlannerError(Exception):
    """Base class for every error raised by the estimation engine."""


class ValidationError(PlannerError, ValueError):
    """Raised when a numeric input is malformed or out of range.

    Carries the offending *field* and *value* so callers can point the user
    at the input that needs fixing.
    """

    def __init__(self, field: str, value: object, message: str) -> None:
        self.field = field
        self.value = value
        self.message = message
        super().__init__(f"{field}: {message} (got {value!r})")


class UnsupportedFormatError(PlannerError, ValueError):
    """Raised when a quantization or precision key is not in the catalog."""

    def __init__(self, fmt: object, supported: list[str] | tuple[str, ...]) -> None:
        self.format = fmt
        self.supported = list(supported)
        super().__init__(
            f"Unsupported format {fmt!r}; expected one of: {', '.join(self.supported)}"
        )


class ConfigurationError(PlannerError):
    """Raised when inputs are individually valid but cannot work together.

    The typical case is a GPU whose usable memory does not exceed the model
    weights. *required* and *available* are in GB when known.
    """

    def __init__(
        self,
        details: str,
        required: float | None = None,
        available: float | None = None,
    ) -> None:
        self.details = details
        self.required = required
        self.available = available
        super().__init__(details)


class FormatBreakingChange(Exception):
    """Raised when an upstream data source has changed its format.

    Carries *source* (e.g. "gpuhunt", "dbgpu") and a human-readable
    *details* string describing what broke.
    """

    def __init__(self, source: str, details: str) -> None:
        self.source = source
        self.details = details
        super().__init__(f"Breaking format change in {source}: {details}")
