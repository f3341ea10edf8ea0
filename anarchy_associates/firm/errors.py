"""Exceptions raised by the firm administration core."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from anarchy_associates.firm.schema import ValidationResult


class FirmError(Exception):
    """Base class for all firm administration errors."""
    pass


class ValidationFailedError(FirmError):
    """Raised by ``validate_or_raise`` when a validation run fails."""

    def __init__(self, result: ValidationResult, message: str | None = None) -> None:
        self.result = result
        super().__init__(message or "Validation failed: " + ", ".join(result.errors))


class BypassNotAllowedError(FirmError):
    """The actor or the situation does not qualify for a guild owner bypass."""
    pass


class BypassConfirmationError(FirmError):
    """A bypass confirmation was malformed or lacked a reason."""
    pass


class BypassNotFoundError(FirmError):
    """The bypass request is unknown, expired or already consumed."""
    pass
