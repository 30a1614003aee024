"""Validation results and the enums that steer validation and reset behavior."""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional


@dataclass(frozen=True)
class ValidationResult:
    """Immutable outcome of validating one field.

    ``is_valid`` implies no ``error_message``. ``is_validating`` marks an
    async validator still in flight; a validating result is provisionally
    valid unless a sync error is also present.
    """
    is_valid: bool
    error_message: Optional[str] = None
    is_validating: bool = False

    def __post_init__(self):
        if self.is_valid and self.error_message is not None:
            raise ValueError("A valid ValidationResult cannot carry an error message")

    @classmethod
    def invalid(cls, message: str) -> 'ValidationResult':
        return cls(is_valid=False, error_message=message)

    @property
    def has_error(self) -> bool:
        return self.error_message is not None

    def with_validating(self, is_validating: bool) -> 'ValidationResult':
        if is_validating == self.is_validating:
            return self
        return ValidationResult(self.is_valid, self.error_message, is_validating)

    def to_dict(self) -> Dict[str, Any]:
        """Export to JSON-serializable dict."""
        return {
            'is_valid': self.is_valid,
            'error_message': self.error_message,
            'is_validating': self.is_validating,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ValidationResult':
        return cls(
            is_valid=data['is_valid'],
            error_message=data.get('error_message'),
            is_validating=data.get('is_validating', False),
        )


# Shared constants, attached after class creation because frozen dataclasses
# cannot reference themselves in their own body.
ValidationResult.VALID = ValidationResult(is_valid=True)
ValidationResult.VALIDATING = ValidationResult(is_valid=True, is_validating=True)


class ValidationMode(Enum):
    """When automatic validation runs for a field.

    AUTO defers to the controller-level mode. DISABLED suppresses automatic
    runs; manual ``validate()`` still computes and stores results.
    """
    AUTO = 'auto'
    ALWAYS = 'always'
    ON_BLUR = 'on_blur'
    ON_USER_INTERACTION = 'on_user_interaction'
    DISABLED = 'disabled'


class ResetStrategy(Enum):
    """What a reset restores: the recorded initial values, or empty values."""
    INITIAL_VALUES = 'initial_values'
    CLEAR = 'clear'


class InitialValueStrategy(Enum):
    """Whether a changed initial value may replace a pristine live value."""
    PREFER_LOCAL = 'prefer_local'
    PREFER_GLOBAL = 'prefer_global'
