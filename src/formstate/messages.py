"""
Display strings for validation errors.

Validators return either literal messages or validation keys such as
``ValidationKeys.MIN_LENGTH + ":8"``. The controller resolves keys through
its FormMessages instance at validation time, so swapping the messages
object changes every message produced afterwards without touching any other
controller state.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, Optional, Union

Number = Union[int, float]


class ValidationKeys:
    """Message keys emitted by the built-in validator chain."""
    REQUIRED = 'formstate_key_required'
    INVALID_FORMAT = 'formstate_key_invalid_format'
    INVALID_EMAIL = 'formstate_key_invalid_email'
    MIN_LENGTH = 'formstate_key_min_length'
    MAX_LENGTH = 'formstate_key_max_length'
    MIN = 'formstate_key_min'
    MAX = 'formstate_key_max'
    INVALID_SELECTION = 'formstate_key_invalid_selection'

    @staticmethod
    def with_param(key: str, param: Any) -> str:
        """Attach a parameter to a key: ``with_param(MIN, 3) == "formstate_key_min:3"``."""
        return f"{key}:{param}"

    @staticmethod
    def is_key(error: str) -> bool:
        return error.startswith('formstate_key_')


def _parse_number(text: str) -> Number:
    try:
        return int(text)
    except ValueError:
        return float(text)


class FormMessages(ABC):
    """Translatable message catalogue.

    Subclass and implement every abstract method to localize; ``format`` and
    ``resolve`` are shared.
    """

    @abstractmethod
    def required(self, label: str) -> str: ...

    @abstractmethod
    def invalid_format(self) -> str: ...

    @abstractmethod
    def min_length(self, min_length: int) -> str: ...

    @abstractmethod
    def max_length(self, max_length: int) -> str: ...

    @abstractmethod
    def min_value(self, minimum: Number) -> str: ...

    @abstractmethod
    def max_value(self, maximum: Number) -> str: ...

    @abstractmethod
    def invalid_selection(self) -> str: ...

    @abstractmethod
    def validation_failed(self, error: str) -> str: ...

    @abstractmethod
    def validating(self) -> str: ...

    def invalid_email(self) -> str:
        return self.invalid_format()

    def format(self, template: str, params: Dict[str, Any]) -> str:
        """Replace ``{name}`` placeholders; unknown placeholders are left alone."""
        result = template
        for name, value in params.items():
            result = result.replace('{' + name + '}', str(value))
        return result

    def resolve(self, error: str, label: str, value: Optional[Any] = None) -> str:
        """Turn a validator's return value into display text.

        Validation keys are looked up in this catalogue; anything else is used
        as a template. ``{label}`` and ``{value}`` are substituted either way.
        """
        key, _, param = error.partition(':')
        if key == ValidationKeys.REQUIRED:
            text = self.required(label)
        elif key == ValidationKeys.INVALID_FORMAT:
            text = self.invalid_format()
        elif key == ValidationKeys.INVALID_EMAIL:
            text = self.invalid_email()
        elif key == ValidationKeys.MIN_LENGTH and param:
            text = self.min_length(int(param))
        elif key == ValidationKeys.MAX_LENGTH and param:
            text = self.max_length(int(param))
        elif key == ValidationKeys.MIN and param:
            text = self.min_value(_parse_number(param))
        elif key == ValidationKeys.MAX and param:
            text = self.max_value(_parse_number(param))
        elif key == ValidationKeys.INVALID_SELECTION:
            text = self.invalid_selection()
        else:
            text = error
        return self.format(text, {'label': label, 'value': '' if value is None else value})


class DefaultFormMessages(FormMessages):
    """English messages."""

    def required(self, label: str) -> str:
        return f"{label} is required"

    def invalid_format(self) -> str:
        return "Invalid format"

    def invalid_email(self) -> str:
        return "Invalid email format"

    def min_length(self, min_length: int) -> str:
        return f"Minimum length is {min_length} characters"

    def max_length(self, max_length: int) -> str:
        return f"Maximum length is {max_length} characters"

    def min_value(self, minimum: Number) -> str:
        return f"Minimum value is {minimum}"

    def max_value(self, maximum: Number) -> str:
        return f"Maximum value is {maximum}"

    def invalid_selection(self) -> str:
        return "Invalid selection"

    def validation_failed(self, error: str) -> str:
        return f"Validation failed: {error}"

    def validating(self) -> str:
        return "Validating..."
