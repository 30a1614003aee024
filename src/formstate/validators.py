"""
Fluent validator construction.

    from formstate.validators import Validators

    password = Validators.string().required().min_length(8).build()
    username_available = (
        Validators.string()
        .required()
        .async_(check_username)
        .build_async()
    )

Rules return validation keys (see ValidationKeys) unless a message is
passed; the controller turns keys into display text.
"""

import re
from typing import Any, Awaitable, Callable, Iterable, List, Optional, Pattern, Union

from formstate.messages import ValidationKeys

SyncRule = Callable[[Any], Optional[str]]
AsyncRule = Callable[[Any], Awaitable[Optional[str]]]

EMAIL_PATTERN = re.compile(r'^[\w\-.]+@([\w-]+\.)+[\w-]{2,4}$')


def _is_blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


class ValidatorChain:
    """Ordered list of sync rules plus optional async rules.

    The first failing rule wins. Each rule method returns ``self`` so calls
    can be chained.
    """

    def __init__(self):
        self._sync_rules: List[SyncRule] = []
        self._async_rules: List[AsyncRule] = []

    def _add(self, rule: SyncRule) -> 'ValidatorChain':
        self._sync_rules.append(rule)
        return self

    def required(self, message: Optional[str] = None) -> 'ValidatorChain':
        """Reject None and blank strings."""
        return self._add(lambda value: (message or ValidationKeys.REQUIRED) if _is_blank(value) else None)

    def custom(self, rule: SyncRule) -> 'ValidatorChain':
        return self._add(rule)

    def one_of(self, choices: Iterable[Any], message: Optional[str] = None) -> 'ValidatorChain':
        allowed = list(choices)

        def rule(value: Any) -> Optional[str]:
            if value is None or value in allowed:
                return None
            return message or ValidationKeys.INVALID_SELECTION
        return self._add(rule)

    def async_(self, rule: AsyncRule) -> 'ValidatorChain':
        """Add an async rule; it only runs when every sync rule passes."""
        self._async_rules.append(rule)
        return self

    def build(self) -> SyncRule:
        rules = list(self._sync_rules)

        def validate(value: Any) -> Optional[str]:
            for rule in rules:
                error = rule(value)
                if error is not None:
                    return error
            return None
        return validate

    def build_async(self) -> AsyncRule:
        """Build the async validator.

        The sync chain runs first as a fast-reject gate. When it fails the
        async validator returns None, because the sync validator already owns
        that error.
        """
        sync_validate = self.build()
        rules = list(self._async_rules)

        async def validate(value: Any) -> Optional[str]:
            if sync_validate(value) is not None:
                return None
            for rule in rules:
                error = await rule(value)
                if error is not None:
                    return error
            return None
        return validate


class StringValidator(ValidatorChain):
    """Rules for text fields. Empty strings pass every rule except ``required``."""

    def email(self, message: Optional[str] = None) -> 'StringValidator':
        def rule(value: Optional[str]) -> Optional[str]:
            if not value:
                return None
            if not EMAIL_PATTERN.match(value):
                return message or ValidationKeys.INVALID_EMAIL
            return None
        return self._add(rule)

    def min_length(self, length: int, message: Optional[str] = None) -> 'StringValidator':
        def rule(value: Optional[str]) -> Optional[str]:
            if not value or len(value) >= length:
                return None
            return message or ValidationKeys.with_param(ValidationKeys.MIN_LENGTH, length)
        return self._add(rule)

    def max_length(self, length: int, message: Optional[str] = None) -> 'StringValidator':
        def rule(value: Optional[str]) -> Optional[str]:
            if not value or len(value) <= length:
                return None
            return message or ValidationKeys.with_param(ValidationKeys.MAX_LENGTH, length)
        return self._add(rule)

    def pattern(self, regex: Union[str, Pattern], message: Optional[str] = None) -> 'StringValidator':
        compiled = re.compile(regex) if isinstance(regex, str) else regex

        def rule(value: Optional[str]) -> Optional[str]:
            if not value or compiled.search(value):
                return None
            return message or ValidationKeys.INVALID_FORMAT
        return self._add(rule)


class NumberValidator(ValidatorChain):
    """Rules for numeric fields. None passes every rule except ``required``."""

    def min(self, minimum: float, message: Optional[str] = None) -> 'NumberValidator':
        def rule(value: Optional[float]) -> Optional[str]:
            if value is None or value >= minimum:
                return None
            return message or ValidationKeys.with_param(ValidationKeys.MIN, minimum)
        return self._add(rule)

    def max(self, maximum: float, message: Optional[str] = None) -> 'NumberValidator':
        def rule(value: Optional[float]) -> Optional[str]:
            if value is None or value <= maximum:
                return None
            return message or ValidationKeys.with_param(ValidationKeys.MAX, maximum)
        return self._add(rule)

    def positive(self, message: Optional[str] = None) -> 'NumberValidator':
        return self.min(0, message)


class GenericValidator(ValidatorChain):
    """Rules for any value type."""


class Validators:
    """Entry points for validator chains."""

    @staticmethod
    def string() -> StringValidator:
        return StringValidator()

    @staticmethod
    def number() -> NumberValidator:
        return NumberValidator()

    @staticmethod
    def any() -> GenericValidator:
        return GenericValidator()
