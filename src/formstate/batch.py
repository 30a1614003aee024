"""Bulk update builder and result reporting."""

from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Tuple

from formstate.field_id import field_key


@dataclass(frozen=True)
class BatchResult:
    """Outcome of a non-strict bulk update.

    Attributes:
        updated_fields: Keys whose values were applied.
        type_mismatches: Key -> "expected X, got Y" for rejected values.
        missing_fields: Keys with no registered field.
    """
    updated_fields: Tuple[str, ...] = ()
    type_mismatches: Dict[str, str] = field(default_factory=dict)
    missing_fields: Tuple[str, ...] = ()

    @property
    def success(self) -> bool:
        return not self.type_mismatches and not self.missing_fields

    @property
    def errors(self) -> Dict[str, str]:
        """Every rejected key mapped to a human readable reason."""
        errors = dict(self.type_mismatches)
        for key in self.missing_fields:
            errors[key] = "Field not registered"
        return errors


class Batch:
    """Fluent collector of field updates, applied later in one transaction.

    Example:
        batch = Batch().set(name, "Ada").set(age, 36)
        result = controller.apply_batch(batch)
    """

    def __init__(self):
        self._updates: Dict[str, Any] = {}

    def set(self, field_id: Any, value: Any) -> 'Batch':
        """Queue ``value`` for ``field_id``; a later set for the same key wins."""
        self._updates[field_key(field_id)] = value
        return self

    def set_all(self, updates: Mapping[Any, Any]) -> 'Batch':
        for field_id, value in updates.items():
            self.set(field_id, value)
        return self

    @property
    def updates(self) -> Dict[str, Any]:
        return dict(self._updates)

    def __len__(self) -> int:
        return len(self._updates)

    def __bool__(self) -> bool:
        return bool(self._updates)
