"""
Snapshot and History models for form state.

Design Philosophy: Replace, Never Mutate
- FormSnapshot is frozen and its maps are read-only views
- Every controller mutation publishes a brand new snapshot
- Listeners can compare old and new snapshots by reference
- History stores plain value maps, one entry per committed change
"""

import copy
from dataclasses import dataclass, field, fields as dataclass_fields, replace
from types import MappingProxyType
from typing import Any, Dict, FrozenSet, List, Mapping, Optional

from formstate.field_id import field_key
from formstate.validation import ValidationResult

_MAP_FIELDS = ('values', 'validations', 'dirty', 'touched', 'pending')


def _in_group(key: str, prefix: str) -> bool:
    return key == prefix or key.startswith(prefix + '.') or key.startswith(prefix + '[')


@dataclass(frozen=True)
class FormSnapshot:
    """Immutable picture of a whole form at one point in time.

    The five per-field maps are keyed by field key. Plain dicts passed to the
    constructor are copied into read-only views.
    """
    values: Mapping[str, Any] = field(default_factory=dict)
    validations: Mapping[str, ValidationResult] = field(default_factory=dict)
    dirty: Mapping[str, bool] = field(default_factory=dict)
    touched: Mapping[str, bool] = field(default_factory=dict)
    pending: Mapping[str, bool] = field(default_factory=dict)
    is_submitting: bool = False
    changed_fields: FrozenSet[str] = frozenset()
    history_cursor: int = 0
    current_step: int = 0
    reset_count: int = 0

    def __post_init__(self):
        for name in _MAP_FIELDS:
            current = getattr(self, name)
            if not isinstance(current, MappingProxyType):
                object.__setattr__(self, name, MappingProxyType(dict(current)))
        if not isinstance(self.changed_fields, frozenset):
            object.__setattr__(self, 'changed_fields', frozenset(self.changed_fields))

    def copy_with(self, **changes: Any) -> 'FormSnapshot':
        """Return a new snapshot with ``changes`` applied."""
        return replace(self, **changes)

    # ========== DERIVED STATE ==========

    @property
    def is_valid(self) -> bool:
        return all(result.is_valid for result in self.validations.values())

    @property
    def is_validating(self) -> bool:
        return any(result.is_validating for result in self.validations.values())

    @property
    def is_dirty(self) -> bool:
        return any(self.dirty.values())

    @property
    def is_pending(self) -> bool:
        """True while any field is loading or waiting on an async validator."""
        return any(self.pending.values()) or self.is_validating

    @property
    def errors(self) -> Dict[str, str]:
        return {
            key: result.error_message
            for key, result in self.validations.items()
            if result.error_message is not None
        }

    @property
    def first_invalid_key(self) -> Optional[str]:
        for key, result in self.validations.items():
            if not result.is_valid:
                return key
        return None

    # ========== PER-FIELD QUERIES ==========

    def get_value(self, field_id: Any, default: Any = None) -> Any:
        return self.values.get(field_key(field_id), default)

    def get_validation(self, field_id: Any) -> ValidationResult:
        return self.validations.get(field_key(field_id), ValidationResult.VALID)

    def is_field_dirty(self, field_id: Any) -> bool:
        return self.dirty.get(field_key(field_id), False)

    def is_field_touched(self, field_id: Any) -> bool:
        return self.touched.get(field_key(field_id), False)

    def is_field_pending(self, field_id: Any) -> bool:
        key = field_key(field_id)
        return self.pending.get(key, False) or self.get_validation(key).is_validating

    # ========== GROUP QUERIES ==========

    def is_group_valid(self, prefix: str) -> bool:
        """True if every field under ``prefix`` ("address" covers "address.city") is valid."""
        return all(
            result.is_valid
            for key, result in self.validations.items()
            if _in_group(key, prefix)
        )

    def is_group_dirty(self, prefix: str) -> bool:
        return any(is_dirty for key, is_dirty in self.dirty.items() if is_dirty and _in_group(key, prefix))

    def to_nested_dict(self) -> Dict[str, Any]:
        """Expand dotted keys into nested dicts: {"a.b": 1} -> {"a": {"b": 1}}."""
        nested: Dict[str, Any] = {}
        for key, value in self.values.items():
            parts = key.split('.')
            target = nested
            for part in parts[:-1]:
                child = target.get(part)
                if not isinstance(child, dict):
                    child = {}
                    target[part] = child
                target = child
            target[parts[-1]] = value
        return nested

    # ========== SERIALIZATION ==========

    def to_dict(self) -> Dict[str, Any]:
        """Export to JSON-serializable dict (values are deep-copied, not converted)."""
        return {
            'values': copy.deepcopy(dict(self.values)),
            'validations': {key: result.to_dict() for key, result in self.validations.items()},
            'dirty': dict(self.dirty),
            'touched': dict(self.touched),
            'pending': dict(self.pending),
            'is_submitting': self.is_submitting,
            'changed_fields': sorted(self.changed_fields),
            'history_cursor': self.history_cursor,
            'current_step': self.current_step,
            'reset_count': self.reset_count,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'FormSnapshot':
        known = {f.name for f in dataclass_fields(cls)}
        kwargs = {name: value for name, value in data.items() if name in known}
        kwargs['validations'] = {
            key: ValidationResult.from_dict(result)
            for key, result in data.get('validations', {}).items()
        }
        return cls(**kwargs)


class History:
    """Linear undo/redo history of whole-form value maps.

    Recording while the cursor is behind the tail discards every entry after
    the cursor. The oldest entries are dropped once ``limit`` is exceeded.
    """

    def __init__(self, limit: int = 50):
        if limit < 1:
            raise ValueError(f"History limit must be at least 1, got {limit}")
        self._limit = limit
        self._entries: List[Dict[str, Any]] = []
        self._cursor = -1

    @property
    def cursor(self) -> int:
        return self._cursor

    @property
    def can_undo(self) -> bool:
        return self._cursor > 0

    @property
    def can_redo(self) -> bool:
        return self._cursor < len(self._entries) - 1

    def __len__(self) -> int:
        return len(self._entries)

    def record(self, values: Mapping[str, Any]) -> bool:
        """Append ``values`` as the newest entry. Returns False if nothing changed."""
        values = dict(values)
        if self._cursor >= 0 and self._entries[self._cursor] == values:
            return False
        del self._entries[self._cursor + 1:]
        self._entries.append(copy.deepcopy(values))
        overflow = len(self._entries) - self._limit
        if overflow > 0:
            del self._entries[:overflow]
        self._cursor = len(self._entries) - 1
        return True

    def reset(self, values: Mapping[str, Any]) -> None:
        """Forget all entries and start over from ``values``."""
        self._entries = [copy.deepcopy(dict(values))]
        self._cursor = 0

    def undo(self) -> Optional[Dict[str, Any]]:
        if not self.can_undo:
            return None
        self._cursor -= 1
        return copy.deepcopy(self._entries[self._cursor])

    def redo(self) -> Optional[Dict[str, Any]]:
        if not self.can_redo:
            return None
        self._cursor += 1
        return copy.deepcopy(self._entries[self._cursor])

    def add_key(self, key: str, value: Any) -> None:
        """Backfill a newly registered field into every entry that lacks it."""
        for entry in self._entries:
            entry.setdefault(key, copy.deepcopy(value))

    def remove_key(self, key: str) -> None:
        for entry in self._entries:
            entry.pop(key, None)
