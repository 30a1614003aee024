"""
Static per-field configuration.

A FieldDefinition is what a caller registers with a FormController: the
field's id, initial value, validators, dependencies and transformer. The
controller never mutates a definition; changing configuration means
registering a new one.
"""

from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional, Tuple

from formstate.field_id import FieldID, TypeTag, type_tag_for, type_tag_for_value
from formstate.validation import InitialValueStrategy, ResetStrategy, ValidationMode

# validator(value) -> error or None
Validator = Callable[[Any], Optional[str]]
AsyncValidator = Callable[[Any], Awaitable[Optional[str]]]
# cross_field_validator(value, snapshot) -> error or None
CrossFieldValidator = Callable[[Any, Any], Optional[str]]
Transformer = Callable[[Any], Any]

# Empty values used by ResetStrategy.CLEAR, keyed by the field's type tag
_EMPTY_BY_TYPE = {
    str: '',
    int: 0,
    float: 0.0,
    bool: False,
    list: [],
    dict: {},
    set: set(),
    tuple: (),
}


@dataclass(frozen=True)
class FieldDefinition:
    """Configuration for one form field.

    Attributes:
        id: Field handle; its ``value_type`` (if declared) becomes the runtime tag.
        initial_value: Baseline for dirty tracking and reset.
        validator: Sync validator returning an error message or None.
        async_validator: Coroutine function returning an error message or None.
        debounce: Seconds to wait before running ``async_validator``. None uses
            the controller default.
        depends_on: Fields whose changes re-run this field's validators.
        cross_field_validator: Validator that also receives the full snapshot.
        transformer: Applied to every incoming value before storage.
        validation_mode: Field-level override of the controller mode.
        initial_value_strategy: Whether a changed initial value is adopted
            into a pristine live value.
        label: Display name passed to message templates.
        empty_value: Value used by ``ResetStrategy.CLEAR``; inferred from the
            field type when None.
    """
    id: FieldID
    initial_value: Any = None
    validator: Optional[Validator] = None
    async_validator: Optional[AsyncValidator] = None
    debounce: Optional[float] = None
    depends_on: Tuple[FieldID, ...] = field(default_factory=tuple)
    cross_field_validator: Optional[CrossFieldValidator] = None
    transformer: Optional[Transformer] = None
    validation_mode: ValidationMode = ValidationMode.AUTO
    initial_value_strategy: InitialValueStrategy = InitialValueStrategy.PREFER_LOCAL
    label: Optional[str] = None
    empty_value: Any = None

    def __post_init__(self):
        if not isinstance(self.id, FieldID):
            raise TypeError(f"FieldDefinition.id must be a FieldID, got {type(self.id).__name__}")
        if self.debounce is not None and self.debounce < 0:
            raise ValueError(f"debounce must be non-negative, got {self.debounce}")
        if not isinstance(self.depends_on, tuple):
            object.__setattr__(self, 'depends_on', tuple(self.depends_on))

    @property
    def key(self) -> str:
        return self.id.key

    @property
    def display_label(self) -> str:
        """Label for messages; falls back to the field's local name."""
        return self.label or self.id.local_name

    @property
    def type_tag(self) -> TypeTag:
        """Runtime tag from the declared type, else inferred from the initial value."""
        if self.id.value_type is not None:
            return type_tag_for(self.id.value_type)
        return type_tag_for_value(self.initial_value)

    @property
    def has_async_validator(self) -> bool:
        return self.async_validator is not None

    def reset_value(self, strategy: ResetStrategy) -> Any:
        """Value a reset with ``strategy`` restores this field to."""
        if strategy is ResetStrategy.INITIAL_VALUES:
            return self.initial_value
        if self.empty_value is not None:
            return self.empty_value
        tag = self.type_tag
        if tag is None:
            return None
        empty = _EMPTY_BY_TYPE.get(tag[0])
        # Fresh containers so cleared fields never share one mutable instance
        return type(empty)() if isinstance(empty, (list, dict, set)) else empty
