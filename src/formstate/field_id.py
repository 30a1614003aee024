"""
Typed field handles and runtime type tags.

A FieldID is the address of one storage slot in a FormController. Identity is
the string key alone; the declared value type rides along as a runtime tag so
that every read and write can be checked against it.

Usage:
    from formstate.field_id import FieldID, ArrayFieldID

    age = FieldID[int]("age")
    age.value_type             # int
    FieldID[int] is FieldID[int]   # True (cached)
    age == FieldID("age")      # True, same slot

    tags = ArrayFieldID[str]("tags")
    tags.item(0).key           # "tags[0]"
"""

import logging
import types
from typing import Any, Dict, Literal, Optional, Tuple, TypeVar, Union, get_args, get_origin

logger = logging.getLogger(__name__)

# typing.Union and PEP 604 unions (int | str) report different origins
_UNION_ORIGINS = tuple(o for o in (Union, getattr(types, 'UnionType', None)) if o is not None)
_NUMERIC_TYPES = (int, float, complex)

TypeTag = Optional[Tuple[type, ...]]


# =============================================================================
# ERRORS
# =============================================================================

class FieldTypeError(TypeError):
    """Raised when a value does not match the runtime type tag of its field."""

    def __init__(self, key: str, expected: str, actual: str):
        self.key = key
        self.expected = expected
        self.actual = actual
        super().__init__(f"Type mismatch for field '{key}': expected {expected}, got {actual}")


class UnregisteredFieldError(KeyError):
    """Raised when a strict operation addresses a key with no registered field."""

    def __init__(self, key: str):
        self.key = key
        super().__init__(key)

    def __str__(self) -> str:
        return f"Field not registered: '{self.key}'"


# =============================================================================
# REIFIED ID CACHE - FieldID[int] is FieldID[int]
# =============================================================================

_reified_id_cache: Dict[Tuple[type, Any], type] = {}


def _type_name(tp: Any) -> str:
    if isinstance(tp, type):
        return tp.__name__
    return repr(tp).replace('typing.', '')


def _make_reified_id_type(origin: type, value_type: Any) -> type:
    """Get or create the FieldID subclass carrying ``value_type``."""
    key = (origin, value_type)
    cached = _reified_id_cache.get(key)
    if cached is not None:
        return cached

    name = f"{origin.__name__}[{_type_name(value_type)}]"
    reified = type(name, (origin,), {
        '__origin__': origin,
        '__args__': (value_type,),
        '__module__': origin.__module__,
    })
    _reified_id_cache[key] = reified
    logger.debug(f"Created reified field id type {name}")
    return reified


def clear_id_cache() -> None:
    """Clear the reified FieldID type cache (for testing)."""
    _reified_id_cache.clear()


# =============================================================================
# FIELD IDS
# =============================================================================

class FieldID:
    """Immutable handle for one form field.

    Equality and hashing use ``key`` only, so ``FieldID[int]("age")`` and
    ``FieldID[str]("age")`` address the same slot. Keeping the declared type
    consistent per key is the caller's job; the controller raises
    FieldTypeError at access time when it is not.

    Args:
        key: Storage key. Dots express grouping ("address.city").
        value_type: Declared value type. Defaults to the reified type
            argument, if any.
    """

    __origin__: Optional[type] = None
    __args__: Tuple[Any, ...] = ()

    def __init__(self, key: str, value_type: Any = None):
        if not isinstance(key, str) or not key:
            raise ValueError(f"FieldID key must be a non-empty string, got {key!r}")
        self._key = key
        if value_type is None and self.__args__:
            value_type = self.__args__[0]
        self._value_type = value_type

    def __class_getitem__(cls, value_type: Any) -> type:
        origin = cls.__origin__ or cls
        return _make_reified_id_type(origin, value_type)

    @property
    def key(self) -> str:
        return self._key

    @property
    def value_type(self) -> Any:
        """Declared value type, or None when the type is inferred at registration."""
        return self._value_type

    @property
    def parent_key(self) -> Optional[str]:
        """Key of the enclosing group ("address" for "address.city"), None at top level."""
        if '.' not in self._key:
            return None
        return self._key.rsplit('.', 1)[0]

    @property
    def local_name(self) -> str:
        return self._key.rsplit('.', 1)[-1]

    def with_prefix(self, prefix: str) -> 'FieldID':
        """Return the same field nested under ``prefix`` ("user" + "name" -> "user.name")."""
        return type(self)(f"{prefix}.{self._key}", self._value_type)

    def __eq__(self, other: Any) -> bool:
        if not isinstance(other, FieldID):
            return NotImplemented
        return self._key == other._key

    def __hash__(self) -> int:
        return hash(self._key)

    def __repr__(self) -> str:
        if self._value_type is None:
            return f"FieldID({self._key!r})"
        return f"FieldID[{_type_name(self._value_type)}]({self._key!r})"


class ArrayFieldID(FieldID):
    """Field holding a list, with per-item addressing.

    ``ArrayFieldID[str]("tags")`` stores a ``list``; the type argument is the
    item type, available as ``item_type``.
    """

    def __init__(self, key: str, value_type: Any = None):
        item_type = self.__args__[0] if self.__args__ else None
        super().__init__(key, value_type if value_type is not None else list)
        self._item_type = item_type

    @property
    def item_type(self) -> Any:
        return self._item_type

    def item(self, index: int) -> FieldID:
        """Address one element: ``tags.item(2).key == "tags[2]"``."""
        if index < 0:
            raise ValueError(f"Array index must be non-negative, got {index}")
        return FieldID(f"{self._key}[{index}]", self._item_type)

    def with_prefix(self, prefix: str) -> 'ArrayFieldID':
        return type(self)(f"{prefix}.{self._key}", self._value_type)

    def __repr__(self) -> str:
        if self._item_type is None:
            return f"ArrayFieldID({self._key!r})"
        return f"ArrayFieldID[{_type_name(self._item_type)}]({self._key!r})"


def field_key(field: Any) -> str:
    """Normalize a FieldID or plain string key to the string key."""
    if isinstance(field, FieldID):
        return field.key
    if isinstance(field, str):
        return field
    raise TypeError(f"Expected FieldID or str key, got {type(field).__name__}")


# =============================================================================
# RUNTIME TYPE TAGS
# =============================================================================

def type_tag_for(value_type: Any) -> TypeTag:
    """Normalize a declared type into a tuple of runtime classes.

    Returns None when the type cannot be checked at runtime (``Any``, bare
    TypeVars), which disables checking for the field. ``Optional[X]`` and
    unions flatten to their members; parameterized generics check their
    origin only (``List[str]`` -> ``(list,)``).
    """
    if value_type is None or value_type is Any or isinstance(value_type, TypeVar):
        return None

    origin = get_origin(value_type)
    if origin in _UNION_ORIGINS:
        members = []
        for arg in get_args(value_type):
            if arg is type(None):
                continue
            member_tag = type_tag_for(arg)
            if member_tag is None:
                return None
            members.extend(member_tag)
        return tuple(members)
    if origin is Literal:
        return tuple({type(arg) for arg in get_args(value_type)})
    if origin is not None:
        return type_tag_for(origin)
    if isinstance(value_type, type):
        return (value_type,)
    return None


def type_tag_for_value(value: Any) -> TypeTag:
    """Infer a tag from an initial value. Numbers interchange int and float."""
    if value is None:
        return None
    value_cls = type(value)
    if value_cls is bool:
        return (bool,)
    if value_cls in (int, float):
        return (int, float)
    return (value_cls,)


def matches_type(value: Any, tag: TypeTag) -> bool:
    """Check ``value`` against a tag produced by :func:`type_tag_for`.

    None always matches (every field is nullable). Subclass instances match a
    supertype tag. Integers are accepted by float and complex fields, but
    booleans are never accepted by numeric fields.
    """
    if tag is None or value is None:
        return True
    if isinstance(value, bool):
        return any(t is bool or (t not in _NUMERIC_TYPES and isinstance(value, t)) for t in tag)
    if isinstance(value, tag):
        return True
    if isinstance(value, int) and (float in tag or complex in tag):
        return True
    if isinstance(value, float) and complex in tag:
        return True
    return False


def describe_tag(tag: TypeTag) -> str:
    if tag is None:
        return 'Any'
    return ' | '.join(t.__name__ for t in tag)
