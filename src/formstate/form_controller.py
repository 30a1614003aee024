"""
FormController: the field-state engine.

Owns the mapping from field keys to values, runs sync and debounced async
validators, re-validates dependents, tracks dirty/touched/pending flags,
keeps undo/redo history and coordinates submission. UI layers read
snapshots and call mutation methods; they never touch the maps directly.

Every mutation works on a private draft of the current snapshot and ends in
exactly one published FormSnapshot. Snapshots published while listeners are
being notified are queued and delivered after the current pass.

Thread safety: Not thread-safe. All calls are expected on one event loop.
"""
import asyncio
import copy
import dataclasses
import inspect
import logging
import time
from collections import deque
from contextlib import contextmanager
from typing import Any, Awaitable, Callable, Deque, Dict, Generator, Iterable, List, Mapping, Optional, Set

from formstate.analytics import FormAnalytics
from formstate.batch import Batch, BatchResult
from formstate.config import FormConfig
from formstate.field_definition import FieldDefinition
from formstate.field_id import (
    ArrayFieldID, FieldID, FieldTypeError, TypeTag, UnregisteredFieldError,
    describe_tag, field_key, matches_type, type_tag_for,
)
from formstate.messages import DefaultFormMessages, FormMessages
from formstate.persistence import FormPersistence
from formstate.snapshot_model import FormSnapshot, History
from formstate.stream import SnapshotStream, StreamClosedError
from formstate.validation import InitialValueStrategy, ResetStrategy, ValidationMode, ValidationResult

logger = logging.getLogger(__name__)

Listener = Callable[[FormSnapshot], None]

_NUMBERS = (int, float)


def _running_loop() -> Optional[asyncio.AbstractEventLoop]:
    try:
        return asyncio.get_running_loop()
    except RuntimeError:
        return None


def _tags_compatible(declared: TypeTag, registered: TypeTag) -> bool:
    if declared is None or registered is None:
        return True
    for a in declared:
        for b in registered:
            if issubclass(a, b) or issubclass(b, a):
                return True
            if a in _NUMBERS and b in _NUMBERS:
                return True
    return False


class _Draft:
    """Mutable working copy of a snapshot, private to one controller operation."""

    def __init__(self, snapshot: FormSnapshot):
        self.values: Dict[str, Any] = dict(snapshot.values)
        self.validations: Dict[str, ValidationResult] = dict(snapshot.validations)
        self.dirty: Dict[str, bool] = dict(snapshot.dirty)
        self.touched: Dict[str, bool] = dict(snapshot.touched)
        self.pending: Dict[str, bool] = dict(snapshot.pending)
        self.changed_fields: Set[str] = set(snapshot.changed_fields)
        self.is_submitting = snapshot.is_submitting
        self.current_step = snapshot.current_step
        self.reset_count = snapshot.reset_count
        self.values_changed = False

    def build(self, history_cursor: int) -> FormSnapshot:
        return FormSnapshot(
            values=self.values,
            validations=self.validations,
            dirty=self.dirty,
            touched=self.touched,
            pending=self.pending,
            is_submitting=self.is_submitting,
            changed_fields=frozenset(self.changed_fields),
            history_cursor=history_cursor,
            current_step=self.current_step,
            reset_count=self.reset_count,
        )

    def differs_from(self, snapshot: FormSnapshot) -> bool:
        return (
            self.values_changed
            or self.values != dict(snapshot.values)
            or self.validations != dict(snapshot.validations)
            or self.dirty != dict(snapshot.dirty)
            or self.touched != dict(snapshot.touched)
            or self.pending != dict(snapshot.pending)
            or self.changed_fields != snapshot.changed_fields
            or self.is_submitting != snapshot.is_submitting
            or self.current_step != snapshot.current_step
            or self.reset_count != snapshot.reset_count
        )


class FormController:
    """Reactive state for one form.

    Core state:
    - _definitions: key -> FieldDefinition (the registry)
    - _initial_values: key -> baseline used for dirty tracking and reset
    - _state: the current FormSnapshot, replaced on every mutation
    - _history: linear undo/redo over value maps

    Async validation state, per key:
    - _async_generation: bumped on every new run or cancellation
    - _async_tasks: the debounce+validate task in flight

    Everything else is derived from the snapshot (is_valid, is_dirty, ...).

    Args:
        fields: Field definitions to register immediately.
        initial_values: Baseline overrides keyed by FieldID or key.
        config: Controller-wide defaults.
        messages: Message catalogue used to resolve validation keys.
        persistence: Optional save/load backend; requires ``form_id``.
        form_id: Identifier used for persistence and analytics.
        analytics: Receiver for lifecycle events.
        focus_handler: Called with the first invalid key after a failed submit.
    """

    def __init__(
        self,
        fields: Iterable[FieldDefinition] = (),
        initial_values: Optional[Mapping[Any, Any]] = None,
        *,
        config: Optional[FormConfig] = None,
        messages: Optional[FormMessages] = None,
        persistence: Optional[FormPersistence] = None,
        form_id: Optional[str] = None,
        analytics: Optional[FormAnalytics] = None,
        focus_handler: Optional[Callable[[str], None]] = None,
    ):
        if persistence is not None and not form_id:
            raise ValueError("form_id is required when persistence is configured")

        self._config = config or FormConfig()
        self._messages: FormMessages = messages or DefaultFormMessages()
        self._persistence = persistence
        self._form_id = form_id
        self._analytics = analytics or FormAnalytics()
        self._focus_handler = focus_handler

        # === Registry ===
        self._definitions: Dict[str, FieldDefinition] = {}
        self._type_tags: Dict[str, TypeTag] = {}
        self._initial_values: Dict[str, Any] = {}
        self._initial_overrides: Dict[str, Any] = {
            field_key(k): v for k, v in (initial_values or {}).items()
        }
        self._dependents: Dict[str, List[str]] = {}

        # === Snapshot + history ===
        self._state = FormSnapshot()
        self._history = History(self._config.history_limit)
        self._history.reset({})
        self._history_pending = False

        # === Async validation ===
        self._async_generation: Dict[str, int] = {}
        self._async_tasks: Dict[str, asyncio.Task] = {}
        self._deferred_async: Set[str] = set()

        # === Notification ===
        self._listeners: List[Listener] = []
        self._field_listeners: Dict[str, List[Listener]] = {}
        self._reset_callbacks: List[Callable[[List[str]], None]] = []
        self._stream = SnapshotStream()
        self._notify_queue: Deque[FormSnapshot] = deque()
        self._notifying = False
        self._last_delivered: Optional[FormSnapshot] = None
        self._batch_depth = 0
        self._notify_deferred = False

        # === Submission, bindings, persistence ===
        self._last_submit_at: Optional[float] = None
        self._submitted_successfully = False
        self._bindings: List[Callable[[], None]] = []
        self._save_task: Optional[asyncio.Task] = None
        self._save_pending = False
        self._restore_task: Optional[asyncio.Task] = None
        self._created_at = time.monotonic()
        self._closed = False

        self.register_fields(fields)
        self._history.reset(self._state.values)
        self._state = self._state.copy_with(history_cursor=self._history.cursor)
        self._last_delivered = self._state

        self._analytics.on_form_started(self._form_id)

        if self._persistence is not None:
            loop = _running_loop()
            if loop is not None:
                self._restore_task = loop.create_task(self.restore(overwrite=False))
                self._restore_task.add_done_callback(self._on_restore_done)
            else:
                logger.debug(f"No running event loop, call restore() to load saved state for '{form_id}'")

    # ========== READ SURFACE ==========

    @property
    def state(self) -> FormSnapshot:
        return self._state

    @property
    def stream(self) -> SnapshotStream:
        return self._stream

    @property
    def config(self) -> FormConfig:
        return self._config

    @property
    def form_id(self) -> Optional[str]:
        return self._form_id

    @property
    def messages(self) -> FormMessages:
        return self._messages

    @messages.setter
    def messages(self, messages: FormMessages) -> None:
        """Swap the message catalogue. Existing snapshot state is untouched."""
        self._messages = messages

    @property
    def values(self) -> Dict[str, Any]:
        return dict(self._state.values)

    @property
    def initial_values(self) -> Dict[str, Any]:
        return copy.deepcopy(self._initial_values)

    @property
    def registered_keys(self) -> List[str]:
        return list(self._definitions)

    @property
    def is_closed(self) -> bool:
        return self._closed

    def is_field_registered(self, field_id: Any) -> bool:
        return field_key(field_id) in self._definitions

    def get_field(self, field_id: Any) -> Optional[FieldDefinition]:
        return self._definitions.get(field_key(field_id))

    def get_value(self, field_id: Any) -> Any:
        """Current value of a field, None if it is not registered.

        Raises:
            FieldTypeError: ``field_id`` declares a type incompatible with the
                type the field was registered with.
        """
        key = field_key(field_id)
        self._check_field_id(field_id, key)
        return self._state.values.get(key)

    def get_validation(self, field_id: Any) -> ValidationResult:
        return self._state.get_validation(field_id)

    def is_field_dirty(self, field_id: Any) -> bool:
        return self._state.is_field_dirty(field_id)

    def is_field_touched(self, field_id: Any) -> bool:
        return self._state.is_field_touched(field_id)

    def is_field_pending(self, field_id: Any) -> bool:
        return self._state.is_field_pending(field_id)

    def changed_values(self) -> Dict[str, Any]:
        """Values of every dirty field."""
        return {key: value for key, value in self._state.values.items() if self._state.dirty.get(key)}

    # ========== LISTENERS ==========

    def add_listener(self, listener: Listener) -> Callable[[], None]:
        """Call ``listener(snapshot)`` after every published change.

        Returns:
            A function that removes the listener.
        """
        if listener not in self._listeners:
            self._listeners.append(listener)
        return lambda: self.remove_listener(listener)

    def remove_listener(self, listener: Listener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def add_field_listener(self, field_id: Any, listener: Listener) -> Callable[[], None]:
        """Call ``listener`` only when the given field's slice of state changes."""
        key = field_key(field_id)
        callbacks = self._field_listeners.setdefault(key, [])
        if listener not in callbacks:
            callbacks.append(listener)

        def remove() -> None:
            if listener in self._field_listeners.get(key, []):
                self._field_listeners[key].remove(listener)
        return remove

    def add_reset_callback(self, callback: Callable[[List[str]], None]) -> None:
        """Subscribe to resets.

        Called after the reset snapshot is published, with the list of keys
        that were reset.
        """
        if callback not in self._reset_callbacks:
            self._reset_callbacks.append(callback)

    def remove_reset_callback(self, callback: Callable[[List[str]], None]) -> None:
        if callback in self._reset_callbacks:
            self._reset_callbacks.remove(callback)

    # ========== REGISTRATION ==========

    def register_field(self, definition: FieldDefinition) -> None:
        self.register_fields([definition])

    def register_fields(self, definitions: Iterable[FieldDefinition]) -> None:
        """Register several fields with one notification.

        Re-registering an identical definition is a no-op. A changed
        definition replaces the configuration but keeps the live value,
        unless the field is pristine and brings a new initial value.
        """
        definitions = list(definitions)
        for definition in definitions:
            tag = definition.type_tag
            if not matches_type(definition.initial_value, tag):
                raise FieldTypeError(definition.key, describe_tag(tag), type(definition.initial_value).__name__)

        draft = self._draft()
        registered = [d for d in definitions if self._register(draft, d)]
        if not registered:
            return
        self._rebuild_dependents()
        for definition in registered:
            self._validate_on_registration(draft, definition)
        self._commit(draft, record_history=False)

    def _register(self, draft: _Draft, definition: FieldDefinition) -> bool:
        key = definition.key
        existing = self._definitions.get(key)
        if existing is not None and existing == definition:
            return False

        self._definitions[key] = definition
        self._type_tags[key] = definition.type_tag

        if existing is None:
            baseline = self._initial_overrides.get(key, definition.initial_value)
            self._initial_values[key] = copy.deepcopy(baseline)
            if key in draft.values:
                # State preserved by unregister_field(preserve_state=True)
                draft.dirty[key] = draft.values[key] != baseline
            else:
                draft.values[key] = copy.deepcopy(baseline)
                draft.dirty[key] = False
                draft.touched[key] = False
            draft.pending.setdefault(key, False)
            draft.validations[key] = ValidationResult.VALID
            self._history.add_key(key, draft.values[key])
            logger.debug(f"Registered field '{key}' (type: {describe_tag(definition.type_tag)})")
        else:
            if definition.initial_value != existing.initial_value:
                self._adopt_initial_value(draft, definition, definition.initial_value)
            logger.debug(f"Replaced configuration of field '{key}'")
        return True

    def _validate_on_registration(self, draft: _Draft, definition: FieldDefinition) -> None:
        # Sync only; async validators first run on change or on validate()
        if self._effective_mode(definition) is not ValidationMode.ALWAYS:
            return
        key = definition.key
        error = self._run_sync_validators(definition, draft.values.get(key), draft)
        draft.validations[key] = ValidationResult.VALID if error is None else ValidationResult.invalid(error)

    def unregister_field(self, field_id: Any, preserve_state: bool = False) -> None:
        self.unregister_fields([field_id], preserve_state=preserve_state)

    def unregister_fields(self, field_ids: Iterable[Any], preserve_state: bool = False) -> None:
        """Remove fields from the registry.

        Validation and pending flags always go. With ``preserve_state`` the
        value, dirty and touched flags stay so a later re-registration picks
        them up again.
        """
        draft = self._draft()
        removed = False
        for field_id in field_ids:
            key = field_key(field_id)
            if self._definitions.pop(key, None) is None:
                continue
            removed = True
            self._cancel_async(key)
            self._type_tags.pop(key, None)
            self._initial_values.pop(key, None)
            draft.validations.pop(key, None)
            draft.pending.pop(key, None)
            draft.changed_fields.discard(key)
            if not preserve_state:
                draft.values.pop(key, None)
                draft.dirty.pop(key, None)
                draft.touched.pop(key, None)
                self._history.remove_key(key)
            logger.debug(f"Unregistered field '{key}' (preserve_state={preserve_state})")
        if removed:
            self._rebuild_dependents()
            self._commit(draft, record_history=False)

    def _rebuild_dependents(self) -> None:
        dependents: Dict[str, List[str]] = {}
        for key, definition in self._definitions.items():
            for dependency in definition.depends_on:
                dependents.setdefault(field_key(dependency), []).append(key)
        self._dependents = dependents

    def dependents_of(self, field_id: Any) -> List[str]:
        """Keys whose validators re-run when ``field_id`` changes."""
        return list(self._dependents.get(field_key(field_id), []))

    # ========== TYPE CHECKS ==========

    def _require_definition(self, key: str) -> FieldDefinition:
        definition = self._definitions.get(key)
        if definition is None:
            raise UnregisteredFieldError(key)
        return definition

    def _check_field_id(self, field_id: Any, key: str) -> None:
        if not isinstance(field_id, FieldID) or field_id.value_type is None:
            return
        registered = self._type_tags.get(key)
        declared = type_tag_for(field_id.value_type)
        if not _tags_compatible(declared, registered):
            raise FieldTypeError(key, describe_tag(registered), describe_tag(declared))

    def _type_error(self, key: str, value: Any) -> Optional[FieldTypeError]:
        tag = self._type_tags.get(key)
        if matches_type(value, tag):
            return None
        return FieldTypeError(key, describe_tag(tag), type(value).__name__)

    def _check_value(self, field_id: Any, key: str, value: Any) -> None:
        self._check_field_id(field_id, key)
        error = self._type_error(key, value)
        if error is not None:
            raise error

    # ========== VALUE MUTATION ==========

    def set_value(self, field_id: Any, value: Any) -> None:
        """Set one field's value and publish a single snapshot.

        Setting the value a field already holds never marks it dirty or
        changed; validators still run as configured.

        Raises:
            UnregisteredFieldError: No field is registered under the key.
            FieldTypeError: ``value`` does not match the field's type.
        """
        key = field_key(field_id)
        definition = self._require_definition(key)
        self._check_value(field_id, key, value)
        if definition.transformer is not None:
            value = definition.transformer(value)

        draft = self._draft()
        self._apply_values(draft, {key: value})
        self._commit(draft)

    def set_values(self, updates: Mapping[Any, Any], strict: bool = False) -> BatchResult:
        """Apply many values as one transaction with one notification.

        Args:
            updates: FieldID or key -> value.
            strict: Raise on the first unregistered key or type mismatch,
                applying nothing. Otherwise the valid subset is applied and
                the rejects are reported.

        Returns:
            BatchResult describing what was applied and rejected.
        """
        accepted: Dict[str, Any] = {}
        mismatches: Dict[str, str] = {}
        missing: List[str] = []

        for field_id, value in updates.items():
            key = field_key(field_id)
            definition = self._definitions.get(key)
            if definition is None:
                if strict:
                    raise UnregisteredFieldError(key)
                missing.append(key)
                continue
            try:
                self._check_value(field_id, key, value)
            except FieldTypeError as e:
                if strict:
                    raise
                mismatches[key] = f"expected {e.expected}, got {e.actual}"
                continue
            if definition.transformer is not None:
                value = definition.transformer(value)
            accepted[key] = value

        if accepted:
            draft = self._draft()
            self._apply_values(draft, accepted)
            self._commit(draft)
        if mismatches or missing:
            logger.debug(f"set_values rejected {len(mismatches)} mismatched and {len(missing)} missing fields")
        return BatchResult(tuple(accepted), mismatches, tuple(missing))

    def apply_batch(self, batch: Batch, strict: bool = False) -> BatchResult:
        return self.set_values(batch.updates, strict=strict)

    def update_from_dict(self, data: Mapping[str, Any]) -> BatchResult:
        """Apply values for registered keys only; unknown keys are ignored."""
        return self.set_values({k: v for k, v in data.items() if k in self._definitions})

    def _apply_values(self, draft: _Draft, updates: Mapping[str, Any]) -> List[str]:
        """Write values, then run validation for them and their direct dependents.

        All values land before any validator runs, so cross-field validators
        see the complete new state. Returns the keys whose value changed.
        """
        changed: List[str] = []
        for key, value in updates.items():
            if draft.values.get(key) == value and key in draft.values:
                continue
            draft.values[key] = value
            draft.dirty[key] = self._is_dirty(key, value)
            draft.changed_fields.add(key)
            draft.values_changed = True
            changed.append(key)

        for key in updates:
            self._validate_field(draft, key, automatic=True)

        # One level only: dependents of dependents are not re-validated here
        cascaded: Set[str] = set(updates)
        for key in changed:
            for dependent in self._dependents.get(key, []):
                if dependent not in cascaded and dependent in self._definitions:
                    cascaded.add(dependent)
                    self._validate_field(draft, dependent, automatic=True)

        for key in changed:
            self._analytics.on_field_changed(self._form_id, key, draft.values[key])
        return changed

    def _is_dirty(self, key: str, value: Any) -> bool:
        return value != self._initial_values.get(key)

    @contextmanager
    def batch(self) -> Generator['FormController', None, None]:
        """Group mutations into one notification and one undo step.

        Reads inside the block see every change immediately. Nested blocks
        are supported; only the outermost one publishes.

        Example:
            with controller.batch():
                controller.set_value(first, "Ada")
                controller.set_value(last, "Lovelace")
            # listeners notified once here
        """
        self._batch_depth += 1
        try:
            yield self
        finally:
            self._batch_depth -= 1
            if self._batch_depth == 0:
                if self._history_pending:
                    self._history_pending = False
                    self._history.record(self._state.values)
                    self._state = self._state.copy_with(history_cursor=self._history.cursor)
                if self._notify_deferred:
                    self._notify_deferred = False
                    self._notify()

    async def optimistic_update(
        self,
        field_id: Any,
        value: Any,
        action: Callable[[], Awaitable[Any]],
        revert_on_error: bool = True,
    ) -> Any:
        """Show ``value`` immediately while ``action`` runs.

        The field is marked pending until ``action`` finishes. On failure the
        previous value is restored when ``revert_on_error`` is set, and the
        exception is re-raised either way.
        """
        key = field_key(field_id)
        previous = self._state.values.get(key)
        with self.batch():
            self.set_value(field_id, value)
            self.set_pending(key, True)
        try:
            result = await action()
        except Exception:
            if revert_on_error:
                logger.debug(f"Optimistic update of '{key}' failed, reverting")
                self.set_value(field_id, previous)
            raise
        finally:
            if not self._closed and key in self._definitions:
                self.set_pending(key, False)
        return result

    def set_pending(self, field_id: Any, pending: bool) -> None:
        key = field_key(field_id)
        self._require_definition(key)
        draft = self._draft()
        draft.pending[key] = pending
        self._commit(draft, record_history=False)

    def set_field_error(self, field_id: Any, message: Optional[str]) -> None:
        """Set an external error (e.g. from a server response); None clears it."""
        key = field_key(field_id)
        self._require_definition(key)
        draft = self._draft()
        draft.validations[key] = ValidationResult.VALID if message is None else ValidationResult.invalid(message)
        self._commit(draft, record_history=False)

    def set_field_validating(self, field_id: Any, validating: bool) -> None:
        key = field_key(field_id)
        self._require_definition(key)
        draft = self._draft()
        draft.validations[key] = draft.validations.get(key, ValidationResult.VALID).with_validating(validating)
        self._commit(draft, record_history=False)

    def mark_as_touched(self, field_id: Any) -> None:
        """Mark a field touched; blur-mode fields validate right away."""
        key = field_key(field_id)
        definition = self._require_definition(key)
        if self._state.touched.get(key):
            return
        draft = self._draft()
        draft.touched[key] = True
        self._validate_field(draft, key, automatic=True)
        self._commit(draft, record_history=False)
        self._analytics.on_field_touched(self._form_id, definition.key)

    def update_initial_value(self, field_id: Any, value: Any) -> None:
        """Record a new initial value supplied after the field already exists.

        A pristine PREFER_LOCAL field adopts it as its live value. Otherwise
        only the baseline for dirty comparison moves.
        """
        key = field_key(field_id)
        definition = self._require_definition(key)
        self._check_value(field_id, key, value)
        definition = dataclasses.replace(definition, initial_value=value)
        self._definitions[key] = definition
        draft = self._draft()
        self._adopt_initial_value(draft, definition, value)
        self._commit(draft, record_history=False)

    def _adopt_initial_value(self, draft: _Draft, definition: FieldDefinition, value: Any) -> None:
        key = definition.key
        pristine = not draft.dirty.get(key, False)
        self._initial_values[key] = copy.deepcopy(value)
        if pristine and definition.initial_value_strategy is InitialValueStrategy.PREFER_LOCAL:
            if draft.values.get(key) != value:
                draft.values[key] = copy.deepcopy(value)
                draft.values_changed = True
            draft.dirty[key] = False
            self._validate_field(draft, key, automatic=True)
            logger.debug(f"Field '{key}' adopted new initial value")
        else:
            draft.dirty[key] = self._is_dirty(key, draft.values.get(key))

    # ========== ARRAY FIELDS ==========

    def _array_value(self, field_id: Any) -> List[Any]:
        key = field_key(field_id)
        self._require_definition(key)
        current = self._state.values.get(key)
        return list(current) if current is not None else []

    def _check_item(self, field_id: Any, item: Any) -> None:
        if isinstance(field_id, ArrayFieldID) and field_id.item_type is not None:
            tag = type_tag_for(field_id.item_type)
            if not matches_type(item, tag):
                raise FieldTypeError(f"{field_id.key}[]", describe_tag(tag), type(item).__name__)

    def add_array_item(self, field_id: Any, item: Any) -> None:
        self._check_item(field_id, item)
        items = self._array_value(field_id)
        items.append(item)
        self.set_value(field_id, items)

    def remove_array_item_at(self, field_id: Any, index: int) -> None:
        items = self._array_value(field_id)
        del items[index]
        self.set_value(field_id, items)

    def replace_array_item(self, field_id: Any, index: int, item: Any) -> None:
        self._check_item(field_id, item)
        items = self._array_value(field_id)
        items[index] = item
        self.set_value(field_id, items)

    def move_array_item(self, field_id: Any, from_index: int, to_index: int) -> None:
        items = self._array_value(field_id)
        items.insert(to_index, items.pop(from_index))
        self.set_value(field_id, items)

    def clear_array(self, field_id: Any) -> None:
        self._array_value(field_id)
        self.set_value(field_id, [])

    # ========== VALIDATION ENGINE ==========

    def _effective_mode(self, definition: FieldDefinition) -> ValidationMode:
        if definition.validation_mode is ValidationMode.AUTO:
            return self._config.validation_mode
        return definition.validation_mode

    def _auto_validation_allowed(self, definition: FieldDefinition, touched: bool) -> bool:
        mode = self._effective_mode(definition)
        if mode is ValidationMode.DISABLED:
            return False
        if mode in (ValidationMode.ON_BLUR, ValidationMode.ON_USER_INTERACTION):
            return touched
        return True

    def _resolve_error(self, definition: FieldDefinition, error: str, value: Any) -> str:
        return self._messages.resolve(error, definition.display_label, value)

    def _run_sync_validators(self, definition: FieldDefinition, value: Any, draft: _Draft) -> Optional[str]:
        """Run validator then cross-field validator; the first error wins."""
        if definition.validator is not None:
            try:
                error = definition.validator(value)
            except Exception as e:
                logger.warning(f"Validator for '{definition.key}' raised: {e}")
                return self._messages.validation_failed(str(e))
            if error is not None:
                return self._resolve_error(definition, error, value)

        if definition.cross_field_validator is not None:
            snapshot = draft.build(self._history.cursor)
            try:
                error = definition.cross_field_validator(value, snapshot)
            except Exception as e:
                logger.warning(f"Cross-field validator for '{definition.key}' raised: {e}")
                return self._messages.validation_failed(str(e))
            if error is not None:
                return self._resolve_error(definition, error, value)
        return None

    def _validate_field(self, draft: _Draft, key: str, automatic: bool) -> None:
        definition = self._definitions.get(key)
        if definition is None:
            return
        if automatic and not self._auto_validation_allowed(definition, draft.touched.get(key, False)):
            return

        value = draft.values.get(key)
        error = self._run_sync_validators(definition, value, draft)
        if error is not None:
            # Sync failure owns the field; any async run for it is now stale
            self._cancel_async(key)
            draft.validations[key] = ValidationResult.invalid(error)
            return

        if definition.async_validator is None:
            draft.validations[key] = ValidationResult.VALID
            return
        self._schedule_async(draft, key, value)

    def _schedule_async(self, draft: _Draft, key: str, value: Any) -> None:
        draft.validations[key] = ValidationResult.VALIDATING
        self._start_async_task(key, value)

    def _start_async_task(self, key: str, value: Any) -> None:
        self._cancel_async(key)
        generation = self._async_generation[key]
        loop = _running_loop()
        if loop is None:
            self._deferred_async.add(key)
            logger.debug(f"No running event loop, deferring async validation of '{key}'")
            return
        definition = self._definitions[key]
        debounce = self._config.debounce if definition.debounce is None else definition.debounce
        self._async_tasks[key] = loop.create_task(self._run_async_validation(key, value, generation, debounce))

    def _cancel_async(self, key: str) -> None:
        """Invalidate any async validation for ``key``: bump generation, cancel the task."""
        self._async_generation[key] = self._async_generation.get(key, 0) + 1
        task = self._async_tasks.pop(key, None)
        if task is not None and not task.done():
            task.cancel()
        self._deferred_async.discard(key)

    def _flush_deferred_async(self) -> None:
        """Start async validations that were requested while no loop was running."""
        for key in list(self._deferred_async):
            self._deferred_async.discard(key)
            if key in self._definitions:
                self._start_async_task(key, self._state.values.get(key))

    async def _run_async_validation(self, key: str, value: Any, generation: int, debounce: float) -> None:
        try:
            if debounce > 0:
                await asyncio.sleep(debounce)
            if self._async_generation.get(key) != generation:
                return
            definition = self._definitions.get(key)
            if definition is None or definition.async_validator is None:
                return

            try:
                error = await definition.async_validator(value)
            except Exception as e:
                logger.warning(f"Async validator for '{key}' raised: {e}")
                error = self._messages.validation_failed(str(e))
            else:
                if error is not None:
                    error = self._resolve_error(definition, error, value)

            if self._async_generation.get(key) != generation:
                logger.debug(f"Discarding stale async validation result for '{key}'")
                return
            self._apply_async_result(key, error)
        finally:
            if self._async_tasks.get(key) is asyncio.current_task():
                self._async_tasks.pop(key, None)
        
    def _apply_async_result(self, key: str, error: Optional[str]) -> None:
        draft = self._draft()
        draft.validations[key] = ValidationResult.VALID if error is None else ValidationResult.invalid(error)
        self._commit(draft, record_history=False)

    def validate(self, fields: Optional[Iterable[Any]] = None) -> bool:
        """Run validation now, ignoring validation modes.

        Async validators are started for fields whose sync validation passes.
        Returns True only if every requested field is valid and none is
        still validating.
        """
        keys = self._keys_for(fields)
        draft = self._draft()
        for key in keys:
            self._validate_field(draft, key, automatic=False)
        self._commit(draft, record_history=False)
        return all(
            draft.validations.get(key, ValidationResult.VALID).is_valid
            and not draft.validations.get(key, ValidationResult.VALID).is_validating
            for key in keys
        )

    def validate_step(self, fields: Iterable[Any]) -> bool:
        """Validate one step's fields of a multi-step form."""
        return self.validate(fields)

    async def validate_async(self, fields: Optional[Iterable[Any]] = None) -> bool:
        """Like ``validate`` but waits for async validators to settle."""
        keys = self._keys_for(fields)
        self._flush_deferred_async()
        self.validate(keys)
        while True:
            tasks = [self._async_tasks[k] for k in keys if k in self._async_tasks and not self._async_tasks[k].done()]
            if not tasks:
                break
            await asyncio.gather(*tasks, return_exceptions=True)
        return all(
            self._state.get_validation(key).is_valid and not self._state.get_validation(key).is_validating
            for key in keys
        )

    def _keys_for(self, fields: Optional[Iterable[Any]]) -> List[str]:
        if fields is None:
            return list(self._definitions)
        return [key for key in (field_key(f) for f in fields) if key in self._definitions]

    # ========== SUBMISSION ==========

    async def submit(
        self,
        on_valid: Callable[[Dict[str, Any]], Any],
        on_error: Optional[Callable[[Dict[str, ValidationResult]], Any]] = None,
        *,
        auto_focus_on_invalid: bool = True,
        throttle: Optional[float] = None,
        optimistic: bool = False,
        revert_on_error: bool = False,
        wait_for_pending: Optional[bool] = None,
    ) -> bool:
        """Validate and submit the form.

        Args:
            on_valid: Called with the values when the form is valid; awaited
                if it returns an awaitable.
            on_error: Called with all validation results when invalid.
            auto_focus_on_invalid: Pass the first invalid key to the focus handler.
            throttle: Seconds; a call within this window of the previous
                submit is silently ignored.
            optimistic: Commit current values as the new baseline before
                waiting, so the form shows as saved immediately. The old
                baseline comes back if the form turns out invalid.
            revert_on_error: With ``optimistic``, restore the old baseline if
                ``on_valid`` fails.
            wait_for_pending: Wait for loading fields and async validators.
                Defaults to the controller config.

        Returns:
            True if ``on_valid`` ran and completed; False if throttled or invalid.

        Raises:
            Whatever ``on_valid`` raises, after bookkeeping.
        """
        now = time.monotonic()
        if throttle is not None and self._last_submit_at is not None and now - self._last_submit_at < throttle:
            logger.debug("Submit ignored, still inside throttle window")
            return False
        self._last_submit_at = now

        previous_baseline: Optional[Dict[str, Any]] = None
        if optimistic:
            previous_baseline = copy.deepcopy(self._initial_values)
            self._commit_baseline(self._state.values)

        self._set_submitting(True)
        try:
            self._analytics.on_submit_attempt(self._form_id, dict(self._state.values))
            self._flush_deferred_async()
            wait = self._config.wait_for_pending if wait_for_pending is None else wait_for_pending
            self.validate()
            if wait:
                await self._wait_until_settled()

            snapshot = self._state
            if not snapshot.is_valid:
                logger.debug(f"Submit blocked by invalid fields: {sorted(snapshot.errors)}")
                self._analytics.on_submit_failure(self._form_id, snapshot.errors)
                if on_error is not None:
                    result = on_error(dict(snapshot.validations))
                    if inspect.isawaitable(result):
                        await result
                first_invalid = snapshot.first_invalid_key
                if auto_focus_on_invalid and self._focus_handler is not None and first_invalid is not None:
                    self._focus_handler(first_invalid)
                if previous_baseline is not None:
                    self._commit_baseline(previous_baseline)
                return False

            try:
                result = on_valid(dict(snapshot.values))
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                self._analytics.on_submit_failure(self._form_id, {'error': str(e)})
                if previous_baseline is not None and revert_on_error:
                    self._commit_baseline(previous_baseline)
                raise
            self._submitted_successfully = True
            self._analytics.on_submit_success(self._form_id)
            return True
        finally:
            self._set_submitting(False)

    async def _wait_until_settled(self) -> None:
        while self._state.is_pending and not self._closed:
            try:
                await self._stream.next()
            except StreamClosedError:
                return

    def _set_submitting(self, submitting: bool) -> None:
        draft = self._draft()
        draft.is_submitting = submitting
        self._commit(draft, record_history=False)

    def _commit_baseline(self, values: Mapping[str, Any]) -> None:
        """Make ``values`` the baseline and recompute dirty flags against it."""
        for key in self._definitions:
            if key in values:
                self._initial_values[key] = copy.deepcopy(values[key])
        draft = self._draft()
        for key in self._definitions:
            draft.dirty[key] = self._is_dirty(key, draft.values.get(key))
        self._commit(draft, record_history=False)

    # ========== RESET ==========

    def reset(self, strategy: ResetStrategy = ResetStrategy.INITIAL_VALUES, clear_errors: bool = False) -> None:
        """Restore every field and clear touched/submitting state.

        Pending async validation is always cancelled, so a late result can
        never bring back an error after a reset.
        """
        self._reset_keys(list(self._definitions), strategy, clear_errors)

    def reset_fields(
        self,
        field_ids: Iterable[Any],
        strategy: ResetStrategy = ResetStrategy.INITIAL_VALUES,
        clear_errors: bool = False,
    ) -> None:
        self._reset_keys(self._keys_for(field_ids), strategy, clear_errors)

    def reset_to_values(self, data: Mapping[Any, Any], clear_errors: bool = False) -> None:
        """Make ``data`` the new baseline and reset those fields to it."""
        baseline: Dict[str, Any] = {}
        for field_id, value in data.items():
            key = field_key(field_id)
            if key not in self._definitions:
                continue
            self._check_value(field_id, key, value)
            baseline[key] = value
        for key, value in baseline.items():
            self._initial_values[key] = copy.deepcopy(value)
        self._reset_keys(list(baseline), ResetStrategy.INITIAL_VALUES, clear_errors)

    def _reset_keys(self, keys: List[str], strategy: ResetStrategy, clear_errors: bool) -> None:
        if not isinstance(strategy, ResetStrategy):
            raise ValueError(f"Unknown reset strategy: {strategy!r}")
        draft = self._draft()
        for key in keys:
            self._cancel_async(key)
            if strategy is ResetStrategy.INITIAL_VALUES:
                value = copy.deepcopy(self._initial_values.get(key))
            else:
                value = self._definitions[key].reset_value(strategy)
            if draft.values.get(key) != value:
                draft.values_changed = True
            draft.values[key] = value
            draft.dirty[key] = False
            draft.touched[key] = False
            draft.pending[key] = False
            draft.changed_fields.discard(key)

        for key in keys:
            if clear_errors:
                draft.validations[key] = ValidationResult.VALID
                continue
            definition = self._definitions[key]
            if not self._auto_validation_allowed(definition, False):
                draft.validations[key] = ValidationResult.VALID
                continue
            error = self._run_sync_validators(definition, draft.values.get(key), draft)
            draft.validations[key] = ValidationResult.VALID if error is None else ValidationResult.invalid(error)

        draft.is_submitting = False
        draft.reset_count += 1
        self._commit(draft)
        logger.debug(f"Reset {len(keys)} fields (strategy={strategy.value}, clear_errors={clear_errors})")

        for callback in list(self._reset_callbacks):
            try:
                callback(list(keys))
            except Exception as e:
                logger.warning(f"Error in reset callback: {e}")

    # ========== UNDO / REDO ==========

    @property
    def can_undo(self) -> bool:
        return self._config.track_history and self._history.can_undo

    @property
    def can_redo(self) -> bool:
        return self._config.track_history and self._history.can_redo

    def undo(self) -> bool:
        """Step back one history entry. Returns False when there is nothing to undo."""
        if not self.can_undo:
            return False
        self._restore_values(self._history.undo())
        return True

    def redo(self) -> bool:
        if not self.can_redo:
            return False
        self._restore_values(self._history.redo())
        return True

    def clear_history(self) -> None:
        """Drop all undo/redo entries; the current values become the only entry."""
        self._history.reset(self._state.values)
        self._state = self._state.copy_with(history_cursor=self._history.cursor)

    def _restore_values(self, values: Dict[str, Any]) -> None:
        # Dirty and validation are recomputed against the baseline, not restored
        updates = {key: value for key, value in values.items() if key in self._definitions}
        draft = self._draft()
        self._apply_values(draft, updates)
        self._commit(draft, record_history=False)
        logger.debug(f"Restored history entry {self._history.cursor}")

    # ========== MULTI-STEP ==========

    @property
    def current_step(self) -> int:
        return self._state.current_step

    def go_to_step(self, step: int) -> None:
        if step < 0:
            raise ValueError(f"Step index must be non-negative, got {step}")
        draft = self._draft()
        draft.current_step = step
        self._commit(draft, record_history=False)

    def next_step(self, step_fields: Optional[Iterable[Any]] = None) -> bool:
        """Advance one step if ``step_fields`` (when given) validate."""
        if step_fields is not None and not self.validate_step(step_fields):
            return False
        self.go_to_step(self._state.current_step + 1)
        return True

    def previous_step(self) -> bool:
        if self._state.current_step == 0:
            return False
        self.go_to_step(self._state.current_step - 1)
        return True

    # ========== BINDING ==========

    @property
    def active_bindings_count(self) -> int:
        return len(self._bindings)

    def bind_field(
        self,
        target: Any,
        source_controller: 'FormController',
        source_field: Any,
        two_way: bool = False,
    ) -> Callable[[], None]:
        """Mirror ``source_field`` of another controller into ``target``.

        The target is synced immediately. With ``two_way`` changes also flow
        back; a value equal to the receiving field's current value is never
        re-propagated, which stops feedback loops.

        Returns:
            A function that removes the binding.
        """
        target_key = field_key(target)
        source_key = field_key(source_field)

        def forward(snapshot: FormSnapshot) -> None:
            if target_key not in self._definitions or source_key not in snapshot.values:
                return
            value = snapshot.values[source_key]
            if self._state.values.get(target_key) != value:
                self.set_value(target, value)

        def backward(snapshot: FormSnapshot) -> None:
            if not source_controller.is_field_registered(source_key) or target_key not in snapshot.values:
                return
            value = snapshot.values[target_key]
            if source_controller.state.values.get(source_key) != value:
                source_controller.set_value(source_field, value)

        removers = [source_controller.add_listener(forward)]
        if two_way:
            removers.append(self.add_listener(backward))
        forward(source_controller.state)

        def unbind() -> None:
            for remove in removers:
                remove()
            if unbind in self._bindings:
                self._bindings.remove(unbind)

        self._bindings.append(unbind)
        logger.debug(f"Bound '{target_key}' to '{source_key}' (two_way={two_way})")
        return unbind

    # ========== PUBLICATION ==========

    def _draft(self) -> _Draft:
        return _Draft(self._state)

    def _commit(self, draft: _Draft, record_history: bool = True, persist: bool = True) -> None:
        """Publish ``draft`` as the new snapshot, unless nothing changed."""
        if not draft.differs_from(self._state):
            return

        if draft.values_changed and record_history and self._config.track_history:
            if self._batch_depth:
                self._history_pending = True
            else:
                self._history.record(draft.values)

        self._state = draft.build(self._history.cursor)

        if draft.values_changed and persist:
            self._schedule_save()
        if self._deferred_async and _running_loop() is not None:
            self._flush_deferred_async()

        if self._batch_depth:
            self._notify_deferred = True
            return
        self._notify()

    def _notify(self) -> None:
        """Deliver the current snapshot; reentrant calls queue behind the active pass."""
        self._notify_queue.append(self._state)
        if self._notifying:
            return
        self._notifying = True
        try:
            while self._notify_queue:
                self._deliver(self._notify_queue.popleft())
        finally:
            self._notifying = False

    def _deliver(self, snapshot: FormSnapshot) -> None:
        previous = self._last_delivered
        self._last_delivered = snapshot
        logger.debug(f"Publishing snapshot to {len(self._listeners)} listeners")

        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception as e:
                logger.warning(f"Error in form listener: {e}")

        for key, callbacks in list(self._field_listeners.items()):
            if not callbacks or not self._field_slice_changed(key, previous, snapshot):
                continue
            for callback in list(callbacks):
                try:
                    callback(snapshot)
                except Exception as e:
                    logger.warning(f"Error in field listener for '{key}': {e}")

        self._stream.publish(snapshot)

    @staticmethod
    def _field_slice_changed(key: str, previous: Optional[FormSnapshot], current: FormSnapshot) -> bool:
        if previous is None:
            return True
        return (
            previous.values.get(key) != current.values.get(key)
            or previous.validations.get(key) != current.validations.get(key)
            or previous.dirty.get(key) != current.dirty.get(key)
            or previous.touched.get(key) != current.touched.get(key)
            or previous.pending.get(key) != current.pending.get(key)
        )

    # ========== PERSISTENCE ==========

    async def restore(self, overwrite: bool = True) -> bool:
        """Load saved values and merge them into registered fields.

        Args:
            overwrite: When False, fields changed since construction keep
                their current value.

        Returns:
            True if saved values were found and applied.
        """
        if self._persistence is None:
            return False
        saved = await self._persistence.load(self._form_id)
        if not saved:
            return False
        skipped = set() if overwrite else set(self._state.changed_fields)
        updates = {
            key: value for key, value in saved.items()
            if key in self._definitions and self._type_error(key, value) is None
            and key not in skipped
        }
        draft = self._draft()
        self._apply_values(draft, updates)
        self._commit(draft, record_history=False, persist=False)
        self._history.reset(self._state.values)
        self._state = self._state.copy_with(history_cursor=self._history.cursor)
        logger.info(f"Restored {len(updates)} saved values for form '{self._form_id}'")
        return True

    def _on_restore_done(self, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.warning(f"Failed to restore form '{self._form_id}': {error}")

    def _schedule_save(self) -> None:
        if self._persistence is None or self._closed:
            return
        self._save_pending = True
        loop = _running_loop()
        if loop is None:
            return
        if self._save_task is not None and not self._save_task.done():
            self._save_task.cancel()
        self._save_task = loop.create_task(self._save_after(self._config.persistence_debounce))

    async def _save_after(self, delay: float) -> None:
        await asyncio.sleep(delay)
        await self._save_now()

    async def _save_now(self) -> None:
        self._save_pending = False
        try:
            await self._persistence.save(self._form_id, dict(self._state.values))
        except Exception as e:
            logger.warning(f"Failed to persist form '{self._form_id}': {e}")

    async def flush_persistence(self) -> None:
        """Save immediately instead of waiting for the debounce window."""
        if self._persistence is None:
            return
        if self._save_task is not None and not self._save_task.done():
            self._save_task.cancel()
        self._save_task = None
        await self._save_now()

    async def clear_persisted(self) -> None:
        if self._persistence is not None:
            await self._persistence.clear(self._form_id)

    # ========== LIFECYCLE ==========

    def close(self) -> None:
        """Cancel all background work and release listeners. Idempotent."""
        if self._closed:
            return
        self._closed = True
        for key in list(self._async_tasks):
            self._cancel_async(key)
        for task in (self._save_task, self._restore_task):
            if task is not None and not task.done():
                task.cancel()
        for unbind in list(self._bindings):
            unbind()
        if not self._submitted_successfully:
            self._analytics.on_form_abandoned(self._form_id, time.monotonic() - self._created_at)
        self._stream.close()
        self._listeners.clear()
        self._field_listeners.clear()
        self._reset_callbacks.clear()
        logger.info(f"Closed form controller '{self._form_id or 'anonymous'}'")

    async def aclose(self) -> None:
        """Flush unsaved values, then close."""
        if self._persistence is not None and self._save_pending and not self._closed:
            await self.flush_persistence()
        self.close()
