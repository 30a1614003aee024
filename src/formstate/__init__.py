"""
Reactive form state management.

This package tracks field values, validation results, dirty/touched/pending
flags, async validation, dependency-triggered re-validation, undo/redo
history and submission, and exposes it all as immutable snapshots that UI
code can render from.

Key Features:
- Typed field handles with runtime type checks (FieldID[int]("age"))
- Sync, cross-field and debounced async validators with stale-result rejection
- One-level dependency re-validation
- Batched updates with a single notification
- Linear undo/redo
- Submission that waits for pending async work
- Race-safe async-sourced fields ("last request wins")
- Pluggable persistence, messages and analytics

Quick Start:
    >>> from formstate import FormController, FieldDefinition, FieldID
    >>>
    >>> age = FieldID[int]("age")
    >>> form = FormController([
    ...     FieldDefinition(age, initial_value=0,
    ...                     validator=lambda v: "must be 18 or older" if v < 18 else None),
    ... ])
    >>> form.set_value(age, 20)
    >>> form.get_validation(age).is_valid
    True

Modules:
    - field_id: Field handles and runtime type tags
    - validation: ValidationResult and validation/reset enums
    - field_definition: Per-field configuration
    - snapshot_model: FormSnapshot and undo/redo History
    - form_controller: The FormController engine
    - async_field: AsyncFieldCoordinator for async-sourced fields
    - validators: Fluent validator chains
    - messages: Message catalogue and validation keys
    - persistence: Save/load backends
    - analytics: Lifecycle event hooks
    - stream: Multi-subscriber snapshot stream
    - batch: Bulk update builder and result
    - config: Controller-wide defaults
"""

# Field identity
from formstate.field_id import (
    FieldID,
    ArrayFieldID,
    FieldTypeError,
    UnregisteredFieldError,
    field_key,
    type_tag_for,
    matches_type,
)

# Validation
from formstate.validation import (
    ValidationResult,
    ValidationMode,
    ResetStrategy,
    InitialValueStrategy,
)

# Definitions, snapshots, configuration
from formstate.field_definition import FieldDefinition
from formstate.snapshot_model import FormSnapshot, History
from formstate.config import FormConfig
from formstate.batch import Batch, BatchResult

# Engine
from formstate.form_controller import FormController
from formstate.async_field import AsyncFieldCoordinator, AsyncFieldState, AsyncStatus
from formstate.stream import SnapshotStream, Subscription, StreamClosedError

# Collaborators
from formstate.validators import Validators, ValidatorChain, StringValidator, NumberValidator, GenericValidator
from formstate.messages import FormMessages, DefaultFormMessages, ValidationKeys
from formstate.persistence import FormPersistence, InMemoryFormPersistence, JsonFileFormPersistence
from formstate.analytics import FormAnalytics, LoggingFormAnalytics

__all__ = [
    # Field identity
    'FieldID',
    'ArrayFieldID',
    'FieldTypeError',
    'UnregisteredFieldError',
    'field_key',
    'type_tag_for',
    'matches_type',
    # Validation
    'ValidationResult',
    'ValidationMode',
    'ResetStrategy',
    'InitialValueStrategy',
    # Definitions, snapshots, configuration
    'FieldDefinition',
    'FormSnapshot',
    'History',
    'FormConfig',
    'Batch',
    'BatchResult',
    # Engine
    'FormController',
    'AsyncFieldCoordinator',
    'AsyncFieldState',
    'AsyncStatus',
    'SnapshotStream',
    'Subscription',
    'StreamClosedError',
    # Collaborators
    'Validators',
    'ValidatorChain',
    'StringValidator',
    'NumberValidator',
    'GenericValidator',
    'FormMessages',
    'DefaultFormMessages',
    'ValidationKeys',
    'FormPersistence',
    'InMemoryFormPersistence',
    'JsonFileFormPersistence',
    'FormAnalytics',
    'LoggingFormAnalytics',
]

__version__ = '1.0.0'
__description__ = 'Reactive form state: typed fields, validation, dirty tracking, undo/redo and submission'
