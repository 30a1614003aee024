"""Controller-wide configuration."""

from dataclasses import dataclass

from formstate.validation import ValidationMode


@dataclass(frozen=True)
class FormConfig:
    """Defaults shared by every field of one controller.

    Attributes:
        validation_mode: Mode for fields whose own mode is AUTO. Must not be AUTO.
        debounce: Seconds to wait before running async validators.
        history_limit: Maximum number of undo entries kept.
        track_history: Record undo/redo history at all.
        persistence_debounce: Seconds of quiet before values are saved.
        wait_for_pending: Whether ``submit`` waits for async work by default.
    """
    validation_mode: ValidationMode = ValidationMode.ALWAYS
    debounce: float = 0.3
    history_limit: int = 50
    track_history: bool = True
    persistence_debounce: float = 0.5
    wait_for_pending: bool = True

    def __post_init__(self):
        if self.validation_mode is ValidationMode.AUTO:
            raise ValueError("FormConfig.validation_mode cannot be AUTO")
        if self.debounce < 0 or self.persistence_debounce < 0:
            raise ValueError("Debounce durations must be non-negative")
        if self.history_limit < 1:
            raise ValueError(f"history_limit must be at least 1, got {self.history_limit}")
