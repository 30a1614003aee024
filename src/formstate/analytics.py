"""Analytics hooks fired by the controller over a form's lifetime."""

import logging
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)


class FormAnalytics:
    """Receiver for form lifecycle events. Every hook is a no-op by default."""

    def on_form_started(self, form_id: Optional[str]) -> None:
        pass

    def on_field_changed(self, form_id: Optional[str], field_key: str, new_value: Any) -> None:
        pass

    def on_field_touched(self, form_id: Optional[str], field_key: str) -> None:
        pass

    def on_submit_attempt(self, form_id: Optional[str], values: Dict[str, Any]) -> None:
        pass

    def on_submit_success(self, form_id: Optional[str]) -> None:
        pass

    def on_submit_failure(self, form_id: Optional[str], errors: Dict[str, Any]) -> None:
        pass

    def on_form_abandoned(self, form_id: Optional[str], time_spent: float) -> None:
        """Called on close when the form was never submitted successfully.

        Args:
            form_id: Form identifier, if any.
            time_spent: Seconds since the controller was created.
        """


class LoggingFormAnalytics(FormAnalytics):
    """Writes every event to the ``formstate.analytics`` logger."""

    def __init__(self, prefix: str = 'formstate', enabled: bool = True, level: int = logging.DEBUG):
        self.prefix = prefix
        self.enabled = enabled
        self.level = level

    def _log(self, message: str) -> None:
        if self.enabled:
            logger.log(self.level, f"[{self.prefix}] {message}")

    def on_form_started(self, form_id: Optional[str]) -> None:
        self._log(f"Form started: {form_id or 'unknown'}")

    def on_field_changed(self, form_id: Optional[str], field_key: str, new_value: Any) -> None:
        self._log(f"Field changed [{field_key}]: {new_value!r}")

    def on_field_touched(self, form_id: Optional[str], field_key: str) -> None:
        self._log(f"Field touched [{field_key}]")

    def on_submit_attempt(self, form_id: Optional[str], values: Dict[str, Any]) -> None:
        self._log(f"Submit attempt: {values}")

    def on_submit_success(self, form_id: Optional[str]) -> None:
        self._log("Submit success")

    def on_submit_failure(self, form_id: Optional[str], errors: Dict[str, Any]) -> None:
        self._log(f"Submit failure, errors: {errors}")

    def on_form_abandoned(self, form_id: Optional[str], time_spent: float) -> None:
        self._log(f"Form abandoned after {time_spent:.0f}s (form id: {form_id or 'unknown'})")
