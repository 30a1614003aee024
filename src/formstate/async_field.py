"""
AsyncFieldCoordinator: one external async data source feeding one field.

State machine: IDLE -> LOADING -> {DATA, ERROR}. Every fetch request bumps
the generation counter and a completing fetch is applied only if its
generation is still current, so rapid dependency changes always end with
the result of the latest request ("last request wins").

Usage:
    cities = AsyncFieldCoordinator(controller, city_options, keep_previous_data=True)
    cities.depend_on(country, lambda code: api.load_cities(code), reset_field=city)
    await cities.wait()
"""

import asyncio
import logging
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Awaitable, Callable, List, Optional

from formstate.field_id import FieldTypeError, field_key
from formstate.validation import ResetStrategy

logger = logging.getLogger(__name__)

Fetch = Callable[[], Awaitable[Any]]

_UNSET = object()


class AsyncStatus(Enum):
    IDLE = 'idle'
    LOADING = 'loading'
    DATA = 'data'
    ERROR = 'error'


@dataclass(frozen=True)
class AsyncFieldState:
    """Immutable state of one async-sourced field.

    With ``keep_previous`` set, ``value`` keeps the last successful result
    while a newer fetch is LOADING or has failed.
    """
    status: AsyncStatus = AsyncStatus.IDLE
    generation: int = 0
    value: Any = None
    error: Optional[BaseException] = None
    keep_previous: bool = False

    @property
    def is_loading(self) -> bool:
        return self.status is AsyncStatus.LOADING

    @property
    def has_value(self) -> bool:
        return self.value is not None

    @property
    def has_error(self) -> bool:
        return self.status is AsyncStatus.ERROR


class AsyncFieldCoordinator:
    """Drives one field from an async source, race-safely.

    While a fetch is outstanding the field is flagged pending on the
    controller, so ``submit()`` waits for it. A successful result is written
    into the field (``sync_value``) and handed to ``on_data`` once.

    Args:
        controller: Controller owning the field.
        field_id: Registered field that receives the data.
        fetch: Coroutine function producing the data. Started immediately
            unless ``manual``; that requires a running event loop.
        keep_previous_data: Keep the last value visible while reloading.
        debounce: Seconds to delay the start of each fetch.
        on_data: Called with each applied result.
        on_retry: Fetch used by ``refresh()`` instead of the last one.
        sync_value: Write results into the controller field.
        manual: Never start on construction or controller reset.
    """

    def __init__(
        self,
        controller: Any,
        field_id: Any,
        fetch: Optional[Fetch] = None,
        *,
        keep_previous_data: bool = False,
        debounce: Optional[float] = None,
        on_data: Optional[Callable[[Any], None]] = None,
        on_retry: Optional[Fetch] = None,
        sync_value: bool = True,
        manual: bool = False,
    ):
        self._controller = controller
        self._field_id = field_id
        self._key = field_key(field_id)
        self._fetch = fetch
        self._debounce = debounce
        self._on_data = on_data
        self._on_retry = on_retry
        self._sync_value = sync_value
        self._manual = manual

        self._state = AsyncFieldState(keep_previous=keep_previous_data)
        self._debounce_task: Optional[asyncio.Task] = None
        self._fetch_tasks: List[asyncio.Task] = []
        self._waiters: List[asyncio.Future] = []
        self._on_state_changed_callbacks: List[Callable[[AsyncFieldState], None]] = []
        self._remove_dependency_listener: Optional[Callable[[], None]] = None
        self._last_dependency_value: Any = _UNSET
        self._suppress_reset_refresh = False
        self._requested_at_reset = -1
        self._closed = False

        controller.add_reset_callback(self._on_controller_reset)
        if fetch is not None and not manual:
            self.start()

    @property
    def state(self) -> AsyncFieldState:
        return self._state

    @property
    def field_key(self) -> str:
        return self._key

    # === State Subscription ===

    def on_state_changed(self, callback: Callable[[AsyncFieldState], None]) -> None:
        if callback not in self._on_state_changed_callbacks:
            self._on_state_changed_callbacks.append(callback)

    def off_state_changed(self, callback: Callable[[AsyncFieldState], None]) -> None:
        if callback in self._on_state_changed_callbacks:
            self._on_state_changed_callbacks.remove(callback)

    def _set_state(self, state: AsyncFieldState) -> None:
        self._state = state
        for callback in list(self._on_state_changed_callbacks):
            try:
                callback(state)
            except Exception as e:
                logger.warning(f"Error in async field state callback: {e}")
        if not state.is_loading:
            waiters, self._waiters = self._waiters, []
            for waiter in waiters:
                if not waiter.done():
                    waiter.set_result(state)

    def _set_pending(self, pending: bool) -> None:
        if self._controller.is_closed or not self._controller.is_field_registered(self._key):
            return
        self._controller.set_pending(self._key, pending)

    # === Fetching ===

    def start(self, fetch: Optional[Fetch] = None, *, force: bool = False) -> int:
        """Request a new fetch and return its generation.

        Any earlier request becomes stale: its debounce timer is cancelled
        and its result, if it still arrives, is dropped. ``force`` skips the
        debounce.
        """
        if self._closed:
            raise RuntimeError(f"Async field '{self._key}' is closed")
        if fetch is not None:
            self._fetch = fetch
        if self._fetch is None:
            raise ValueError(f"No fetch configured for async field '{self._key}'")

        loop = asyncio.get_running_loop()
        self._cancel_debounce()
        generation = self._state.generation + 1
        previous = self._state.value if self._state.keep_previous else None
        self._set_state(replace(self._state, status=AsyncStatus.LOADING, generation=generation, value=previous, error=None))
        self._set_pending(True)
        self._requested_at_reset = self._controller.state.reset_count

        current_fetch = self._fetch
        if self._debounce and not force:
            self._debounce_task = loop.create_task(self._debounced(generation, current_fetch))
        else:
            self._launch(loop, generation, current_fetch)
        logger.debug(f"Async field '{self._key}' requested generation {generation}")
        return generation

    def refresh(self) -> int:
        """Fetch again, through ``on_retry`` when configured."""
        if self._on_retry is not None:
            self._fetch = self._on_retry
        return self.start(force=True)

    def _launch(self, loop: asyncio.AbstractEventLoop, generation: int, fetch: Fetch) -> None:
        task = loop.create_task(self._run(generation, fetch))
        self._fetch_tasks.append(task)
        task.add_done_callback(self._forget_task)

    def _forget_task(self, task: asyncio.Task) -> None:
        if task in self._fetch_tasks:
            self._fetch_tasks.remove(task)

    async def _debounced(self, generation: int, fetch: Fetch) -> None:
        await asyncio.sleep(self._debounce)
        if generation != self._state.generation:
            return
        self._debounce_task = None
        self._launch(asyncio.get_running_loop(), generation, fetch)

    def _cancel_debounce(self) -> None:
        if self._debounce_task is not None and not self._debounce_task.done():
            self._debounce_task.cancel()
        self._debounce_task = None

    async def _run(self, generation: int, fetch: Fetch) -> None:
        try:
            result = await fetch()
        except Exception as e:
            if generation != self._state.generation:
                logger.debug(f"Discarding stale error for '{self._key}' (generation {generation})")
                return
            logger.warning(f"Async field '{self._key}' failed: {e}")
            self._set_pending(False)
            kept = self._state.value if self._state.keep_previous else None
            self._set_state(replace(self._state, status=AsyncStatus.ERROR, value=kept, error=e))
            return

        if generation != self._state.generation:
            logger.debug(f"Discarding stale result for '{self._key}' (generation {generation})")
            return

        self._set_pending(False)
        if self._sync_value and self._controller.is_field_registered(self._key):
            try:
                if self._controller.get_value(self._key) != result:
                    self._controller.set_value(self._field_id, result)
            except FieldTypeError as e:
                logger.warning(f"Async field '{self._key}' produced a value of the wrong type: {e}")
                self._set_state(replace(self._state, status=AsyncStatus.ERROR, error=e))
                return
        self._set_state(replace(self._state, status=AsyncStatus.DATA, value=result, error=None))

        if self._on_data is not None:
            try:
                self._on_data(result)
            except Exception as e:
                logger.warning(f"Error in on_data callback for '{self._key}': {e}")

    async def wait(self) -> AsyncFieldState:
        """Wait until the latest request settles (DATA or ERROR)."""
        while self._state.is_loading and not self._closed:
            waiter = asyncio.get_running_loop().create_future()
            self._waiters.append(waiter)
            await waiter
        return self._state

    # === Dependencies ===

    def depend_on(
        self,
        dependency: Any,
        fetch_for: Callable[[Any], Awaitable[Any]],
        reset_field: Optional[Any] = None,
        select: Optional[Callable[[Any], Any]] = None,
    ) -> Callable[[], None]:
        """Re-fetch whenever another field's value changes.

        Fetches once right away for the current dependency value.

        Args:
            dependency: Field to watch.
            fetch_for: Called with the (selected) dependency value, returns
                the awaitable to load.
            reset_field: Field reset to its initial value whenever the
                dependency changes after the first fetch.
            select: Picks the part of the dependency value that matters.

        Returns:
            A function that stops watching.
        """
        dependency_key = field_key(dependency)

        def on_dependency(snapshot: Any) -> None:
            value = snapshot.values.get(dependency_key)
            if select is not None:
                value = select(value)
            if self._last_dependency_value is not _UNSET and value == self._last_dependency_value:
                return
            first = self._last_dependency_value is _UNSET
            self._last_dependency_value = value
            if reset_field is not None and not first:
                self._suppress_reset_refresh = True
                try:
                    self._controller.reset_fields([reset_field], strategy=ResetStrategy.INITIAL_VALUES)
                finally:
                    self._suppress_reset_refresh = False
            self.start(lambda: fetch_for(value))

        if self._remove_dependency_listener is not None:
            self._remove_dependency_listener()
        self._last_dependency_value = _UNSET
        self._remove_dependency_listener = self._controller.add_field_listener(dependency, on_dependency)
        on_dependency(self._controller.state)
        return self._stop_watching

    def _stop_watching(self) -> None:
        if self._remove_dependency_listener is not None:
            self._remove_dependency_listener()
            self._remove_dependency_listener = None

    def _on_controller_reset(self, keys: List[str]) -> None:
        if self._manual or self._closed or self._fetch is None or self._key not in keys:
            return
        if self._suppress_reset_refresh:
            return
        # A dependency listener already requested a fetch for this reset
        if self._state.is_loading and self._requested_at_reset == self._controller.state.reset_count:
            return
        self.refresh()

    # === Lifecycle ===

    def close(self) -> None:
        """Drop all outstanding work and detach from the controller."""
        if self._closed:
            return
        self._closed = True
        self._cancel_debounce()
        for task in list(self._fetch_tasks):
            task.cancel()
        self._stop_watching()
        self._controller.remove_reset_callback(self._on_controller_reset)
        was_loading = self._state.is_loading
        self._set_state(replace(self._state, status=AsyncStatus.IDLE, generation=self._state.generation + 1))
        if was_loading:
            self._set_pending(False)
        logger.debug(f"Closed async field '{self._key}'")
