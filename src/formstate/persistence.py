"""
Save/load backends for form values.

The controller only talks to the FormPersistence interface. Implementations
must copy on the way in and on the way out, so that a caller mutating its
own dict can never corrupt what was stored.
"""

import asyncio
import copy
import json
import logging
import os
import re
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)


class FormPersistence(ABC):
    """Async storage for one value map per form id."""

    @abstractmethod
    async def save(self, form_id: str, values: Dict[str, Any]) -> None:
        """Store ``values`` under ``form_id``, replacing any previous entry."""

    @abstractmethod
    async def load(self, form_id: str) -> Optional[Dict[str, Any]]:
        """Return the stored values, or None if nothing was saved."""

    @abstractmethod
    async def clear(self, form_id: str) -> None:
        """Forget the entry for ``form_id``."""


class InMemoryFormPersistence(FormPersistence):
    """Process-local storage, mostly for tests and short sessions.

    Args:
        initial: Entries to start with, keyed by form id.
    """

    def __init__(self, initial: Optional[Dict[str, Dict[str, Any]]] = None):
        self._storage: Dict[str, Dict[str, Any]] = copy.deepcopy(dict(initial or {}))

    async def save(self, form_id: str, values: Dict[str, Any]) -> None:
        self._storage[form_id] = copy.deepcopy(dict(values))

    async def load(self, form_id: str) -> Optional[Dict[str, Any]]:
        stored = self._storage.get(form_id)
        return copy.deepcopy(stored) if stored is not None else None

    async def clear(self, form_id: str) -> None:
        self._storage.pop(form_id, None)

    def __contains__(self, form_id: str) -> bool:
        return form_id in self._storage


class JsonFileFormPersistence(FormPersistence):
    """One JSON file per form id inside ``directory``.

    Values must be JSON-serializable. File IO runs in a worker thread so the
    event loop is never blocked.
    """

    def __init__(self, directory: str):
        self.directory = directory

    def path_for(self, form_id: str) -> str:
        safe_name = re.sub(r'[^\w.-]', '_', form_id)
        return os.path.join(self.directory, f"{safe_name}.json")

    def _write(self, form_id: str, values: Dict[str, Any]) -> None:
        os.makedirs(self.directory, exist_ok=True)
        filepath = self.path_for(form_id)
        tmp_path = filepath + '.tmp'
        with open(tmp_path, 'w') as f:
            json.dump(values, f, indent=2)
        os.replace(tmp_path, filepath)
        logger.debug(f"Saved {len(values)} field values to {filepath}")

    def _read(self, form_id: str) -> Optional[Dict[str, Any]]:
        filepath = self.path_for(form_id)
        if not os.path.exists(filepath):
            return None
        with open(filepath, 'r') as f:
            data = json.load(f)
        logger.debug(f"Loaded {len(data)} field values from {filepath}")
        return data

    def _remove(self, form_id: str) -> None:
        filepath = self.path_for(form_id)
        if os.path.exists(filepath):
            os.remove(filepath)

    async def save(self, form_id: str, values: Dict[str, Any]) -> None:
        await asyncio.to_thread(self._write, form_id, copy.deepcopy(dict(values)))

    async def load(self, form_id: str) -> Optional[Dict[str, Any]]:
        return await asyncio.to_thread(self._read, form_id)

    async def clear(self, form_id: str) -> None:
        await asyncio.to_thread(self._remove, form_id)
