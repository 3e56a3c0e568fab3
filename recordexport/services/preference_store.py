"""
Key-value persistence used for column customisation.

Provides a backend-agnostic async interface with an in-memory implementation
and a SQLAlchemy-backed one.
"""

import copy
from typing import Any, Dict, Iterable, List, Optional, Protocol, Union
from fastapi.concurrency import run_in_threadpool
from sqlalchemy.orm import Session, sessionmaker
from recordexport.crud.stored_preference import stored_preference_crud
from recordexport.core.logging_config import logger

Keys = Union[str, Iterable[str]]


def _as_key_list(keys: Keys) -> List[str]:
    if isinstance(keys, str):
        return [keys]
    return list(keys)


class KeyValueStore(Protocol):
    """Protocol for persisted key-value stores."""

    async def get(self, key: str) -> Optional[Any]:
        """Return the stored value or None."""
        ...

    async def get_many(self, keys: Iterable[str]) -> Dict[str, Any]:
        """Return stored values for the keys that exist."""
        ...

    async def set(self, key: str, value: Any) -> None:
        """Store a JSON-compatible value."""
        ...

    async def remove(self, keys: Keys) -> None:
        """Remove one or several keys."""
        ...

    async def keys(self, prefix: str = "") -> List[str]:
        """List stored keys starting with prefix."""
        ...


class InMemoryKeyValueStore:
    """Dict backed store. Values are deep-copied in and out like a real store would serialise them."""

    def __init__(self, initial: Optional[Dict[str, Any]] = None):
        self._data: Dict[str, Any] = copy.deepcopy(initial) if initial else {}

    async def get(self, key: str) -> Optional[Any]:
        return copy.deepcopy(self._data.get(key))

    async def get_many(self, keys: Iterable[str]) -> Dict[str, Any]:
        return {key: copy.deepcopy(self._data[key]) for key in keys if key in self._data}

    async def set(self, key: str, value: Any) -> None:
        self._data[key] = copy.deepcopy(value)

    async def remove(self, keys: Keys) -> None:
        for key in _as_key_list(keys):
            self._data.pop(key, None)

    async def keys(self, prefix: str = "") -> List[str]:
        return [key for key in self._data if key.startswith(prefix)]


class DatabaseKeyValueStore:
    """
    Store backed by the stored_preference table.

    Each call opens its own session and runs the blocking SQLAlchemy work in
    the threadpool so the event loop is never held by database I/O.
    """

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    async def _run(self, func, *args):
        def work():
            db: Session = self.session_factory()
            try:
                return func(db, *args)
            finally:
                db.close()
        return await run_in_threadpool(work)

    async def get(self, key: str) -> Optional[Any]:
        def read(db: Session, key: str):
            entry = stored_preference_crud.get_by_key(db, key)
            return entry.value if entry else None
        return await self._run(read, key)

    async def get_many(self, keys: Iterable[str]) -> Dict[str, Any]:
        return await self._run(stored_preference_crud.get_many, list(keys))

    async def set(self, key: str, value: Any) -> None:
        await self._run(stored_preference_crud.create_or_update, key, value)

    async def remove(self, keys: Keys) -> None:
        removed = await self._run(stored_preference_crud.delete_keys, _as_key_list(keys))
        logger.debug(f"Removed {removed} stored preference entries")

    async def keys(self, prefix: str = "") -> List[str]:
        return await self._run(stored_preference_crud.list_keys, prefix)
