from typing import Any, Dict, Generic, Iterator, List, Optional, TypeVar

T = TypeVar("T")


class MemoryCache(Generic[T]):
    """
    Process-local cache keyed by composite strings.

    Entries never expire on their own; owners invalidate explicitly.
    """

    def __init__(self):
        self._entries: Dict[str, T] = {}

    def get(self, key: str) -> Optional[T]:
        return self._entries.get(key)

    def set(self, key: str, value: T) -> None:
        self._entries[key] = value

    def delete(self, key: str) -> bool:
        return self._entries.pop(key, None) is not None

    def delete_prefix(self, prefix: str) -> int:
        matched = [key for key in self._entries if key.startswith(prefix)]
        for key in matched:
            del self._entries[key]
        return len(matched)

    def clear(self) -> None:
        self._entries.clear()

    def keys(self) -> List[str]:
        return list(self._entries)

    def __contains__(self, key: Any) -> bool:
        return key in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._entries))
