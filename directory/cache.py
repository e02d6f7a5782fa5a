from __future__ import annotations

from typing import Callable, Dict, Generic, Hashable, List, Optional, Tuple, TypeVar

from .models import CalendarPermissionRow, DetailsBundle, DirectoryObjectRef, ObjectKind, SearchResult

K = TypeVar("K", bound=Hashable)
V = TypeVar("V")


class MemoCache(Generic[K, V]):
    """Process-lifetime memoization with explicit invalidation only."""

    def __init__(self, name: str) -> None:
        self.name = name
        self._entries: Dict[K, V] = {}

    def get_or_compute(
        self,
        key: K,
        compute: Callable[[], V],
        store_if: Optional[Callable[[V], bool]] = None,
    ) -> V:
        if key in self._entries:
            return self._entries[key]
        # Exceptions from compute propagate and leave the key absent.
        value = compute()
        if store_if is None or store_if(value):
            self._entries[key] = value
        return value

    def get(self, key: K) -> Optional[V]:
        return self._entries.get(key)

    def invalidate(self, key: K) -> bool:
        return self._entries.pop(key, None) is not None

    def clear(self) -> None:
        self._entries.clear()

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    def __len__(self) -> int:
        return len(self._entries)


class SessionCaches:
    def __init__(self) -> None:
        self.search: MemoCache[str, SearchResult] = MemoCache("search")
        self.details: MemoCache[Tuple[ObjectKind, str], DetailsBundle] = MemoCache("details")
        self.calendar: MemoCache[str, List[CalendarPermissionRow]] = MemoCache("calendar")

    def invalidate_object(self, ref: DirectoryObjectRef) -> None:
        self.details.invalidate(ref.cache_key)
        if ref.kind.is_resource:
            self.calendar.invalidate(calendar_key(ref))

    def clear(self) -> None:
        self.search.clear()
        self.details.clear()
        self.calendar.clear()


def calendar_key(ref: DirectoryObjectRef) -> str:
    return (ref.primary_email or ref.remote_identity).lower()
