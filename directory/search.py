from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Callable, List, Optional

import structlog

from adapters.base import DirectoryAdapter, Record

from .cache import MemoCache
from .classifier import decode_record
from .models import DirectoryObjectRef, ObjectKind, RemoteResult, SearchResult, call_remote

logger = structlog.get_logger(__name__)

DEFAULT_MIN_LENGTH = 3
DEFAULT_RESULT_CAP = 200


@dataclass(frozen=True)
class SearchBucket:
    name: str
    kind: Optional[ObjectKind]
    query: Callable[[str, int], List[Record]]


class SearchEngine:
    def __init__(
        self,
        adapter: DirectoryAdapter,
        cache: MemoCache[str, SearchResult],
        min_length: int = DEFAULT_MIN_LENGTH,
        result_cap: int = DEFAULT_RESULT_CAP,
        connect: Optional[Callable[[], None]] = None,
    ) -> None:
        self._adapter = adapter
        self._cache = cache
        self.min_length = min_length
        self.result_cap = result_cap
        self._connect = connect or adapter.connect

    def buckets(self) -> List[SearchBucket]:
        adapter = self._adapter
        # Merge order of the result list follows this order.
        return [
            SearchBucket(
                "shared",
                ObjectKind.SHARED_MAILBOX,
                lambda text, limit: adapter.search_mailboxes("SharedMailbox", text, limit),
            ),
            SearchBucket(
                "room",
                ObjectKind.ROOM_MAILBOX,
                lambda text, limit: adapter.search_mailboxes("RoomMailbox", text, limit),
            ),
            SearchBucket(
                "equipment",
                ObjectKind.EQUIPMENT_MAILBOX,
                lambda text, limit: adapter.search_mailboxes("EquipmentMailbox", text, limit),
            ),
            SearchBucket("groups", None, adapter.search_groups),
            SearchBucket("dynamic", ObjectKind.DYNAMIC_DISTRIBUTION_GROUP, adapter.search_dynamic_groups),
        ]

    def is_searchable(self, text: Optional[str]) -> bool:
        return len((text or "").strip()) >= self.min_length

    def search(self, text: Optional[str]) -> SearchResult:
        query = (text or "").strip()
        if len(query) < self.min_length:
            return SearchResult()

        # A merge that lost a bucket is returned but not memoized, so it is retried.
        return self._cache.get_or_compute(
            query,
            lambda: self._run_buckets(query),
            store_if=lambda result: not result.failed_buckets,
        )

    def _run_buckets(self, query: str) -> SearchResult:
        self._connect()
        buckets = self.buckets()
        with ThreadPoolExecutor(max_workers=len(buckets), thread_name_prefix="search") as pool:
            futures = [pool.submit(call_remote, bucket.query, query, self.result_cap) for bucket in buckets]
            results: List[RemoteResult[List[Record]]] = [future.result() for future in futures]

        refs: List[DirectoryObjectRef] = []
        failed: List[str] = []
        for bucket, result in zip(buckets, results):
            if not result.ok:
                logger.warning("search_bucket_failed", bucket=bucket.name, query=query, error=result.error)
                failed.append(bucket.name)
                continue
            records = (result.value or [])[: self.result_cap]
            refs.extend(decode_record(record, bucket.kind) for record in records)

        logger.info("search_completed", query=query, results=len(refs), failed=failed)
        return SearchResult(refs=tuple(refs), failed_buckets=tuple(failed))
