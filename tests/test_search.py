import pytest

from directory.cache import MemoCache
from directory.models import DirectoryConnectionError, ObjectKind, SearchResult
from directory.search import SearchEngine


def make_engine(directory, **kwargs):
    return SearchEngine(directory, MemoCache("search"), **kwargs)


def test_short_query_makes_no_remote_call(directory):
    engine = make_engine(directory)
    assert engine.search("  co ") == SearchResult()
    assert directory.call_count() == 0
    assert directory.connect_calls == 0
    assert len(engine._cache) == 0


def test_results_follow_bucket_order(directory):
    refs = make_engine(directory).search("conf-room").refs
    assert [ref.kind for ref in refs] == [
        ObjectKind.SHARED_MAILBOX,
        ObjectKind.ROOM_MAILBOX,
        ObjectKind.ROOM_MAILBOX,
        ObjectKind.EQUIPMENT_MAILBOX,
        ObjectKind.DISTRIBUTION_GROUP,
        ObjectKind.MAIL_SECURITY_GROUP,
        ObjectKind.DYNAMIC_DISTRIBUTION_GROUP,
    ]
    assert refs[0].remote_identity == "guid-conf-room-bookings"


def test_query_is_trimmed_and_memoized(directory):
    engine = make_engine(directory)
    first = engine.search(" conf-room ")
    calls = directory.call_count()
    second = engine.search("conf-room")
    assert second == first
    assert directory.call_count() == calls
    assert "conf-room" in engine._cache


def test_each_bucket_respects_result_cap(directory):
    result = make_engine(directory, result_cap=1).search("conf-room")
    assert len(result.refs) == 5
    assert all(call[-1] == 1 for call in directory.calls)


def test_failed_bucket_is_tolerated_and_not_memoized(directory):
    engine = make_engine(directory)
    directory.failing.add("search_mailboxes:RoomMailbox")

    result = engine.search("conf-room")
    assert ObjectKind.ROOM_MAILBOX not in {ref.kind for ref in result.refs}
    assert result.failed_buckets == ("room",)
    assert "conf-room" not in engine._cache

    directory.failing.clear()
    result = engine.search("conf-room")
    assert result.failed_buckets == ()
    assert len(result.refs) == 7
    assert "conf-room" in engine._cache


def test_failed_buckets_are_per_call(directory):
    engine = make_engine(directory)
    directory.failing.add("search_dynamic_groups")
    degraded = engine.search("conf-room")
    directory.failing.clear()
    clean = engine.search("sales")
    assert degraded.failed_buckets == ("dynamic",)
    assert clean.failed_buckets == ()


def test_search_connects_before_querying(directory):
    make_engine(directory).search("sales")
    assert directory.connect_calls == 1


def test_refused_connection_propagates(directory):
    directory.refuse_connection = True
    engine = make_engine(directory)
    with pytest.raises(DirectoryConnectionError):
        engine.search("sales")
    assert directory.call_count() == 0
    assert len(engine._cache) == 0


def test_no_match_returns_empty_result(directory):
    assert make_engine(directory).search("zzz-nothing").refs == ()
