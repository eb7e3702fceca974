"""Tests for ResourceTracker."""

import threading

import pytest

from demoflow.tracker import ResourceTracker, new_resource


def test_list_keeps_creation_order(tracker):
    a = tracker.record(new_resource("run-1", "bucket", "a", "s1"))
    b = tracker.record(new_resource("run-1", "object", "b", "s2"))
    tracker.record(new_resource("run-2", "bucket", "other", "s1"))

    assert tracker.list("run-1") == [a, b]
    assert len(tracker) == 3


def test_release_removes_only_that_resource(tracker):
    a = tracker.record(new_resource("run-1", "bucket", "a", "s1"))
    b = tracker.record(new_resource("run-1", "bucket", "b", "s2"))

    released = tracker.release(a.resource_id)

    assert released == a
    assert tracker.list("run-1") == [b]
    assert tracker.get(a.resource_id) is None
    assert tracker.get(b.resource_id) == b


def test_release_unknown_raises(tracker):
    with pytest.raises(KeyError):
        tracker.release("nope")


def test_duplicate_record_rejected(tracker):
    r = tracker.record(new_resource("run-1", "bucket", "a", "s1"))
    with pytest.raises(ValueError):
        tracker.record(r)


def test_abandon_returns_leftovers(tracker):
    tracker.record(new_resource("run-1", "bucket", "a", "s1"))
    tracker.record(new_resource("run-1", "bucket", "b", "s1"))

    left = tracker.abandon("run-1")

    assert [r.identifier for r in left] == ["a", "b"]
    assert tracker.list("run-1") == []
    assert len(tracker) == 0
    assert tracker.abandon("run-1") == []


def test_concurrent_record_and_release():
    tracker = ResourceTracker()
    per_thread = 200

    def work(n):
        ids = [tracker.record(new_resource("run", "bucket", f"{n}-{i}", "s")).resource_id for i in range(per_thread)]
        for rid in ids[::2]:
            tracker.release(rid)

    threads = [threading.Thread(target=work, args=(n,)) for n in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len(tracker) == 8 * per_thread // 2
    assert len(tracker.list("run")) == 8 * per_thread // 2
