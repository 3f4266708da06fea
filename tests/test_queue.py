"""Tests for the SQLite queue backend."""

import threading

import pytest

from jobqueue.errors import NotFound, SerializationFailure
from jobqueue.models import Status, Task
from jobqueue.queue import Queue
from jobqueue.worker import transition


def test_find_after_enqueue(sqlite_queue):
    task = Task.create("default", "SendEmailJob", {"to": "a@b.com"}, ["mail"])
    sqlite_queue.enqueue(task)

    found = sqlite_queue.find(task.identifier)
    assert found == task
    assert found.status == Status.WAITING
    assert dict(found.parameters) == {"to": "a@b.com"}
    assert found.tags == {"mail"}


def test_find_unknown(sqlite_queue):
    with pytest.raises(NotFound):
        sqlite_queue.find("unknown")


def test_duplicate_enqueue_rejected(sqlite_queue):
    task = Task.create("default", "SendEmailJob")
    sqlite_queue.enqueue(task)
    with pytest.raises(ValueError):
        sqlite_queue.enqueue(task)


def test_reserve_is_exclusive_and_ordered(sqlite_queue):
    first = Task.create("default", "SendEmailJob")
    second = Task.create("default", "SendEmailJob")
    sqlite_queue.enqueue(first)
    sqlite_queue.enqueue(second)

    assert sqlite_queue.try_reserve("w1") == first
    assert sqlite_queue.try_reserve("w2") == second
    assert sqlite_queue.try_reserve("w3") is None


def test_reserve_by_profile(sqlite_queue):
    low = Task.create("low", "SendEmailJob")
    high = Task.create("high", "SendEmailJob")
    sqlite_queue.enqueue(low)
    sqlite_queue.enqueue(high)

    assert sqlite_queue.try_reserve("w", profiles=["high"]) == high
    assert sqlite_queue.try_reserve("w", profiles=["high"]) is None


def test_reserve_returns_none_when_stopped(sqlite_queue):
    stop = threading.Event()
    stop.set()
    assert sqlite_queue.reserve("w", stop=stop) is None


def test_reserve_blocks_until_task(sqlite_queue):
    task = Task.create("default", "SendEmailJob")
    threading.Timer(0.05, sqlite_queue.enqueue, args=(task,)).start()
    stop = threading.Event()
    threading.Timer(5, stop.set).start()

    assert sqlite_queue.reserve("w", stop=stop) == task
    stop.set()


def test_save_is_compare_and_set(sqlite_queue):
    task = Task.create("default", "SendEmailJob")
    sqlite_queue.enqueue(task)

    task.update_status(Status.RUNNING)
    assert sqlite_queue.save(task, expected=Status.WAITING)
    task.update_status(Status.SUCCEEDED)
    assert not sqlite_queue.save(task, expected=Status.WAITING)
    assert sqlite_queue.find(task.identifier).status == Status.RUNNING


def test_error_detail(sqlite_queue):
    task = Task.create("default", "SendEmailJob")
    sqlite_queue.enqueue(task)
    transition(sqlite_queue, task, Status.RUNNING)
    transition(sqlite_queue, task, Status.FAILED, error="ExecutionFailure: boom")

    assert sqlite_queue.error_of(task.identifier) == "ExecutionFailure: boom"
    with pytest.raises(NotFound):
        sqlite_queue.error_of("unknown")


def test_list_filters(sqlite_queue):
    a = Task.create("default", "SendEmailJob", tags=["mail"])
    b = Task.create("low", "SendEmailJob", tags=["mail", "bulk"])
    c = Task.create("low", "Cleanup")
    for t in (a, b, c):
        sqlite_queue.enqueue(t)
    transition(sqlite_queue, c, Status.RUNNING)

    assert sqlite_queue.list() == [a, b, c]
    assert sqlite_queue.list(profile="low") == [b, c]
    assert sqlite_queue.list(tag="mail") == [a, b]
    assert sqlite_queue.list(status=Status.RUNNING) == [c]
    assert sqlite_queue.list(status="waiting", tag="bulk") == [b]


def test_corrupt_record_is_isolated(sqlite_queue):
    good = Task.create("default", "SendEmailJob")
    sqlite_queue.enqueue(good)
    with sqlite_queue.conn:
        sqlite_queue.conn.execute(
            "INSERT INTO tasks (id, status, profile, job, created_at, updated_at, payload) "
            "VALUES ('bad', 'waiting', 'default', 'X', 0, '', ?)",
            (b"garbage",),
        )

    assert sqlite_queue.list() == [good]
    with pytest.raises(SerializationFailure):
        sqlite_queue.find("bad")

    # the corrupt record is the oldest, so reservation meets it first
    assert sqlite_queue.try_reserve("w") == good
    assert sqlite_queue.counts()["failed"] == 1
    assert sqlite_queue.error_of("bad")


def test_requeue_failed_task(sqlite_queue):
    task = Task.create("default", "SendEmailJob")
    sqlite_queue.enqueue(task)
    assert sqlite_queue.try_reserve("w") == task
    transition(sqlite_queue, task, Status.RUNNING)
    transition(sqlite_queue, task, Status.FAILED, error="boom")

    requeued = sqlite_queue.requeue(task.identifier, max_retries=1)
    assert requeued.status == Status.WAITING
    assert sqlite_queue.error_of(task.identifier) is None
    assert sqlite_queue.try_reserve("w") == task

    transition(sqlite_queue, requeued, Status.RUNNING)
    transition(sqlite_queue, requeued, Status.FAILED)
    with pytest.raises(ValueError):
        sqlite_queue.requeue(task.identifier, max_retries=1)


def test_requeue_only_failed(sqlite_queue):
    task = Task.create("default", "SendEmailJob")
    sqlite_queue.enqueue(task)
    with pytest.raises(ValueError):
        sqlite_queue.requeue(task.identifier)
    with pytest.raises(NotFound):
        sqlite_queue.requeue("unknown")


def test_requeue_releases_stale_claim(sqlite_queue):
    task = Task.create("default", "SendEmailJob")
    sqlite_queue.enqueue(task)
    assert sqlite_queue.try_reserve("crashed-worker") == task
    assert sqlite_queue.try_reserve("w2") is None
    assert sqlite_queue.claimed_by(task.identifier) == "crashed-worker"

    released = sqlite_queue.requeue(task.identifier, max_retries=3)
    assert released.status == Status.WAITING
    assert sqlite_queue.claimed_by(task.identifier) is None
    assert sqlite_queue.try_reserve("w2") == task


def test_release_needs_matching_claim(sqlite_queue):
    task = Task.create("default", "SendEmailJob")
    sqlite_queue.enqueue(task)
    sqlite_queue.try_reserve("w1")

    assert not sqlite_queue.release(task.identifier, "w2")
    assert sqlite_queue.claimed_by(task.identifier) == "w1"
    assert sqlite_queue.release(task.identifier, "w1")

    sqlite_queue.try_reserve("w1")
    transition(sqlite_queue, task, Status.RUNNING)
    assert not sqlite_queue.release(task.identifier, "w1")


def test_claimed_by_unknown(sqlite_queue):
    with pytest.raises(NotFound):
        sqlite_queue.claimed_by("unknown")


def test_counts(sqlite_queue):
    sqlite_queue.enqueue(Task.create("default", "SendEmailJob"))
    assert sqlite_queue.counts() == {"waiting": 1, "running": 0, "succeeded": 0, "failed": 0}


def test_config_defaults(sqlite_queue):
    assert sqlite_queue.config()["max_retries"] == "3"


def test_backend_must_implement_release():
    class NoRelease(Queue):
        def enqueue(self, task):
            pass

        def try_reserve(self, worker, profiles=None):
            return None

        def save(self, task, expected, error=None):
            return False

        def find(self, identifier):
            raise KeyError(identifier)

        def list(self, status=None, profile=None, tag=None):
            return []

    with pytest.raises(TypeError):
        NoRelease()

    class WorkerOnly(NoRelease):
        def release(self, identifier, worker):
            return False

    with pytest.raises(NotImplementedError):
        WorkerOnly().requeue("x")
