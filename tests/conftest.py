"""Shared fixtures: stub jobs, an in-memory queue and a SQLite queue."""

import threading
import time

import pytest

from jobqueue.codec import decode, encode
from jobqueue.errors import ExecutionFailure, NotFound
from jobqueue.jobs import Job, JobRegistry
from jobqueue.models import Status
from jobqueue.queue import Queue, SqliteQueue


class SendEmailJob(Job):
    sent = []

    def perform(self, parameters):
        SendEmailJob.sent.append(dict(parameters))


class BrokenJob(Job):
    def perform(self, parameters):
        raise ExecutionFailure("smtp down")


class SlowJob(Job):
    def perform(self, parameters):
        time.sleep(parameters.get("seconds", 1))


class FakeQueue(Queue):
    """
    In-memory queue holding encoded records. A lock makes reservation and
    compare-and-set saves atomic, like a real backend.
    """
    poll_interval = 0.01

    def __init__(self):
        self.records = {}
        self.reserved = set()
        self.errors = {}
        self.order = []
        self.lock = threading.Lock()
        self.saves = []

    def enqueue(self, task):
        with self.lock:
            self.records[task.identifier] = encode(task)
            self.order.append(task.identifier)

    def try_reserve(self, worker, profiles=None):
        with self.lock:
            for identifier in self.order:
                if identifier in self.reserved:
                    continue
                task = decode(self.records[identifier])
                if task.status != Status.WAITING:
                    continue
                if profiles and str(task.profile) not in profiles:
                    continue
                self.reserved.add(identifier)
                return task
        return None

    def save(self, task, expected, error=None):
        with self.lock:
            stored = decode(self.records[task.identifier])
            if stored.status != expected:
                return False
            self.records[task.identifier] = encode(task)
            self.saves.append((task.identifier, expected, task.status))
            if error:
                self.errors[task.identifier] = error
            return True

    def release(self, identifier, worker):
        with self.lock:
            if identifier not in self.reserved:
                return False
            if decode(self.records[identifier]).status != Status.WAITING:
                return False
            self.reserved.discard(identifier)
            return True

    def find(self, identifier):
        try:
            return decode(self.records[identifier])
        except KeyError:
            raise NotFound(identifier)

    def list(self, status=None, profile=None, tag=None):
        tasks = [decode(self.records[i]) for i in self.order]
        return [
            t for t in tasks
            if (status is None or t.status == status)
            and (profile is None or str(t.profile) == profile)
            and (tag is None or t.has_tag(tag))
        ]

    def error_of(self, identifier):
        return self.errors.get(identifier)


@pytest.fixture
def registry():
    reg = JobRegistry()
    reg.register(SendEmailJob)
    reg.register(BrokenJob)
    reg.register(SlowJob)
    SendEmailJob.sent = []
    return reg


@pytest.fixture
def fake_queue():
    return FakeQueue()


@pytest.fixture
def sqlite_queue(tmp_path):
    queue = SqliteQueue(str(tmp_path / "queue.db"), poll_interval=0.01)
    yield queue
    queue.close()
