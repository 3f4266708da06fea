import abc
import logging
import sqlite3
import threading
from typing import Dict, Iterable, List, Optional

from .codec import decode, encode
from .db import connect_db, get_config, init_db
from .errors import NotFound, SerializationFailure
from .models import Status, Task
from .utils import now_iso

logger = logging.getLogger(__name__)


class Queue(abc.ABC):
    """
    Storage a worker consumes from. Implementations guarantee that
    try_reserve() hands a task to at most one worker and that save()
    only lands when the stored status still equals `expected`.
    """
    poll_interval: float = 0.5

    @abc.abstractmethod
    def enqueue(self, task: Task) -> None:
        ...

    @abc.abstractmethod
    def try_reserve(self, worker: str, profiles: Optional[Iterable[str]] = None) -> Optional[Task]:
        """Claim the oldest waiting task without blocking; None when there is none."""

    @abc.abstractmethod
    def save(self, task: Task, expected: Status, error: Optional[str] = None) -> bool:
        """Persist task.status if the stored status is still `expected`."""

    @abc.abstractmethod
    def find(self, identifier: str) -> Task:
        ...

    @abc.abstractmethod
    def list(self, status: Optional[Status] = None, profile: Optional[str] = None,
             tag: Optional[str] = None) -> List[Task]:
        ...

    def reserve(
        self,
        worker: str,
        profiles: Optional[Iterable[str]] = None,
        stop: Optional[threading.Event] = None,
        poll_interval: Optional[float] = None,
    ) -> Optional[Task]:
        """
        Block until a task is claimed. Returns None once `stop` is set.
        """
        interval = self.poll_interval if poll_interval is None else poll_interval
        stop = stop or threading.Event()
        while not stop.is_set():
            task = self.try_reserve(worker, profiles)
            if task is not None:
                return task
            stop.wait(interval)
        return None

    @abc.abstractmethod
    def release(self, identifier: str, worker: str) -> bool:
        """Drop `worker`'s claim on a task that is still waiting."""

    # Optional capabilities used by the CLI. Backends that only feed workers
    # may leave them unimplemented.
    def requeue(self, identifier: str, max_retries: Optional[int] = None) -> Task:
        raise NotImplementedError

    def error_of(self, identifier: str) -> Optional[str]:
        raise NotImplementedError

    def claimed_by(self, identifier: str) -> Optional[str]:
        raise NotImplementedError

    def counts(self) -> Dict[str, int]:
        raise NotImplementedError


class SqliteQueue(Queue):
    """Queue stored in a SQLite file; each thread gets its own connection."""

    def __init__(self, path: Optional[str] = None, poll_interval: Optional[float] = None):
        self.path = path
        init_db(path)
        self._local = threading.local()
        if poll_interval is None:
            poll_interval = float(self.config()["poll_interval"])
        self.poll_interval = poll_interval

    @property
    def conn(self) -> sqlite3.Connection:
        conn = getattr(self._local, "conn", None)
        if conn is None:
            conn = self._local.conn = connect_db(self.path)
        return conn

    def close(self):
        conn = getattr(self._local, "conn", None)
        if conn is not None:
            conn.close()
            self._local.conn = None

    def config(self) -> Dict[str, str]:
        return get_config(self.conn)

    # ---------- Tasks: enqueue / claim / save ----------
    def enqueue(self, task: Task) -> None:
        payload = encode(task)
        ts = now_iso()
        try:
            with self.conn:
                self.conn.execute(
                    """INSERT INTO tasks
                       (id, status, profile, job, created_at, updated_at, payload)
                       VALUES (?, ?, ?, ?, ?, ?, ?)""",
                    (task.identifier, task.status.value, str(task.profile), task.job_name,
                     task.created_at, ts, payload),
                )
        except sqlite3.IntegrityError:
            raise ValueError(f"Task '{task.identifier}' already exists.")

    def try_reserve(self, worker: str, profiles: Optional[Iterable[str]] = None) -> Optional[Task]:
        profiles = list(profiles or [])
        sql = "SELECT id, payload FROM tasks WHERE status=? AND picked_by IS NULL"
        params = [Status.WAITING.value]
        if profiles:
            sql += " AND profile IN (%s)" % ",".join("?" * len(profiles))
            params += profiles
        sql += " ORDER BY created_at ASC, rowid ASC LIMIT 1"

        while True:
            with self.conn:
                row = self.conn.execute(sql, params).fetchone()
                if not row:
                    return None
                updated = self.conn.execute(
                    "UPDATE tasks SET picked_by=?, updated_at=? "
                    "WHERE id=? AND status=? AND picked_by IS NULL",
                    (worker, now_iso(), row["id"], Status.WAITING.value),
                )
                if updated.rowcount != 1:
                    # another worker got there first
                    return None
            try:
                return decode(row["payload"])
            except SerializationFailure as e:
                logger.error("Discarding unreadable task %s: %s", row["id"], e)
                with self.conn:
                    self.conn.execute(
                        "UPDATE tasks SET status=?, last_error=?, updated_at=? WHERE id=?",
                        (Status.FAILED.value, str(e)[:500], now_iso(), row["id"]),
                    )

    def save(self, task: Task, expected: Status, error: Optional[str] = None) -> bool:
        with self.conn:
            updated = self.conn.execute(
                """UPDATE tasks
                   SET status=?, payload=?, updated_at=?, last_error=COALESCE(?, last_error)
                   WHERE id=? AND status=?""",
                (task.status.value, encode(task), now_iso(),
                 error[:500] if error else None, task.identifier, Status(expected).value),
            )
        return updated.rowcount == 1

    def release(self, identifier: str, worker: str) -> bool:
        with self.conn:
            updated = self.conn.execute(
                "UPDATE tasks SET picked_by=NULL, updated_at=? "
                "WHERE id=? AND status=? AND picked_by=?",
                (now_iso(), identifier, Status.WAITING.value, worker),
            )
        return updated.rowcount == 1

    def requeue(self, identifier: str, max_retries: Optional[int] = None) -> Task:
        """
        Put a failed task back to waiting. This is the only way out of FAILED.
        A waiting task still claimed by a worker that never started it (the
        worker died between claim and RUNNING) has its claim dropped instead.
        """
        row = self.conn.execute(
            "SELECT status, attempts, payload, picked_by FROM tasks WHERE id=?", (identifier,)
        ).fetchone()
        if not row:
            raise NotFound(identifier)
        if row["status"] == Status.WAITING.value and row["picked_by"]:
            if not self.release(identifier, row["picked_by"]):
                raise ValueError(f"Task '{identifier}' changed while retrying.")
            logger.info("Released task %s claimed by %s", identifier, row["picked_by"])
            return decode(row["payload"])
        if row["status"] != Status.FAILED.value:
            raise ValueError(f"Task '{identifier}' is {row['status']}, only failed tasks can be retried.")
        if max_retries is not None and row["attempts"] >= max_retries:
            raise ValueError(f"Task '{identifier}' already retried {row['attempts']} time(s).")

        task = decode(row["payload"])
        task.update_status(Status.WAITING)
        with self.conn:
            updated = self.conn.execute(
                """UPDATE tasks
                   SET status=?, payload=?, attempts=attempts+1, updated_at=?, picked_by=NULL, last_error=NULL
                   WHERE id=? AND status=?""",
                (Status.WAITING.value, encode(task), now_iso(), identifier, Status.FAILED.value),
            )
        if updated.rowcount != 1:
            raise ValueError(f"Task '{identifier}' changed while retrying.")
        return task

    # ---------- Queries ----------
    def find(self, identifier: str) -> Task:
        row = self.conn.execute("SELECT payload FROM tasks WHERE id=?", (identifier,)).fetchone()
        if not row:
            raise NotFound(identifier)
        return decode(row["payload"])

    def list(self, status: Optional[Status] = None, profile: Optional[str] = None,
             tag: Optional[str] = None) -> List[Task]:
        sql = "SELECT id, payload FROM tasks"
        clauses, params = [], []
        if status:
            clauses.append("status=?")
            params.append(Status(status).value)
        if profile:
            clauses.append("profile=?")
            params.append(str(profile))
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY created_at ASC, rowid ASC"

        tasks = []
        for row in self.conn.execute(sql, params).fetchall():
            try:
                task = decode(row["payload"])
            except SerializationFailure as e:
                logger.warning("Skipping unreadable task %s: %s", row["id"], e)
                continue
            if tag is None or task.has_tag(tag):
                tasks.append(task)
        return tasks

    def error_of(self, identifier: str) -> Optional[str]:
        row = self.conn.execute("SELECT last_error FROM tasks WHERE id=?", (identifier,)).fetchone()
        if not row:
            raise NotFound(identifier)
        return row["last_error"]

    def claimed_by(self, identifier: str) -> Optional[str]:
        row = self.conn.execute("SELECT picked_by FROM tasks WHERE id=?", (identifier,)).fetchone()
        if not row:
            raise NotFound(identifier)
        return row["picked_by"]

    def counts(self) -> Dict[str, int]:
        out = {}
        for s in Status:
            out[s.value] = self.conn.execute(
                "SELECT COUNT(1) AS c FROM tasks WHERE status=?",
                (s.value,),
            ).fetchone()["c"]
        return out
