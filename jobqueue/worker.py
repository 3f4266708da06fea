import logging
import signal
import threading
import time
from typing import Iterable, List, Optional

from .errors import ExecutionTimeout, UnresolvableJob
from .jobs import JobRegistry
from .models import Status, Task
from .queue import Queue

logger = logging.getLogger(__name__)

# Legal status moves for a worker. Terminal states have no way out here;
# re-queueing a failed task is an operator action (Queue.requeue).
TRANSITIONS = {
    Status.WAITING: {Status.RUNNING},
    Status.RUNNING: {Status.SUCCEEDED, Status.FAILED},
    Status.SUCCEEDED: set(),
    Status.FAILED: set(),
}


def transition(queue: Queue, task: Task, new_status: Status, error: Optional[str] = None) -> bool:
    """
    Move `task` to `new_status` and persist it. Illegal moves and lost
    compare-and-set writes leave both the task and the store untouched.
    """
    current = task.status
    if new_status not in TRANSITIONS[current]:
        logger.warning("Rejected transition %s -> %s for task %s", current, new_status, task.identifier)
        return False

    task.update_status(new_status)
    if not queue.save(task, expected=current, error=error):
        task.update_status(current)
        logger.warning("Task %s was modified concurrently; %s -> %s not applied",
                       task.identifier, current, new_status)
        return False
    return True


def execute(job, parameters, timeout: Optional[float] = None, name: str = "job"):
    """Run job.perform(parameters), raising ExecutionTimeout past `timeout` seconds."""
    if not timeout:
        return job.perform(parameters)

    outcome = {}

    def _target():
        try:
            outcome["result"] = job.perform(parameters)
        except (Exception, SystemExit) as e:
            outcome["error"] = e

    # The thread cannot be killed; after a timeout it is abandoned as a daemon.
    t = threading.Thread(target=_target, name=f"{name}-exec", daemon=True)
    t.start()
    t.join(timeout)
    if t.is_alive():
        raise ExecutionTimeout(timeout)
    if "error" in outcome:
        raise outcome["error"]
    return outcome.get("result")


class Worker:
    def __init__(
        self,
        queue: Queue,
        registry: JobRegistry,
        name: str = "worker-1",
        profiles: Optional[Iterable[str]] = None,
        timeout: Optional[float] = None,
        stop: Optional[threading.Event] = None,
    ):
        self.queue = queue
        self.registry = registry
        self.name = name
        self.profiles = list(profiles or [])
        self.timeout = timeout
        self.stop = stop or threading.Event()

    def run(self):
        logger.info("[%s] Waiting for tasks%s", self.name,
                    f" on {', '.join(self.profiles)}" if self.profiles else "")
        while not self.stop.is_set():
            try:
                task = self.queue.reserve(self.name, self.profiles or None, stop=self.stop)
                if task is None:
                    continue
                self.process(task)
            except (Exception, SystemExit) as e:
                logger.exception("[%s] Unexpected error: %s", self.name, e)
                time.sleep(1)
        logger.info("[%s] Worker stopped.", self.name)

    def process(self, task: Task) -> Status:
        """Run one reserved task to a terminal status and return that status."""
        if not transition(self.queue, task, Status.RUNNING):
            # give the claim back so another worker can pick the task up
            self.queue.release(task.identifier, self.name)
            return task.status

        logger.info("[%s] Executing task %s -> %s", self.name, task.identifier, task.job_name)
        started = time.monotonic()
        try:
            job = self.registry.resolve(task.job_name)
            execute(job, task.parameters, timeout=self.timeout, name=self.name)
        except UnresolvableJob as e:
            logger.error("[%s] Task %s failed: %s", self.name, task.identifier, e)
            transition(self.queue, task, Status.FAILED, error=f"{type(e).__name__}: {e}")
        except (Exception, SystemExit) as e:
            # a job calling sys.exit() fails its task, not the worker
            logger.warning("[%s] Task %s failed: %s: %s", self.name, task.identifier, type(e).__name__, e)
            transition(self.queue, task, Status.FAILED, error=f"{type(e).__name__}: {e}")
        else:
            logger.info("[%s] Task %s completed in %.2fs.", self.name, task.identifier,
                        time.monotonic() - started)
            transition(self.queue, task, Status.SUCCEEDED)
        return task.status


def setup_signal_handlers(stop: threading.Event) -> dict:
    """Make SIGINT/SIGTERM set `stop`. Returns the handlers that were replaced."""
    def _handler(signum, frame):
        logger.info("Received signal %s. Stopping workers", signum)
        stop.set()

    previous = {}
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            previous[sig] = signal.signal(sig, _handler)
        except ValueError:
            # not in the main thread
            pass
    return previous


def start_workers(
    queue: Queue,
    registry: JobRegistry,
    count: int = 1,
    profiles: Optional[Iterable[str]] = None,
    timeout: Optional[float] = None,
    stop: Optional[threading.Event] = None,
) -> List[Worker]:
    """Start `count` worker threads and block until they have all stopped."""
    stop = stop or threading.Event()
    previous = setup_signal_handlers(stop)
    workers, threads = [], []

    for i in range(count):
        w = Worker(queue, registry, name=f"worker-{i + 1}",
                   profiles=profiles, timeout=timeout, stop=stop)
        t = threading.Thread(target=w.run, name=w.name, daemon=True)
        t.start()
        workers.append(w)
        threads.append(t)
        logger.info("Started %s", t.name)

    try:
        while any(t.is_alive() for t in threads):
            time.sleep(0.5)
    finally:
        stop.set()
        for t in threads:
            t.join()
        for sig, handler in previous.items():
            if handler is not None:
                signal.signal(sig, handler)
        logger.info("All workers stopped gracefully.")
    return workers
