from .errors import (
    ExecutionFailure, ExecutionTimeout, JobQueueError, NotFound,
    SerializationFailure, UnresolvableJob,
)
from .jobs import Job, JobRegistry, registry
from .models import Profile, Status, Task, human_job_name
from .queue import Queue, SqliteQueue
from .worker import Worker, start_workers
