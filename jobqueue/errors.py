class JobQueueError(Exception):
    """Base class for every error raised by jobqueue."""


class NotFound(JobQueueError):
    def __init__(self, identifier: str):
        super().__init__(f"Task '{identifier}' not found.")
        self.identifier = identifier


class UnresolvableJob(JobQueueError):
    def __init__(self, name: str):
        super().__init__(f"Job '{name}' is not registered.")
        self.name = name


class ExecutionFailure(JobQueueError):
    """Raised by a job to report that it ran but did not succeed."""


class ExecutionTimeout(JobQueueError):
    def __init__(self, seconds: float):
        super().__init__(f"Job exceeded {seconds:g}s timeout.")
        self.seconds = seconds


class SerializationFailure(JobQueueError):
    """Stored task record could not be decoded."""
