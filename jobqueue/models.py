import re
import uuid
from dataclasses import dataclass
from enum import Enum
from types import MappingProxyType
from typing import Any, Iterable, Mapping, Optional, Union

from .utils import DATE_FORMAT, format_epoch, now_epoch


def new_identifier() -> str:
    return str(uuid.uuid4())


# Task States
class Status(str, Enum):
    WAITING = "waiting"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (Status.SUCCEEDED, Status.FAILED)

    def __str__(self) -> str:
        return self.value


PROFILE_RE = re.compile(r"^[A-Za-z0-9._-]+$")
DEFAULT_PROFILE = "default"


@dataclass(frozen=True)
class Profile:
    """Queue lane a task is routed to."""
    name: str = DEFAULT_PROFILE

    def __post_init__(self):
        if not isinstance(self.name, str) or not PROFILE_RE.match(self.name):
            raise ValueError(f"Invalid profile name: {self.name!r}")

    def __str__(self) -> str:
        return self.name


# CamelCase words; a run of capitals counts as one word (HTTPServer -> HTTP, Server)
_WORD_RE = re.compile(r"[A-Z][A-Z0-9]*(?=$|[A-Z][a-z0-9])|[A-Za-z][a-z0-9]+|[0-9]+")


def human_job_name(name: str) -> str:
    """'app.jobs.SendEmailJob' -> 'send_email'."""
    short = name.replace("\\", ".").rsplit(".", 1)[-1]
    words = [w.lower() for w in _WORD_RE.findall(short)]
    if len(words) > 1 and words[-1] == "job":
        words.pop()
    return "_".join(words)


def job_name_of(job) -> str:
    if isinstance(job, str):
        name = job.strip()
    elif isinstance(job, type):
        # a subclass must not inherit its parent's registered name
        name = job.__dict__.get("job_name") or job.__name__
    else:
        raise TypeError(f"Cannot name job from {type(job).__name__}")
    if not name:
        raise ValueError("Job name cannot be empty.")
    return name


def _freeze_parameters(parameters: Optional[Mapping[str, Any]]) -> Mapping[str, Any]:
    params = dict(parameters or {})
    for key in params:
        if not isinstance(key, str):
            raise TypeError(f"Parameter keys must be strings, got {key!r}")
    return MappingProxyType(params)


def _freeze_tags(tags: Optional[Iterable[str]]) -> frozenset:
    if isinstance(tags, str):
        tags = [tags]
    frozen = frozenset(tags or ())
    for tag in frozen:
        if not isinstance(tag, str):
            raise TypeError(f"Tags must be strings, got {tag!r}")
    return frozen


class Task:
    """
    A unit of work. Everything but the status is fixed at construction;
    the status is replaced wholesale through update_status().
    Two tasks are the same task iff their identifiers match.
    """

    __slots__ = ("_identifier", "_status", "_profile", "_job_name",
                 "_created_at", "_parameters", "_tags")

    def __init__(
        self,
        identifier: str,
        status: Status,
        profile: Profile,
        job_name: str,
        created_at: int,
        parameters: Optional[Mapping[str, Any]] = None,
        tags: Optional[Iterable[str]] = None,
    ):
        if not identifier:
            raise ValueError("Task identifier cannot be empty.")
        self._identifier = identifier
        self._status = Status(status)
        self._profile = profile if isinstance(profile, Profile) else Profile(profile)
        self._job_name = job_name_of(job_name)
        self._created_at = int(created_at)
        self._parameters = _freeze_parameters(parameters)
        self._tags = _freeze_tags(tags)

    @classmethod
    def create(
        cls,
        profile: Union[Profile, str],
        job,
        parameters: Optional[Mapping[str, Any]] = None,
        tags: Optional[Iterable[str]] = None,
    ) -> "Task":
        return cls(
            identifier=new_identifier(),
            status=Status.WAITING,
            profile=profile,
            job_name=job_name_of(job),
            created_at=now_epoch(),
            parameters=parameters,
            tags=tags,
        )

    @property
    def identifier(self) -> str:
        return self._identifier

    @property
    def status(self) -> Status:
        return self._status

    def update_status(self, status: Status) -> None:
        self._status = Status(status)

    @property
    def profile(self) -> Profile:
        return self._profile

    @property
    def job_name(self) -> str:
        return self._job_name

    @property
    def human_job_name(self) -> str:
        return human_job_name(self._job_name)

    @property
    def created_at(self) -> int:
        return self._created_at

    def format_created_at(self, fmt: Optional[str] = DATE_FORMAT) -> Union[str, int]:
        """Formatted UTC date, or the raw epoch seconds when `fmt` is None."""
        if fmt is None:
            return self._created_at
        return format_epoch(self._created_at, fmt)

    @property
    def parameters(self) -> Mapping[str, Any]:
        return self._parameters

    def parameter(self, key: str, default: Any = None) -> Any:
        return self._parameters.get(key, default)

    @property
    def tags(self) -> frozenset:
        return self._tags

    def has_tag(self, tag: str) -> bool:
        return tag in self._tags

    def __eq__(self, other) -> bool:
        if not isinstance(other, Task):
            return NotImplemented
        return self._identifier == other._identifier

    def __hash__(self) -> int:
        return hash(self._identifier)

    def __str__(self) -> str:
        return self._identifier

    def __repr__(self) -> str:
        return f"Task({self._identifier!r}, {self._status.value}, {self._job_name})"
