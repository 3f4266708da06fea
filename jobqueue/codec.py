"""
Task serialization.

Two separate paths:

* encode()/decode(): the storage/wire form used whenever a task crosses a
  process boundary. A compact JSON array, version first:

      [SCHEMA_VERSION, identifier, status, profile, job, created_at,
       parameters, tags]

* to_external(): the read-only dict served by the API and CLI. It is never
  decoded back into a Task.
"""
import json
from typing import Any, Dict, Optional

from .errors import SerializationFailure, UnresolvableJob
from .models import Profile, Status, Task
from .utils import DATE_FORMAT

SCHEMA_VERSION = 1
_FIELDS = 8


def encode(task: Task) -> bytes:
    record = [
        SCHEMA_VERSION,
        task.identifier,
        task.status.value,
        str(task.profile),
        task.job_name,
        task.created_at,
        dict(task.parameters),
        sorted(task.tags),
    ]
    try:
        return json.dumps(record, separators=(",", ":"), sort_keys=True).encode("utf-8")
    except (TypeError, ValueError) as e:
        raise SerializationFailure(f"Task {task.identifier} is not serializable: {e}") from e


def decode(data, registry=None) -> Task:
    """
    Rebuild a Task from its storage form. With a registry, a job name the
    registry does not know raises UnresolvableJob.
    """
    try:
        if isinstance(data, (bytes, bytearray, memoryview)):
            data = bytes(data).decode("utf-8")
        record = json.loads(data)
    except (TypeError, ValueError) as e:
        raise SerializationFailure(f"Malformed task record: {e}") from e

    if not isinstance(record, list) or len(record) != _FIELDS:
        raise SerializationFailure("Task record must be a list of %d fields" % _FIELDS)

    version, identifier, status, profile, job_name, created_at, parameters, tags = record
    if version != SCHEMA_VERSION:
        raise SerializationFailure(f"Unsupported task schema version: {version!r}")
    if not isinstance(identifier, str) or not identifier:
        raise SerializationFailure("Task record has no identifier")
    if not isinstance(job_name, str) or not job_name:
        raise SerializationFailure(f"Task {identifier} has no job name")
    if not isinstance(created_at, int) or isinstance(created_at, bool):
        raise SerializationFailure(f"Task {identifier} has an invalid timestamp")
    if not isinstance(parameters, dict) or not isinstance(tags, list):
        raise SerializationFailure(f"Task {identifier} has invalid parameters or tags")

    if registry is not None and job_name not in registry:
        raise UnresolvableJob(job_name)

    try:
        return Task(
            identifier=identifier,
            status=Status(status),
            profile=Profile(profile),
            job_name=job_name,
            created_at=created_at,
            parameters=parameters,
            tags=tags,
        )
    except (TypeError, ValueError) as e:
        raise SerializationFailure(f"Task {identifier}: {e}") from e


def to_external(task: Task, date_format: Optional[str] = DATE_FORMAT) -> Dict[str, Any]:
    return {
        "identifier": task.identifier,
        "status": task.status.value,
        "profile": str(task.profile),
        "job": task.job_name,
        "date": task.format_created_at(date_format),
        "parameters": dict(task.parameters),
        "tags": sorted(task.tags),
    }
