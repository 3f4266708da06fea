import importlib
import logging
import shlex
import subprocess
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional

from .errors import ExecutionFailure, UnresolvableJob

logger = logging.getLogger(__name__)


class Job:
    """
    Base class for executable jobs. Subclasses implement perform();
    returning normally means success, raising means failure.
    """
    job_name: Optional[str] = None

    def perform(self, parameters: Mapping[str, Any]) -> Any:
        raise NotImplementedError


class JobRegistry:
    """Maps stable job names to factories producing fresh job instances."""

    def __init__(self):
        self._factories: Dict[str, Callable[[], Job]] = {}

    def register(self, factory=None, *, name: Optional[str] = None):
        """
        Register a job class or factory. Usable as a plain call or a decorator:

            @registry.register
            class SendEmailJob(Job): ...

            registry.register(make_job, name="SendEmailJob")
        """
        def _add(f):
            key = name or (f.__dict__.get("job_name") if isinstance(f, type) else None) \
                or getattr(f, "__name__", None)
            if not key:
                raise ValueError(f"Cannot derive a job name for {f!r}")
            if key in self._factories and self._factories[key] is not f:
                raise ValueError(f"Job '{key}' is already registered.")
            if isinstance(f, type):
                f.job_name = key
            self._factories[key] = f
            return f

        if factory is None:
            return _add
        return _add(factory)

    def __contains__(self, name: str) -> bool:
        return name in self._factories

    def names(self) -> List[str]:
        return sorted(self._factories)

    def resolve(self, name: str) -> Job:
        try:
            factory = self._factories[name]
        except KeyError:
            raise UnresolvableJob(name) from None
        return factory()


registry = JobRegistry()


def load_job_modules(modules: Iterable[str]) -> None:
    """Import modules whose import side effect registers jobs."""
    for module in modules:
        logger.debug("Loading job module %s", module)
        importlib.import_module(module)


@registry.register
class CommandJob(Job):
    """
    Runs parameters['command'] as a subprocess. Optional parameters:
    'timeout' (seconds, default 10).
    """

    def perform(self, parameters):
        cmd = parameters.get("command")
        if not cmd or not str(cmd).strip():
            raise ExecutionFailure("Missing 'command' parameter.")
        timeout = parameters.get("timeout", 10)

        rc = safe_run_command(str(cmd), timeout=timeout)
        if rc != 0:
            raise ExecutionFailure(f"exit_code={rc}")
        return rc


def safe_run_command(cmd: str, timeout: float = 10) -> int:
    try:
        args = shlex.split(cmd)
        result = subprocess.run(
            args,
            capture_output=True,
            text=True,
            timeout=timeout,
        )

        if result.stdout:
            logger.info(result.stdout.strip())
        if result.stderr:
            logger.warning(result.stderr.strip())
        return result.returncode

    except subprocess.TimeoutExpired:
        logger.error("Command timed out after %ss: %s", timeout, cmd)
        return 124  # Common exit code for timeout
    except FileNotFoundError:
        logger.error("Command not found: %s", cmd)
        return 127
    except (OSError, ValueError) as e:
        logger.error("Exception while running command %r: %s", cmd, e)
        return 1
