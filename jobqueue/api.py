import json
import logging
import re
from typing import Optional
from urllib.parse import parse_qs
from wsgiref.simple_server import make_server

from .codec import to_external
from .errors import JobQueueError, NotFound
from .jobs import JobRegistry
from .models import DEFAULT_PROFILE, Status, Task
from .queue import Queue

logger = logging.getLogger(__name__)

_REASONS = {
    200: "OK",
    201: "Created",
    400: "Bad Request",
    404: "Not Found",
    405: "Method Not Allowed",
    500: "Internal Server Error",
}


class HttpError(Exception):
    def __init__(self, status: int, message: str):
        super().__init__(message)
        self.status = status


class Api:
    """
    JSON control plane as a WSGI application.

        GET  /tasks              list tasks (?status=&profile=&tag=)
        POST /tasks              create and enqueue a task
        GET  /task/{identifier}  show one task
    """

    def __init__(self, queue: Queue, registry: JobRegistry):
        self.queue = queue
        self.registry = registry
        self.routes = [
            ("GET", re.compile(r"^/tasks/?$"), self.list_tasks),
            ("POST", re.compile(r"^/tasks/?$"), self.add_task),
            ("GET", re.compile(r"^/task/(?P<identifier>[^/]+)/?$"), self.show_task),
        ]

    def __call__(self, environ, start_response):
        method = environ.get("REQUEST_METHOD", "GET").upper()
        path = environ.get("PATH_INFO", "") or "/"
        try:
            status, body = self.dispatch(method, path, environ)
        except HttpError as e:
            status, body = e.status, {"error": str(e)}
        except NotFound as e:
            status, body = 404, {"error": str(e)}
        except JobQueueError as e:
            logger.error("%s %s failed: %s", method, path, e)
            status, body = 500, {"error": str(e)}

        payload = json.dumps(body).encode("utf-8")
        start_response(
            f"{status} {_REASONS.get(status, '')}".strip(),
            [("Content-Type", "application/json"), ("Content-Length", str(len(payload)))],
        )
        return [payload]

    def dispatch(self, method: str, path: str, environ):
        allowed = False
        for route_method, pattern, handler in self.routes:
            match = pattern.match(path)
            if not match:
                continue
            if route_method != method:
                allowed = True
                continue
            return handler(environ, **match.groupdict())
        if allowed:
            raise HttpError(405, f"Method {method} not allowed on {path}")
        raise HttpError(404, f"No route for {path}")

    # ---------- Handlers ----------
    def list_tasks(self, environ):
        query = parse_qs(environ.get("QUERY_STRING", ""))
        status = _first(query, "status")
        if status is not None:
            try:
                status = Status(status)
            except ValueError:
                raise HttpError(400, f"Unknown status: {status}")
        tasks = self.queue.list(status=status, profile=_first(query, "profile"), tag=_first(query, "tag"))
        return 200, [to_external(t) for t in tasks]

    def add_task(self, environ):
        data = _read_json(environ)
        job = data.get("job")
        if not isinstance(job, str) or not job:
            raise HttpError(400, "Field 'job' is required.")
        if job not in self.registry:
            raise HttpError(400, f"Job '{job}' is not registered.")

        parameters = data.get("parameters") or {}
        tags = data.get("tags") or []
        if not isinstance(parameters, dict):
            raise HttpError(400, "Field 'parameters' must be an object.")
        if not isinstance(tags, list) or not all(isinstance(t, str) for t in tags):
            raise HttpError(400, "Field 'tags' must be a list of strings.")

        try:
            task = Task.create(data.get("profile") or DEFAULT_PROFILE, job, parameters, tags)
        except (TypeError, ValueError) as e:
            raise HttpError(400, str(e))
        self.queue.enqueue(task)
        logger.info("Enqueued task %s (%s)", task.identifier, task.job_name)
        return 201, to_external(task)

    def show_task(self, environ, identifier: str):
        return 200, to_external(self.queue.find(identifier))


def _first(query, key) -> Optional[str]:
    values = query.get(key)
    return values[0] if values else None


def _read_json(environ) -> dict:
    try:
        length = int(environ.get("CONTENT_LENGTH") or 0)
    except ValueError:
        length = 0
    raw = environ["wsgi.input"].read(length) if length else b""
    try:
        data = json.loads(raw or b"{}")
    except ValueError as e:
        raise HttpError(400, f"Malformed JSON body: {e}")
    if not isinstance(data, dict):
        raise HttpError(400, "Request body must be a JSON object.")
    return data


def serve(queue: Queue, registry: JobRegistry, host: str = "127.0.0.1", port: int = 8080):
    app = Api(queue, registry)
    with make_server(host, port, app) as httpd:
        logger.info("Serving on http://%s:%d", host, port)
        httpd.serve_forever()
