"""
Per-request id and timing.

Every response carries ``X-Request-ID`` (echoed from the caller or minted
here) and ``X-Request-Duration-Ms``. Lifecycle writes are logged at INFO so
each move / approval / checklist change can be traced to a request; reads
log at DEBUG. ``SLOW_REQUEST_MS`` raises anything slower to WARNING.
"""

import logging
import time
import uuid

from flask import Flask, current_app, g, request

logger = logging.getLogger(__name__)

_WRITE_METHODS = frozenset({"POST", "PUT", "PATCH", "DELETE"})
_PATH_KEYS = ("case_id", "stage_instance_id", "transition_id")


def _path_context() -> dict:
    args = request.view_args or {}
    return {key: args[key] for key in _PATH_KEYS if key in args}


def init_request_timing(app: Flask):
    @app.before_request
    def _stamp_request():
        g.request_started = time.perf_counter()
        g.request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex[:12]

    @app.after_request
    def _finish_request(response):
        started = g.pop("request_started", None)
        if started is None:
            return response

        elapsed = (time.perf_counter() - started) * 1000
        response.headers["X-Request-ID"] = g.request_id
        response.headers["X-Request-Duration-Ms"] = f"{elapsed:.1f}"

        if request.blueprint == "health":
            return response

        if response.status_code >= 500:
            level = logging.ERROR
        elif elapsed > current_app.config.get("SLOW_REQUEST_MS", 1000):
            level = logging.WARNING
        elif request.method in _WRITE_METHODS:
            level = logging.INFO
        else:
            level = logging.DEBUG

        logger.log(
            level,
            "%s %s -> %d",
            request.method, request.path, response.status_code,
            extra={
                "method": request.method,
                "path": request.path,
                "status": response.status_code,
                "duration_ms": elapsed,
                **_path_context(),
            },
        )
        return response
