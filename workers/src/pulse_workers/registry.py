"""Job type to handler mapping, filled by ``@register`` at import time."""

import logging
from collections.abc import Awaitable, Callable
from typing import Any

import psycopg

logger = logging.getLogger(__name__)

HandlerFn = Callable[[psycopg.AsyncConnection[Any], dict[str, Any]], Awaitable[None]]

_registry: dict[str, HandlerFn] = {}


def register(job_type: str) -> Callable[[HandlerFn], HandlerFn]:
    def decorator(fn: HandlerFn) -> HandlerFn:
        existing = _registry.setdefault(job_type, fn)
        if existing is not fn:
            raise ValueError(f"Duplicate handler for job_type={job_type!r} ({existing.__qualname__})")
        logger.debug("Handler %s bound to %s", fn.__qualname__, job_type)
        return fn

    return decorator


def get_handler(job_type: str) -> HandlerFn | None:
    return _registry.get(job_type)


def registered_types() -> list[str]:
    return sorted(_registry)
