from __future__ import annotations

import dataclasses
import functools
import inspect
import time
from typing import Any, Callable, Dict, TypeVar

import structlog

from .metrics import JOB_DURATION

F = TypeVar("F", bound=Callable[..., Any])

logger = structlog.get_logger("job")


def _result_fields(res: Any) -> Dict[str, Any]:
    """Flatten a job's return value into log fields."""
    if dataclasses.is_dataclass(res) and not isinstance(res, type):
        return dataclasses.asdict(res)
    if isinstance(res, bool) or res is None:
        return {}
    if isinstance(res, int):
        return {"result": res}
    if isinstance(res, (list, tuple, set, dict)):
        return {"result_size": len(res)}
    return {}


def _finish(name: str, start: float, result: Any) -> None:
    elapsed = time.perf_counter() - start
    JOB_DURATION.labels(job=name).observe(elapsed)
    logger.info("job.completed", job=name, duration_ms=round(elapsed * 1000, 2), **_result_fields(result))


def _fail(name: str, start: float) -> None:
    elapsed = time.perf_counter() - start
    JOB_DURATION.labels(job=name).observe(elapsed)
    logger.exception("job.error", job=name, duration_ms=round(elapsed * 1000, 2))


def log_job(name: str) -> Callable[[F], F]:
    """Decorator to time a scheduled job and emit structured start/finish logs."""

    def decorator(func: F) -> F:
        if inspect.iscoroutinefunction(func):

            @functools.wraps(func)
            async def async_wrapper(*args: Any, **kwargs: Any):
                start = time.perf_counter()
                logger.debug("job.start", job=name)
                try:
                    result = await func(*args, **kwargs)
                except Exception:
                    _fail(name, start)
                    raise
                _finish(name, start, result)
                return result

            return async_wrapper  # type: ignore[return-value]

        @functools.wraps(func)
        def sync_wrapper(*args: Any, **kwargs: Any):
            start = time.perf_counter()
            logger.debug("job.start", job=name)
            try:
                result = func(*args, **kwargs)
            except Exception:
                _fail(name, start)
                raise
            _finish(name, start, result)
            return result

        return sync_wrapper  # type: ignore[return-value]

    return decorator
