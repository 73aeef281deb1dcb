import functools
import inspect
import logging
import time
from typing import Any, Callable

from .logging import _redact

logger = logging.getLogger("steps")

PREVIEW_MAX = 200


def _elapsed_ms(t0: float) -> int:
    return round((time.perf_counter() - t0) * 1000)


def _preview(result: Any) -> str:
    return str(_redact(result))[:PREVIEW_MAX]


def log_step(step: str, *, exit_level: int = logging.INFO):
    """
    Log entry, exit, timing and failure of a pipeline step.

    Example: @log_step("batch.fetch")

    Keyword arguments are logged (redacted) on entry; positional arguments are
    not, since they are usually ``self`` and ORM rows.
    """
    def decorator(fn: Callable):
        def _enter(kwargs):
            logger.debug("ENTER %s", step, extra={"extra": {"step": step, "args": _redact(kwargs)}})

        def _exit(t0, result):
            logger.log(exit_level, "EXIT %s", step,
                       extra={"extra": {"step": step, "elapsed_ms": _elapsed_ms(t0), "result_preview": _preview(result)}})

        def _fail(t0, exc):
            logger.error("ERROR %s: %s", step, exc,
                         extra={"extra": {"step": step, "elapsed_ms": _elapsed_ms(t0), "error_type": type(exc).__name__}},
                         exc_info=True)

        @functools.wraps(fn)
        async def awrapped(*args, **kwargs):
            t0 = time.perf_counter()
            _enter(kwargs)
            try:
                result = await fn(*args, **kwargs)
            except Exception as e:
                _fail(t0, e)
                raise
            _exit(t0, result)
            return result

        @functools.wraps(fn)
        def wrapped(*args, **kwargs):
            t0 = time.perf_counter()
            _enter(kwargs)
            try:
                result = fn(*args, **kwargs)
            except Exception as e:
                _fail(t0, e)
                raise
            _exit(t0, result)
            return result

        return awrapped if inspect.iscoroutinefunction(fn) else wrapped

    return decorator
