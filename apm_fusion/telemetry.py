"""Logging setup and OpenTelemetry instrumentation for the fusion engine."""

import asyncio
import functools
import logging
import os
import time
from collections.abc import Callable
from typing import Any

from opentelemetry import trace

logger = logging.getLogger(__name__)

_LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def setup_logging(level: int = logging.INFO) -> None:
    """Configure root logging.

    Args:
        level: The logging level to use (default: INFO). ``LOG_LEVEL``
            overrides it when set to a standard level name.
    """
    env_level = os.environ.get("LOG_LEVEL", "").upper()
    if env_level in ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]:
        level = getattr(logging, env_level)

    logging.basicConfig(level=level, format=_LOG_FORMAT)
    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(max(level, logging.WARNING))


def get_tracer(name: str) -> trace.Tracer:
    """Returns a tracer for the given module name."""
    return trace.get_tracer(name)


def instrumented(func: Callable[..., Any]) -> Callable[..., Any]:
    """Wrap an async backend or fusion call in a span with timing logs.

    Errors are logged and re-raised. Cancellation is logged at debug level
    and re-raised untouched.

    Example:
        @instrumented
        async def execute_metric_request(self, query: str, ...) -> dict:
            ...
    """
    tracer = get_tracer(func.__module__)
    name = func.__qualname__

    @functools.wraps(func)
    async def async_wrapper(*args: Any, **kwargs: Any) -> Any:
        start_time = time.time()
        logger.debug(f"Call: '{name}'")
        with tracer.start_as_current_span(name) as span:
            try:
                result = await func(*args, **kwargs)
            except asyncio.CancelledError:
                duration_ms = (time.time() - start_time) * 1000
                logger.debug(f"Cancelled: '{name}' | Duration: {duration_ms:.2f}ms")
                raise
            except Exception as e:
                duration_ms = (time.time() - start_time) * 1000
                logger.error(
                    f"Failed: '{name}' | Duration: {duration_ms:.2f}ms | "
                    f"{type(e).__name__}: {e}"
                )
                raise
            duration_ms = (time.time() - start_time) * 1000
            span.set_attribute("apm.duration_ms", duration_ms)
            logger.info(f"Success: '{name}' | Duration: {duration_ms:.2f}ms")
            return result

    return async_wrapper
