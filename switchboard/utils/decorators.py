import functools
import inspect
import time
from typing import Any, Callable, TypeVar

from loguru import logger

C = TypeVar("C", bound=Callable[..., Any])


def log_execution(step: str, enabled: bool = True) -> Callable[[C], C]:
    """
    Decorator factory that logs when a lifecycle step starts, ends and fails.

    Args:
        step (str): Human readable name of the step, e.g. "download binaries".
        enabled (bool): Flag to enable or disable logging.

    Returns:
        Callable: A decorator that wraps the target coroutine or function.
    """

    def decorator(func: C) -> C:
        if inspect.iscoroutinefunction(func):

            @functools.wraps(func)
            async def async_wrapper(*args: Any, **kwargs: Any) -> Any:
                start_time = time.perf_counter()
                if enabled:
                    logger.info(f"Starting: {step}")
                try:
                    result = await func(*args, **kwargs)
                except Exception as exc:
                    if enabled:
                        logger.error(f"Failed: {step}: {exc}")
                    raise
                if enabled:
                    _log_done(step, start_time)
                return result

            return async_wrapper  # type: ignore

        @functools.wraps(func)
        def sync_wrapper(*args: Any, **kwargs: Any) -> Any:
            start_time = time.perf_counter()
            if enabled:
                logger.info(f"Starting: {step}")
            try:
                result = func(*args, **kwargs)
            except Exception as exc:
                if enabled:
                    logger.error(f"Failed: {step}: {exc}")
                raise
            if enabled:
                _log_done(step, start_time)
            return result

        return sync_wrapper  # type: ignore

    return decorator


def _log_done(step: str, start: float) -> None:
    logger.info(f"Finished: {step} in {time.perf_counter() - start:f} seconds")
