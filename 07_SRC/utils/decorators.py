# ==================================================
# ========  MODULE: decorators & timing utils  =====
# ==================================================
from __future__ import annotations

import logging
import time
from functools import wraps
from typing import Any, Callable, Optional, TypeVar

from utils.logger import get_logger, get_error_logger, get_debug_logger

# Public API
__all__ = [
    "log_exceptions",
    "timed_wrapper",
    "safe_timer",
    "log_warning_if",
]

F = TypeVar("F", bound=Callable[..., Any])


# ====[ Exception logger decorator ]====
def log_exceptions(
    logger_name: str = "error_logger",
    raise_exception: bool = False,
) -> Callable[[F], F]:
    """
    Log exceptions raised by the wrapped function.

    Parameters
    ----------
    logger_name : str, default 'error_logger'
        Name used to get the error logger.
    raise_exception : bool, default False
        If True, re-raise the exception after logging. Otherwise the wrapper
        returns None.

    Returns
    -------
    Callable
        A decorator that logs exceptions and optionally re-raises.
    """
    error_logger = get_error_logger(name=logger_name)

    def decorator(func: F) -> F:
        @wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            try:
                return func(*args, **kwargs)
            except Exception as e:
                error_logger.error(f"Exception in '{func.__qualname__}': {e}", exc_info=True)
                if raise_exception:
                    raise
                return None
        return wrapper  # type: ignore[return-value]
    return decorator


# ====[ Shared timing and error handler core ]====
def timed_wrapper(
    func: F,
    label: str,
    log: bool = True,
    log_errors: bool = True,
    raise_exception: bool = False,
    log_inputs: bool = False,
    return_result: bool = False,
    info_logger: Optional[logging.Logger] = None,
    error_logger: Optional[logging.Logger] = None,
    debug_logger: Optional[logging.Logger] = None,
) -> F:
    """
    Wrap a function with timing, logging, and optional error handling.

    Parameters
    ----------
    func : Callable
        Function to wrap.
    label : str
        Label used for logging and timing identification.
    log : bool, optional
        If True, log execution time via `info_logger`. Default is True.
    log_errors : bool, optional
        If True, log any exceptions raised via `error_logger`. Default is True.
    raise_exception : bool, optional
        If True, re-raise any caught exceptions. If False, suppress them. Default is False.
    log_inputs : bool, optional
        If True, log the input arguments to the function at debug level. Default is False.
    return_result : bool, optional
        If True, return `(result, elapsed)` instead of `result`. Default is False.
    info_logger, error_logger, debug_logger : logging.Logger, optional
        Loggers for timing, exceptions and inputs. Default loggers are used if None.

    Returns
    -------
    Callable
        The wrapped function.
    """
    info_logger = info_logger or get_logger()
    error_logger = error_logger or get_error_logger()
    debug_logger = debug_logger or get_debug_logger()

    @wraps(func)
    def wrapper(*args: Any, **kwargs: Any) -> Any:
        if log_inputs:
            debug_logger.debug(f"Calling '{label}' with args={args}, kwargs={kwargs}")

        start = time.perf_counter()
        try:
            result = func(*args, **kwargs)
        except Exception as e:
            if log_errors:
                error_logger.error(f"Exception in '{label}': {e}", exc_info=True)
            if raise_exception:
                raise
            return (None, None) if return_result else None

        elapsed = time.perf_counter() - start
        if log:
            info_logger.info(f"Execution time for '{label}': {elapsed:.3f} seconds")

        return (result, elapsed) if return_result else result

    return wrapper  # type: ignore[return-value]


# ====[ Combined safe timer ]====
def safe_timer(
    log: bool = True,
    log_errors: bool = True,
    raise_exception: bool = False,
    name: Optional[str] = None,
    return_result: bool = False,
    info_logger: Optional[logging.Logger] = None,
    error_logger: Optional[logging.Logger] = None,
) -> Callable[[F], F]:
    """
    Decorator to time and monitor function execution with logging.

    Logger-based only (no print statements), suited to training loops.

    Parameters
    ----------
    log : bool, optional
        If True, log execution time via `info_logger`. Default is True.
    log_errors : bool, optional
        If True, log exceptions via `error_logger`. Default is True.
    raise_exception : bool, optional
        If True, re-raise any exception that occurs. Default is False.
    name : str or None, optional
        Name used in logs. If None, uses the function's name.
    return_result : bool, optional
        If True, the wrapper returns `(result, elapsed)`. Default is False.
    info_logger, error_logger : logging.Logger, optional
        Loggers for timing and exception messages.

    Returns
    -------
    Callable[[F], F]
    """

    def decorator(func: F) -> F:
        label = name or func.__name__
        return timed_wrapper(
            func,
            label=label,
            log=log,
            log_errors=log_errors,
            raise_exception=raise_exception,
            return_result=return_result,
            info_logger=info_logger,
            error_logger=error_logger,
        )
    return decorator


# ====[ Simple conditional warning logger ]====
def log_warning_if(condition: bool, message: str, logger: Optional[logging.Logger] = None) -> None:
    """
    Log a warning message if a given condition is True.

    Parameters
    ----------
    condition : bool
        Boolean condition that triggers the warning if True.
    message : str
        Warning message to be logged.
    logger : logging.Logger, optional
        Logger to use. If None, uses the default global logger.
    """
    if condition:
        (logger or get_logger()).warning(message)
