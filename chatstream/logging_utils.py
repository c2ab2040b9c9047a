"""
Centralized logging and error classification for chatstream.

This module provides decorators and helper functions to standardize logging
and error handling across sessions, transports and the conversation
controller.

Features:
- Structured logging with contextual information
- Transport error classification (timeouts, connection, status, stream)
- Performance timing for operations
- Session-bound loggers
"""

from __future__ import annotations

import functools
import logging
import sys
import time
from collections.abc import Awaitable, Callable
from contextlib import asynccontextmanager
from typing import Any, ParamSpec, TypeVar

import httpx
import structlog

from .exceptions import StreamError, TransportError
from .models import FailureKind

_SHARED_PROCESSORS = [
    structlog.stdlib.filter_by_level,
    structlog.stdlib.add_logger_name,
    structlog.stdlib.add_log_level,
    structlog.processors.TimeStamper(fmt="iso"),
]

# Configure structured logging
structlog.configure(
    processors=[
        *_SHARED_PROCESSORS,
        structlog.dev.ConsoleRenderer(colors=True),
    ],
    wrapper_class=structlog.stdlib.BoundLogger,
    logger_factory=structlog.stdlib.LoggerFactory(),
    cache_logger_on_first_use=True,
)

# Type variables for generic decorators
P = ParamSpec("P")
T = TypeVar("T")
AsyncCallable = Callable[P, Awaitable[T]]

logger = structlog.get_logger(__name__)


def configure_logging(logging_config: dict[str, Any]) -> None:
    """
    Apply the ``logging`` section of the configuration.

    Args:
        logging_config: Dict with ``level`` and ``renderer`` (console|json)
    """
    level = getattr(logging, str(logging_config.get("level", "INFO")).upper())
    logging.basicConfig(
        level=level, format="%(message)s", stream=sys.stderr, force=True
    )

    renderer = (
        structlog.processors.JSONRenderer()
        if logging_config.get("renderer") == "json"
        else structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty())
    )
    structlog.configure(
        processors=[
            *_SHARED_PROCESSORS,
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


class StreamErrorHandler:
    """Centralized transport error handling with structured logging."""

    @staticmethod
    def classify_error(error: BaseException) -> tuple[FailureKind, str]:
        """
        Classify an error and return the failure kind and category.

        Args:
            error: The exception to classify

        Returns:
            Tuple of (failure_kind, error_category)
        """
        if isinstance(error, TransportError):
            return error.kind, error.category
        if isinstance(error, httpx.TimeoutException | TimeoutError):
            return FailureKind.TRANSPORT_ERROR, "timeout_error"
        if isinstance(error, httpx.HTTPStatusError):
            return FailureKind.TRANSPORT_ERROR, "status_error"
        if isinstance(error, httpx.StreamError):
            return FailureKind.TRANSPORT_ERROR, "stream_error"
        if isinstance(error, httpx.TransportError | ConnectionError | OSError):
            return FailureKind.TRANSPORT_ERROR, "connection_error"
        return FailureKind.TRANSPORT_ERROR, "unknown_error"

    @staticmethod
    def create_transport_error(
        error: BaseException,
        operation: str,
        context: dict[str, Any] | None = None,
        custom_message: str | None = None,
    ) -> TransportError:
        """
        Create a standardized TransportError with structured logging.

        Args:
            error: Original exception
            operation: Description of the operation that failed
            context: Additional context for logging and error data
            custom_message: Override the default error message

        Returns:
            TransportError carrying the error category and context
        """
        _, error_category = StreamErrorHandler.classify_error(error)
        context = context or {}

        if custom_message:
            message = custom_message
        elif isinstance(error, StreamError):
            message = str(error)
        else:
            message = f"{operation} failed: {error!s}"

        logger.error(
            "Operation failed",
            operation=operation,
            error_type=type(error).__name__,
            error_category=error_category,
            error_message=str(error),
            **context,
        )

        status_code = None
        if isinstance(error, httpx.HTTPStatusError):
            status_code = error.response.status_code

        return TransportError(
            message,
            category=error_category,
            session_id=context.get("session_id"),
            status_code=status_code,
            response_data={
                "operation": operation,
                "original_error_type": type(error).__name__,
                **context,
            },
        )


def log_operation(
    operation: str,
    *,
    log_args: bool = False,
    log_result: bool = False,
    log_timing: bool = True,
    context: dict[str, Any] | None = None,
) -> Callable[[AsyncCallable[P, T]], AsyncCallable[P, T]]:
    """
    Decorator for logging async operations with structured context.

    Args:
        operation: Description of the operation being performed
        log_args: Whether to log function arguments
        log_result: Whether to log function result
        log_timing: Whether to log execution timing
        context: Additional context to include in logs

    Returns:
        Decorated function with logging
    """
    def decorator(func: AsyncCallable[P, T]) -> AsyncCallable[P, T]:
        @functools.wraps(func)
        async def wrapper(*args: P.args, **kwargs: P.kwargs) -> T:
            operation_logger = logger.bind(
                operation=operation,
                function=func.__name__,
                **(context or {}),
            )

            log_data = {}
            if log_args:
                log_data.update({
                    "args": args[1:] if args else [],  # Skip 'self' if present
                    "kwargs": kwargs,
                })

            operation_logger.debug("Operation started", **log_data)

            start_time = time.perf_counter() if log_timing else None

            try:
                result = await func(*args, **kwargs)

                end_log_data: dict[str, Any] = {}
                if log_timing and start_time is not None:
                    duration = round((time.perf_counter() - start_time) * 1000, 2)
                    end_log_data["duration_ms"] = duration
                if log_result:
                    end_log_data["result"] = result

                operation_logger.info(
                    "Operation completed successfully", **end_log_data
                )
                return result

            except Exception as e:
                error_log_data: dict[str, Any] = {
                    "error_type": type(e).__name__,
                    "error_message": str(e),
                }
                if log_timing and start_time is not None:
                    duration = round((time.perf_counter() - start_time) * 1000, 2)
                    error_log_data["duration_ms"] = duration

                operation_logger.error("Operation failed", **error_log_data)
                raise

        return wrapper
    return decorator


@asynccontextmanager
async def operation_context(
    operation: str,
    *,
    context: dict[str, Any] | None = None,
    log_timing: bool = True,
):
    """
    Async context manager for operation logging.

    Args:
        operation: Description of the operation
        context: Additional context for logging
        log_timing: Whether to log operation timing

    Yields:
        Bound logger for the operation
    """
    operation_logger = logger.bind(
        operation=operation,
        **(context or {}),
    )

    operation_logger.debug("Operation started")
    start_time = time.perf_counter() if log_timing else None

    try:
        yield operation_logger

        log_data: dict[str, Any] = {}
        if log_timing and start_time is not None:
            duration = round((time.perf_counter() - start_time) * 1000, 2)
            log_data["duration_ms"] = duration

        operation_logger.info("Operation completed successfully", **log_data)

    except Exception as e:
        error_log_data: dict[str, Any] = {
            "error_type": type(e).__name__,
            "error_message": str(e),
        }
        if log_timing and start_time is not None:
            duration = round((time.perf_counter() - start_time) * 1000, 2)
            error_log_data["duration_ms"] = duration

        operation_logger.error("Operation failed", **error_log_data)
        raise


class ContextualLogger:
    """Logger that maintains context across related operations."""

    def __init__(self, base_context: dict[str, Any] | None = None):
        self.base_context = base_context or {}
        self._logger = logger.bind(**self.base_context)

    def bind(self, **context: Any) -> ContextualLogger:
        """Create a new logger with additional context."""
        merged_context = {**self.base_context, **context}
        return ContextualLogger(merged_context)

    def info(self, message: str, **context: Any) -> None:
        self._logger.info(message, **context)

    def warning(self, message: str, **context: Any) -> None:
        self._logger.warning(message, **context)

    def error(self, message: str, **context: Any) -> None:
        self._logger.error(message, **context)

    def debug(self, message: str, **context: Any) -> None:
        self._logger.debug(message, **context)

    def exception(self, message: str, **context: Any) -> None:
        self._logger.exception(message, **context)
