"""
Exception Handler Module
Provides the launch engine error taxonomy and the decorator that turns
business failures into structured results
"""

import logging
import functools
from typing import Any, Callable, Dict

from sqlalchemy.exc import SQLAlchemyError

from utils.data_sanitizer import DataSanitizer

logger = logging.getLogger(__name__)


class LaunchEngineError(Exception):
    """Base class for every business-logic failure in the engine"""

    retryable = False

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class PoolExhausted(LaunchEngineError):
    """No free deployment address matched at update time"""


class InvalidAmount(LaunchEngineError):
    """Requested amount is non-positive or beyond system capacity"""


class DecryptionError(LaunchEngineError):
    """Ciphertext matched no supported format"""


class PreconditionFailed(LaunchEngineError):
    """Token missing, not owned, in the wrong state, or lock already held"""


class PersistenceConflict(LaunchEngineError):
    """A conditional update lost the race to another writer"""

    retryable = True


class PermanentChainError(LaunchEngineError):
    """Chain failure that no retry can fix"""


class TransientChainError(LaunchEngineError):
    """Chain or RPC failure that may succeed on another attempt"""

    retryable = True


class DuplicateJobError(LaunchEngineError):
    """A job with the same identity key is already queued"""


class QueueUnavailable(LaunchEngineError):
    """The execution queue failed to accept a job"""

    retryable = True


def failure_result(message: str, **extra: Any) -> Dict[str, Any]:
    result = {"success": False, "message": DataSanitizer.sanitize_text(message)}
    result.update(extra)
    return result


def structured_result(operation: str) -> Callable:
    """
    Decorator for orchestrator operations.

    Engine and persistence errors are logged and returned as
    ``{"success": False, "message": ...}`` instead of propagating, so a
    business failure never crashes the caller. Programming errors still raise.
    """

    def decorator(func: Callable) -> Callable:
        @functools.wraps(func)
        def wrapper(*args, **kwargs) -> Dict[str, Any]:
            try:
                return func(*args, **kwargs)
            except LaunchEngineError as e:
                logger.warning(f"⚠️ {operation} rejected: {type(e).__name__}: {DataSanitizer.sanitize_text(e.message)}")
                return failure_result(
                    f"An error occurred during {operation}: {e.message}",
                    error_type=type(e).__name__,
                    retryable=e.retryable,
                )
            except SQLAlchemyError as e:
                logger.error(f"❌ {operation} persistence failure: {type(e).__name__}")
                return failure_result(
                    f"An error occurred during {operation}: database error",
                    error_type=type(e).__name__,
                    retryable=True,
                )

        return wrapper

    return decorator
