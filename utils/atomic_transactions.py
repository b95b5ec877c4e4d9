"""Atomic transaction utilities for pool allocation and launch stage advancement"""

import logging
from contextlib import contextmanager
from typing import Callable, Generator, Optional
from sqlalchemy.orm import Session
from sqlalchemy.exc import OperationalError
from database import SessionLocal, handle_database_error
from utils.data_sanitizer import DataSanitizer

logger = logging.getLogger(__name__)


@contextmanager
def atomic_transaction(
    session: Optional[Session] = None,
    session_factory: Optional[Callable[[], Session]] = None,
) -> Generator[Session, None, None]:
    """
    Synchronous context manager for atomic database transactions with proper rollback.

    Without a session, a new one is opened from ``session_factory`` (default
    ``SessionLocal``), committed on success and closed. A dropped
    connection disposes the pool before the error propagates.

    With a session, nesting depth is tracked on the session so only the
    outermost block commits; any error rolls back the whole unit of work.
    """
    if session is None:
        new_session = (session_factory or SessionLocal)()
        # Blocks nested on this session must defer their commit to this one
        setattr(new_session, '_atomic_transaction_depth', 1)
        logger.debug("Created new sync session for atomic transaction")
        try:
            yield new_session
            new_session.commit()
            logger.debug("Sync atomic transaction committed successfully")
        except OperationalError as e:
            new_session.rollback()
            # Stale pooled connections are disposed so the caller's next attempt reconnects
            handle_database_error(e)
            logger.error(f"Sync transaction rolled back due to error: {DataSanitizer.sanitize_error_message(e)}")
            raise
        except Exception as e:
            new_session.rollback()
            logger.error(f"Sync transaction rolled back due to error: {DataSanitizer.sanitize_error_message(e)}")
            raise
        finally:
            new_session.close()
        return

    transaction_depth = getattr(session, '_atomic_transaction_depth', 0)
    try:
        setattr(session, '_atomic_transaction_depth', transaction_depth + 1)

        if transaction_depth > 0:
            logger.debug(f"Nested sync transaction detected (depth: {transaction_depth + 1})")

        yield session

        # For nested transactions, let the outermost handle commit
        if transaction_depth == 0:
            session.commit()
            logger.debug("Outermost sync transaction committed successfully")
        else:
            logger.debug(f"Nested sync transaction completed (depth: {transaction_depth + 1}), deferring commit to outermost")

    except Exception as e:
        # Always rollback on error, regardless of nesting
        session.rollback()
        logger.error(
            f"Sync transaction rolled back due to error (depth: {transaction_depth + 1}): "
            f"{DataSanitizer.sanitize_error_message(e)}"
        )
        raise
    finally:
        current_depth = getattr(session, '_atomic_transaction_depth', 1)
        setattr(session, '_atomic_transaction_depth', max(0, current_depth - 1))
