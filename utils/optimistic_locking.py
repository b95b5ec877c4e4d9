"""
Optimistic Locking Infrastructure
Update-if-matches concurrency control for the address pool and launch stage advancement
"""

import logging
from typing import Any, Dict, Iterable, Optional, Type
from sqlalchemy import update, select
from sqlalchemy.orm import Session
from sqlalchemy.exc import SQLAlchemyError
from models import Base
from utils.exception_handler import PersistenceConflict

logger = logging.getLogger(__name__)


class OptimisticLockManager:
    """
    Applies a single conditional UPDATE whose WHERE clause carries the expected
    prior state. Zero matched rows means another writer got there first; that
    is a normal contention outcome reported as ``False`` unless the caller asks
    for ``PersistenceConflict``.
    """

    def __init__(self, session: Session):
        self.session = session

    def update_if_matches(
        self,
        model_class: Type[Base],
        criteria: Iterable[Any],
        values: Dict[str, Any],
        raise_on_conflict: bool = False,
        context: str = "",
    ) -> bool:
        """
        Execute ``UPDATE model SET values WHERE criteria``

        Args:
            model_class: SQLAlchemy model class
            criteria: SQL expressions describing the expected current state
            values: Column updates (may reference columns, e.g. ``attempt + 1``)
            raise_on_conflict: Raise PersistenceConflict instead of returning False
            context: Label used in log lines

        Returns:
            bool: True if exactly the expected row(s) were updated
        """
        try:
            stmt = (
                update(model_class)
                .where(*criteria)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            result = self.session.execute(stmt)
        except SQLAlchemyError as e:
            logger.error(f"❌ Database error during conditional update of {model_class.__name__}: {type(e).__name__}")
            raise

        if result.rowcount == 0:
            logger.info(f"🔒 Conditional update lost the race: {model_class.__name__} {context}".rstrip())
            if raise_on_conflict:
                raise PersistenceConflict(
                    f"{model_class.__name__} {context} was modified by another process".replace("  ", " ")
                )
            return False

        logger.debug(f"✅ Conditional update applied: {model_class.__name__} {context} ({result.rowcount} row(s))")
        return True

    def reload(self, model_class: Type[Base], *criteria: Any) -> Optional[Base]:
        """Fetch the current row state, bypassing the identity map cache"""
        stmt = select(model_class).where(*criteria).execution_options(populate_existing=True)
        return self.session.execute(stmt).scalar_one_or_none()
