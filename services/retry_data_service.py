"""
Retry Data Service
Persists the last parameters a user entered for a resumable flow so any
orchestrator instance can offer "retry with the same settings"
"""

import logging
from typing import Any, Callable, Dict, Optional, Union

from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from database import SessionLocal
from models import ConversationKind, RetryData
from utils.atomic_transactions import atomic_transaction
from utils.data_sanitizer import DataSanitizer

logger = logging.getLogger(__name__)


def _kind(kind: Union[ConversationKind, str]) -> ConversationKind:
    return kind if isinstance(kind, ConversationKind) else ConversationKind(kind)


class RetryDataService:
    """One live parameter snapshot per (owner, conversation kind)"""

    def __init__(self, session_factory: Optional[Callable[[], Session]] = None):
        self.session_factory = session_factory or SessionLocal

    @staticmethod
    def _strip_secrets(payload: Dict[str, Any]) -> Dict[str, Any]:
        # Decrypted key material is never persisted
        dropped = [key for key in payload if key.lower() in DataSanitizer.SENSITIVE_FIELDS]
        if dropped:
            logger.warning(f"⚠️ Dropped secret fields from retry payload: {', '.join(sorted(dropped))}")
        return {key: value for key, value in payload.items() if key not in dropped}

    def save(self, owner_id: str, kind: Union[ConversationKind, str], payload: Dict[str, Any],
             session: Optional[Session] = None) -> Dict[str, Any]:
        """Store ``payload``, superseding any earlier snapshot for the same flow"""
        kind = _kind(kind)
        clean = self._strip_secrets(dict(payload))
        with atomic_transaction(session, session_factory=self.session_factory) as db:
            db.execute(
                delete(RetryData).where(
                    RetryData.owner_id == str(owner_id),
                    RetryData.conversation_kind == kind.value,
                )
            )
            db.add(RetryData(owner_id=str(owner_id), conversation_kind=kind.value, payload=clean))
            db.flush()

        logger.info(f"💾 Saved {kind.value} retry data for {owner_id}")
        return clean

    def get(self, owner_id: str, kind: Union[ConversationKind, str]) -> Optional[Dict[str, Any]]:
        kind = _kind(kind)
        with atomic_transaction(session_factory=self.session_factory) as db:
            row = db.execute(
                select(RetryData.payload).where(
                    RetryData.owner_id == str(owner_id),
                    RetryData.conversation_kind == kind.value,
                )
            ).first()
        return dict(row.payload) if row else None

    def clear(self, owner_id: str, kind: Union[ConversationKind, str]) -> bool:
        kind = _kind(kind)
        with atomic_transaction(session_factory=self.session_factory) as db:
            result = db.execute(
                delete(RetryData).where(
                    RetryData.owner_id == str(owner_id),
                    RetryData.conversation_kind == kind.value,
                )
            )
        return result.rowcount > 0

    def clear_all(self, owner_id: str) -> int:
        """Drop every snapshot for an owner"""
        with atomic_transaction(session_factory=self.session_factory) as db:
            result = db.execute(delete(RetryData).where(RetryData.owner_id == str(owner_id)))
        if result.rowcount:
            logger.info(f"🧹 Cleared {result.rowcount} retry snapshots for {owner_id}")
        return result.rowcount
