"""
Transaction Ledger
Append-only record of every attempted on-chain operation, doubling as the
idempotency guard consulted before a buy or sell is resubmitted
"""

import logging
from dataclasses import dataclass, replace
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional, Union

from sqlalchemy import select, func
from sqlalchemy.orm import Session

from database import SessionLocal
from models import TransactionRecord, TransactionKind
from services.solana_rpc import SolanaRPCClient
from utils.atomic_transactions import atomic_transaction
from utils.data_sanitizer import DataSanitizer

logger = logging.getLogger(__name__)


@dataclass
class TransactionEvent:
    """One attempted on-chain operation reported by a worker"""
    token_address: str
    wallet_public_key: str
    kind: TransactionKind
    success: bool
    signature: Optional[str] = None
    launch_attempt: int = 0
    amount_sol: Optional[Decimal] = None
    amount_tokens: Optional[str] = None
    retry_attempt: int = 0
    sell_attempt: Optional[int] = None
    sell_percent: Optional[Decimal] = None
    slippage_used: Optional[Decimal] = None
    error_message: Optional[str] = None

    def __post_init__(self):
        if not isinstance(self.kind, TransactionKind):
            # Unknown kinds fail here instead of becoming unrecoverable ledger rows
            self.kind = TransactionKind(self.kind)
        if self.amount_sol is not None and not isinstance(self.amount_sol, Decimal):
            self.amount_sol = Decimal(str(self.amount_sol))
        if self.amount_tokens is not None:
            self.amount_tokens = str(self.amount_tokens)


def record_to_dict(record: TransactionRecord) -> Dict[str, Any]:
    return {
        "id": record.id,
        "token_address": record.token_address,
        "wallet_public_key": record.wallet_public_key,
        "transaction_type": record.transaction_type,
        "signature": record.signature,
        "success": record.success,
        "launch_attempt": record.launch_attempt,
        "amount_sol": record.amount_sol,
        "amount_tokens": record.amount_tokens,
        "retry_attempt": record.retry_attempt,
        "sell_attempt": record.sell_attempt,
        "sell_percent": record.sell_percent,
        "error_message": record.error_message,
        "created_at": record.created_at,
    }


class TransactionLedger:
    """Append-only ledger service"""

    def __init__(self, session_factory: Optional[Callable[[], Session]] = None,
                 rpc: Optional[SolanaRPCClient] = None):
        self.session_factory = session_factory or SessionLocal
        self._rpc = rpc

    @property
    def rpc(self) -> SolanaRPCClient:
        if self._rpc is None:
            self._rpc = SolanaRPCClient()
        return self._rpc

    def record(self, event: TransactionEvent, session: Optional[Session] = None) -> int:
        """Append one immutable record and return its id"""
        error_message = (
            DataSanitizer.sanitize_error_message(event.error_message) if event.error_message else None
        )
        with atomic_transaction(session, session_factory=self.session_factory) as db:
            record = TransactionRecord(
                token_address=event.token_address,
                wallet_public_key=event.wallet_public_key,
                transaction_type=event.kind.value,
                signature=event.signature,
                success=event.success,
                launch_attempt=event.launch_attempt,
                amount_sol=event.amount_sol,
                amount_tokens=event.amount_tokens,
                retry_attempt=event.retry_attempt,
                sell_attempt=event.sell_attempt,
                sell_percent=event.sell_percent,
                slippage_used=event.slippage_used,
                error_message=error_message,
            )
            db.add(record)
            db.flush()
            record_id = record.id

        status = "✅" if event.success else "❌"
        logger.info(
            f"{status} Recorded {event.kind.value} for {DataSanitizer.short_key(event.wallet_public_key)} "
            f"on {DataSanitizer.short_key(event.token_address)} (attempt {event.launch_attempt})"
        )
        return record_id

    def record_with_actual_amounts(self, event: TransactionEvent, parse_actual_amounts: bool = True) -> int:
        """
        Record using on-chain SOL/token deltas when they can be parsed

        Failed transactions, missing signatures, disabled parsing and parse
        failures all keep the worker's estimated amounts.
        """
        if not event.success or not event.signature or not parse_actual_amounts:
            return self.record(event)

        parsed = self.rpc.parse_transaction_amounts(
            event.signature, event.wallet_public_key, event.token_address, is_sell=event.kind.is_sell
        )
        if not parsed.success:
            logger.warning(
                f"⚠️ Using estimated amounts for {event.kind.value} {event.signature[:12]}: {parsed.error}"
            )
            return self.record(event)

        logger.info(
            f"📊 Using on-chain amounts for {event.kind.value}: SOL {parsed.sol_amount}, tokens {parsed.token_amount}"
        )
        return self.record(replace(event, amount_sol=parsed.sol_amount, amount_tokens=parsed.token_amount))

    def is_already_successful(self, token_address: str, wallet_public_key: str,
                              kind: Union[TransactionKind, str]) -> bool:
        kind = TransactionKind(kind) if not isinstance(kind, TransactionKind) else kind
        with atomic_transaction(session_factory=self.session_factory) as db:
            found = db.execute(
                select(TransactionRecord.id).where(
                    TransactionRecord.token_address == token_address,
                    TransactionRecord.wallet_public_key == wallet_public_key,
                    TransactionRecord.transaction_type == kind.value,
                    TransactionRecord.success.is_(True),
                ).limit(1)
            ).first()
        return found is not None

    def get_transactions(self, token_address: str, kind: Optional[TransactionKind] = None,
                         successful_only: bool = False) -> List[Dict[str, Any]]:
        """Ledger rows for a token in insertion order"""
        with atomic_transaction(session_factory=self.session_factory) as db:
            stmt = select(TransactionRecord).where(TransactionRecord.token_address == token_address)
            if kind is not None:
                stmt = stmt.where(TransactionRecord.transaction_type == TransactionKind(kind).value)
            if successful_only:
                stmt = stmt.where(TransactionRecord.success.is_(True))
            stmt = stmt.order_by(TransactionRecord.created_at.asc(), TransactionRecord.id.asc())
            return [record_to_dict(record) for record in db.execute(stmt).scalars().all()]

    def get_successful_transactions(self, token_address: str,
                                    kind: Optional[TransactionKind] = None) -> List[Dict[str, Any]]:
        return self.get_transactions(token_address, kind, successful_only=True)

    def stats(self, token_address: str, launch_attempt: Optional[int] = None) -> Dict[str, Any]:
        """Audit counts: total, successful, failed and per-type successful/failed"""
        with atomic_transaction(session_factory=self.session_factory) as db:
            stmt = (
                select(TransactionRecord.transaction_type, TransactionRecord.success, func.count(TransactionRecord.id))
                .where(TransactionRecord.token_address == token_address)
                .group_by(TransactionRecord.transaction_type, TransactionRecord.success)
            )
            if launch_attempt is not None:
                stmt = stmt.where(TransactionRecord.launch_attempt == launch_attempt)
            rows = db.execute(stmt).all()

        by_type = {kind.value: {"successful": 0, "failed": 0} for kind in TransactionKind}
        successful = failed = 0
        for transaction_type, success, count in rows:
            if success:
                by_type[transaction_type]["successful"] += count
                successful += count
            else:
                by_type[transaction_type]["failed"] += count
                failed += count

        return {
            "total": successful + failed,
            "successful": successful,
            "failed": failed,
            "by_type": by_type,
        }
