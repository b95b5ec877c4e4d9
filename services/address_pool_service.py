"""
Address Pool Service
Hands out exclusive use of pre-generated deployment addresses

Allocation is a select of the oldest free row followed by one conditional
UPDATE that repeats the free-state predicate, so concurrent callers get
at-most-one-winner semantics without an explicit lock manager.
Addresses still recorded as some token's mint are never handed out again.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional, Union

from sqlalchemy import exists, func, select, and_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from config import Config
from database import SessionLocal
from models import PoolAddress, Token
from services.key_custody_service import (
    KeyCustodyService, get_custody_service, generate_keypair, public_key_of, secret_of
)
from services.launch_failure_classifier import LaunchFailureClassifier, FailureClassification
from utils.atomic_transactions import atomic_transaction
from utils.data_sanitizer import DataSanitizer
from utils.exception_handler import PoolExhausted
from utils.optimistic_locking import OptimisticLockManager

logger = logging.getLogger(__name__)

ADMIN_REQUESTER = "admin"


@dataclass
class AllocatedAddress:
    """A reserved deployment address with its decrypted secret"""
    public_key: str
    secret_key: str
    from_pool: bool = True

    def __repr__(self) -> str:
        return f"AllocatedAddress(public_key={self.public_key!r}, from_pool={self.from_pool})"


def _free_predicate():
    # A released address stays out of circulation while a token row still names it
    return and_(
        PoolAddress.is_used.is_(False),
        PoolAddress.used_by.is_(None),
        PoolAddress.used_at.is_(None),
        PoolAddress.permanently_allocated.is_(False),
        ~exists().where(Token.mint_address == PoolAddress.public_key),
    )


class AddressPoolService:
    """Exclusive allocator over the finite deployment address pool"""

    def __init__(
        self,
        session_factory: Optional[Callable[[], Session]] = None,
        custody: Optional[KeyCustodyService] = None,
    ):
        self.session_factory = session_factory or SessionLocal
        self._custody = custody

    @property
    def custody(self) -> KeyCustodyService:
        if self._custody is None:
            self._custody = get_custody_service()
        return self._custody

    def allocate(self, requester_id: str, session: Optional[Session] = None) -> AllocatedAddress:
        """
        Reserve the oldest free address for ``requester_id``

        Raises:
            PoolExhausted: no free address matched at update time after
                ``Config.POOL_ALLOCATE_CANDIDATES`` contended candidates
        """
        if not requester_id:
            raise ValueError("requester_id is required")

        with atomic_transaction(session, session_factory=self.session_factory) as db:
            lock_manager = OptimisticLockManager(db)
            tried_ids: List[int] = []

            for _ in range(max(1, Config.POOL_ALLOCATE_CANDIDATES)):
                candidate_stmt = (
                    select(PoolAddress.id, PoolAddress.public_key)
                    .where(_free_predicate())
                    .order_by(PoolAddress.created_at.asc(), PoolAddress.id.asc())
                    .limit(1)
                )
                if tried_ids:
                    candidate_stmt = candidate_stmt.where(PoolAddress.id.notin_(tried_ids))
                candidate = db.execute(candidate_stmt).first()
                if candidate is None:
                    break

                claimed = lock_manager.update_if_matches(
                    PoolAddress,
                    [PoolAddress.id == candidate.id, _free_predicate()],
                    {
                        "is_used": True,
                        "used_by": str(requester_id),
                        "used_at": datetime.now(timezone.utc),
                    },
                    context=f"id={candidate.id}",
                )
                if claimed:
                    row = lock_manager.reload(PoolAddress, PoolAddress.id == candidate.id)
                    secret = self.custody.decrypt(row.secret_key_material)
                    logger.info(
                        f"✅ Pool address {DataSanitizer.short_key(row.public_key)} allocated to {requester_id}"
                    )
                    return AllocatedAddress(public_key=row.public_key, secret_key=secret)

                tried_ids.append(candidate.id)

        logger.warning(f"⚠️ Address pool exhausted for requester {requester_id}")
        raise PoolExhausted("No unused deployment address available")

    def allocate_or_generate(self, requester_id: str, session: Optional[Session] = None) -> AllocatedAddress:
        """Allocate from the pool, falling back to an ad-hoc keypair when exhausted"""
        try:
            return self.allocate(requester_id, session=session)
        except PoolExhausted:
            keypair = generate_keypair()
            logger.warning(
                f"⚠️ Pool exhausted, generated ad-hoc address {DataSanitizer.short_key(str(keypair.pubkey()))} "
                f"for {requester_id}"
            )
            return AllocatedAddress(public_key=str(keypair.pubkey()), secret_key=secret_of(keypair), from_pool=False)

    def release(self, public_key: str, session: Optional[Session] = None) -> bool:
        """
        Return an address to the pool. Idempotent: releasing a free or unknown
        address is a no-op. Permanently allocated addresses are never released.
        """
        with atomic_transaction(session, session_factory=self.session_factory) as db:
            released = OptimisticLockManager(db).update_if_matches(
                PoolAddress,
                [
                    PoolAddress.public_key == public_key,
                    PoolAddress.is_used.is_(True),
                    PoolAddress.permanently_allocated.is_(False),
                ],
                {"is_used": False, "used_by": None, "used_at": None},
                context=DataSanitizer.short_key(public_key),
            )

        if released:
            logger.info(f"🔓 Pool address {DataSanitizer.short_key(public_key)} released")
        else:
            logger.debug(f"Pool address {DataSanitizer.short_key(public_key)} already free, burned or not pooled")
        return released

    def mark_used(
        self, public_key: str, requester_id: Optional[str] = None, session: Optional[Session] = None
    ) -> bool:
        """Force an address into permanently used state for administrative reconciliation"""
        values: Dict[str, Any] = {
            "is_used": True,
            "used_at": func.coalesce(PoolAddress.used_at, datetime.now(timezone.utc)),
            "permanently_allocated": True,
        }
        if requester_id:
            values["used_by"] = str(requester_id)
        else:
            values["used_by"] = func.coalesce(PoolAddress.used_by, ADMIN_REQUESTER)

        with atomic_transaction(session, session_factory=self.session_factory) as db:
            updated = OptimisticLockManager(db).update_if_matches(
                PoolAddress,
                [PoolAddress.public_key == public_key],
                values,
                context=DataSanitizer.short_key(public_key),
            )

        if updated:
            logger.info(f"🔒 Pool address {DataSanitizer.short_key(public_key)} marked permanently used")
        else:
            logger.warning(f"⚠️ mark_used: {DataSanitizer.short_key(public_key)} is not in the pool")
        return updated

    def mark_used_bulk(self, public_keys: Iterable[str], requester_id: Optional[str] = None) -> int:
        marked = 0
        with atomic_transaction(session_factory=self.session_factory) as db:
            for public_key in public_keys:
                if self.mark_used(public_key, requester_id, session=db):
                    marked += 1
        logger.info(f"📊 Marked {marked} pool addresses as permanently used")
        return marked

    def is_used(self, public_key: str, session: Optional[Session] = None) -> bool:
        """True for used or unknown addresses, False only for a free pool address"""
        with atomic_transaction(session, session_factory=self.session_factory) as db:
            row = db.execute(
                select(PoolAddress.is_used, PoolAddress.used_by).where(PoolAddress.public_key == public_key)
            ).first()
        if row is None:
            return True
        return bool(row.is_used or row.used_by)

    def stats(self) -> Dict[str, Union[int, float]]:
        """Pool usage summary"""
        with atomic_transaction(session_factory=self.session_factory) as db:
            total = db.execute(select(func.count(PoolAddress.id))).scalar_one()
            used = db.execute(
                select(func.count(PoolAddress.id)).where(PoolAddress.is_used.is_(True))
            ).scalar_one()

        available = total - used
        usage_percentage = round(used / total * 100, 2) if total else 0.0
        return {
            "total": total,
            "used": used,
            "available": available,
            "usage_percentage": usage_percentage,
        }

    def get_user_addresses(self, requester_id: str) -> List[Dict[str, Any]]:
        with atomic_transaction(session_factory=self.session_factory) as db:
            rows = db.execute(
                select(PoolAddress)
                .where(PoolAddress.used_by == str(requester_id))
                .order_by(PoolAddress.used_at.desc())
            ).scalars().all()
            return [
                {
                    "public_key": row.public_key,
                    "used_at": row.used_at,
                    "permanently_allocated": row.permanently_allocated,
                }
                for row in rows
            ]

    def add_addresses(self, secrets: Iterable[str]) -> int:
        """Provisioning helper: encrypt and store keypairs, skipping known addresses"""
        added = 0
        for secret in secrets:
            public_key = public_key_of(secret)
            try:
                with atomic_transaction(session_factory=self.session_factory) as db:
                    db.add(PoolAddress(
                        public_key=public_key,
                        secret_key_material=self.custody.encrypt(secret),
                    ))
                added += 1
            except IntegrityError:
                logger.debug(f"Pool address {DataSanitizer.short_key(public_key)} already provisioned")
        logger.info(f"✅ Provisioned {added} pool addresses")
        return added

    def handle_launch_failure(
        self,
        public_key: str,
        error: Union[str, Exception],
        launch_attempt: int,
        session: Optional[Session] = None,
    ) -> FailureClassification:
        """
        Apply the failure-driven release policy for a launch that used ``public_key``
        """
        classification = LaunchFailureClassifier.classify(error, launch_attempt)
        if classification.decision.releases:
            self.release(public_key, session=session)
            logger.warning(
                f"🔓 Released {DataSanitizer.short_key(public_key)} after {classification.decision.value} "
                f"(attempt {launch_attempt})"
            )
        else:
            logger.info(
                f"🔒 Keeping {DataSanitizer.short_key(public_key)} reserved for retry (attempt {launch_attempt})"
            )
        return classification
