"""
Wallet Service
Owner wallets (dev, funding, buyer) with custody-encrypted keys and per-role limits
"""

import logging
from typing import Any, Callable, Dict, Iterable, List, Optional, Union

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from config import Config
from database import SessionLocal
from models import Wallet, WalletRole
from services.key_custody_service import (
    KeyCustodyService, get_custody_service, generate_keypair, public_key_of, secret_of
)
from utils.atomic_transactions import atomic_transaction
from utils.data_sanitizer import DataSanitizer
from utils.exception_handler import PreconditionFailed

logger = logging.getLogger(__name__)

ROLE_LIMITS = {
    WalletRole.DEV: lambda: Config.MAX_DEV_WALLETS,
    WalletRole.BUYER: lambda: Config.MAX_BUYER_WALLETS,
}


def wallet_to_dict(wallet: Wallet) -> Dict[str, Any]:
    return {
        "id": wallet.id,
        "owner_id": wallet.owner_id,
        "public_key": wallet.public_key,
        "role": wallet.role,
        "is_default": wallet.is_default,
        "created_at": wallet.created_at,
    }


class WalletService:
    """Create, import and look up owner wallets"""

    def __init__(self, session_factory: Optional[Callable[[], Session]] = None,
                 custody: Optional[KeyCustodyService] = None):
        self.session_factory = session_factory or SessionLocal
        self._custody = custody

    @property
    def custody(self) -> KeyCustodyService:
        if self._custody is None:
            self._custody = get_custody_service()
        return self._custody

    def _check_limit(self, db: Session, owner_id: str, role: WalletRole) -> None:
        limit = ROLE_LIMITS.get(role)
        if limit is None:
            return
        count = db.execute(
            select(func.count(Wallet.id)).where(Wallet.owner_id == owner_id, Wallet.role == role.value)
        ).scalar_one()
        if count >= limit():
            raise PreconditionFailed(f"Maximum of {limit()} {role.value} wallets reached")

    def _find(self, db: Session, owner_id: str, public_key: str) -> Optional[Wallet]:
        return db.execute(
            select(Wallet).where(Wallet.owner_id == owner_id, Wallet.public_key == public_key)
        ).scalar_one_or_none()

    def import_wallet(
        self,
        owner_id: str,
        secret: str,
        role: Union[WalletRole, str],
        is_default: bool = False,
        session: Optional[Session] = None,
    ) -> Dict[str, Any]:
        """
        Store a wallet from its secret key; importing a known wallet returns
        the existing row instead of duplicating it

        Raises:
            PreconditionFailed: the owner already holds the maximum for ``role``
            DecryptionError: ``secret`` is not a valid keypair
        """
        role = role if isinstance(role, WalletRole) else WalletRole(role)
        owner_id = str(owner_id)
        public_key = public_key_of(secret)

        with atomic_transaction(session, session_factory=self.session_factory) as db:
            existing = self._find(db, owner_id, public_key)
            if existing is not None:
                return wallet_to_dict(existing)

            self._check_limit(db, owner_id, role)
            if is_default:
                db.execute(
                    update(Wallet)
                    .where(Wallet.owner_id == owner_id, Wallet.role == role.value)
                    .values(is_default=False)
                    .execution_options(synchronize_session=False)
                )
            wallet = Wallet(
                owner_id=owner_id,
                public_key=public_key,
                encrypted_private_key=self.custody.encrypt(secret),
                role=role.value,
                is_default=is_default,
            )
            db.add(wallet)
            db.flush()
            result = wallet_to_dict(wallet)

        logger.info(f"✅ Stored {role.value} wallet {DataSanitizer.short_key(public_key)} for {owner_id}")
        return result

    def create_wallet(self, owner_id: str, role: Union[WalletRole, str], is_default: bool = False,
                      session: Optional[Session] = None) -> Dict[str, Any]:
        """Generate a fresh keypair and store it"""
        return self.import_wallet(owner_id, secret_of(generate_keypair()), role, is_default, session=session)

    def upsert_buyer_wallets(self, owner_id: str, secrets: Iterable[str],
                             session: Optional[Session] = None) -> List[int]:
        """Ids of the buyer wallets for ``secrets``, creating the unknown ones"""
        ids = []
        with atomic_transaction(session, session_factory=self.session_factory) as db:
            for secret in secrets:
                if not secret:
                    continue
                ids.append(self.import_wallet(owner_id, secret, WalletRole.BUYER, session=db)["id"])
        return ids

    def get_wallets(self, owner_id: str, role: Optional[Union[WalletRole, str]] = None) -> List[Dict[str, Any]]:
        with atomic_transaction(session_factory=self.session_factory) as db:
            stmt = select(Wallet).where(Wallet.owner_id == str(owner_id))
            if role is not None:
                role = role if isinstance(role, WalletRole) else WalletRole(role)
                stmt = stmt.where(Wallet.role == role.value)
            rows = db.execute(stmt.order_by(Wallet.id.asc())).scalars().all()
            return [wallet_to_dict(row) for row in rows]

    def get_default_dev_wallet(self, owner_id: str, session: Optional[Session] = None) -> Optional[Dict[str, Any]]:
        with atomic_transaction(session, session_factory=self.session_factory) as db:
            wallet = db.execute(
                select(Wallet)
                .where(Wallet.owner_id == str(owner_id), Wallet.role == WalletRole.DEV.value)
                .order_by(Wallet.is_default.desc(), Wallet.id.asc())
                .limit(1)
            ).scalar_one_or_none()
            return wallet_to_dict(wallet) if wallet else None

    def get_or_create_dev_wallet(self, owner_id: str, session: Optional[Session] = None) -> Dict[str, Any]:
        with atomic_transaction(session, session_factory=self.session_factory) as db:
            wallet = self.get_default_dev_wallet(owner_id, session=db)
            if wallet is None:
                wallet = self.create_wallet(owner_id, WalletRole.DEV, is_default=True, session=db)
                logger.info(f"🆕 Created default dev wallet for {owner_id}")
            return wallet

    def decrypt_wallet_secrets(self, wallet_ids: Iterable[int], session: Optional[Session] = None) -> List[str]:
        """Decrypted secrets for ``wallet_ids``, in the order given"""
        wallet_ids = list(wallet_ids)
        if not wallet_ids:
            return []
        with atomic_transaction(session, session_factory=self.session_factory) as db:
            rows = db.execute(
                select(Wallet.id, Wallet.encrypted_private_key).where(Wallet.id.in_(wallet_ids))
            ).all()
        encrypted = {row.id: row.encrypted_private_key for row in rows}
        return [self.custody.decrypt(encrypted[wallet_id]) for wallet_id in wallet_ids if wallet_id in encrypted]
