"""
Launch Engine Database Schema
=============================

Tables backing the launch orchestration engine:
- Pre-generated deployment address pool
- Tokens and their persisted launch pipeline state
- Owner wallets (dev, funding, buyer) with encrypted keys
- Append-only on-chain transaction ledger
- Resumable conversation parameters (retry data)

Secret key material is only ever stored encrypted by the key custody service.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum, IntEnum
from typing import Optional
from sqlalchemy import (
    Integer, String, Numeric, DateTime, Boolean, Text,
    ForeignKey, UniqueConstraint, Index, CheckConstraint, func, JSON
)
from sqlalchemy.orm import DeclarativeBase, relationship, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all database models"""
    pass


# ============================================================================
# ENUMS - Business Logic Constants
# ============================================================================

class TokenState(Enum):
    """Token launch lifecycle states"""
    LISTED = "listed"
    LAUNCHING = "launching"
    LAUNCHED = "launched"


class LaunchStage(IntEnum):
    """Checkpoints inside the LAUNCHING state"""
    START = 1
    FUNDING = 2
    LAUNCH = 3
    SNIPE = 4
    COMPLETE = 5


class WalletRole(Enum):
    """Role a stored wallet plays in a campaign"""
    DEV = "dev"
    FUNDING = "funding"
    BUYER = "buyer"


class TransactionKind(Enum):
    """On-chain operation kinds recorded in the ledger"""
    TOKEN_CREATION = "token_creation"
    DEV_BUY = "dev_buy"
    SNIPE_BUY = "snipe_buy"
    DEV_SELL = "dev_sell"
    WALLET_SELL = "wallet_sell"
    EXTERNAL_SELL = "external_sell"
    EXTERNAL_BUY = "external_buy"

    @property
    def is_sell(self) -> bool:
        return self in (TransactionKind.DEV_SELL, TransactionKind.WALLET_SELL, TransactionKind.EXTERNAL_SELL)


class ConversationKind(Enum):
    """Resumable user flows whose last parameters are cached"""
    QUICK_LAUNCH = "quick_launch"
    LAUNCH_TOKEN = "launch_token"
    CREATE_TOKEN = "create_token"


def _enum_values_sql(enum_cls) -> str:
    return ", ".join(f"'{member.value}'" for member in enum_cls)


# ============================================================================
# MODELS
# ============================================================================

class PoolAddress(Base):
    """Pre-generated deployment address reserved for a single launch"""
    __tablename__ = 'pool_addresses'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    public_key: Mapped[str] = mapped_column(String(64), unique=True, nullable=False, index=True)
    secret_key_material: Mapped[str] = mapped_column(Text, nullable=False)  # Encrypted by key custody

    # Reservation state: is_used and used_by are always set or cleared together
    is_used: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    used_by: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)
    used_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    permanently_allocated: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    __table_args__ = (
        CheckConstraint(
            '(is_used AND used_by IS NOT NULL) OR (NOT is_used AND used_by IS NULL)',
            name='ck_pool_address_used_consistent'
        ),
        Index('ix_pool_addresses_free', 'is_used', 'created_at'),
    )


class Wallet(Base):
    """Owner wallet with encrypted private key"""
    __tablename__ = 'wallets'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    owner_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    public_key: Mapped[str] = mapped_column(String(64), nullable=False)
    encrypted_private_key: Mapped[str] = mapped_column(Text, nullable=False)
    role: Mapped[str] = mapped_column(String(10), nullable=False)
    is_default: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    __table_args__ = (
        UniqueConstraint('owner_id', 'public_key', name='uq_wallet_owner_public_key'),
        CheckConstraint(f"role IN ({_enum_values_sql(WalletRole)})", name='ck_wallet_role_valid'),
        Index('ix_wallets_owner_role', 'owner_id', 'role'),
    )


class Token(Base):
    """Token and its persisted launch pipeline state"""
    __tablename__ = 'tokens'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    owner_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    symbol: Mapped[str] = mapped_column(String(20), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    metadata_uri: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)

    mint_address: Mapped[str] = mapped_column(String(64), unique=True, nullable=False, index=True)
    encrypted_mint_key: Mapped[str] = mapped_column(Text, nullable=False)
    mint_from_pool: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    state: Mapped[str] = mapped_column(String(20), default=TokenState.LISTED.value, nullable=False)

    # Launch data
    funding_key_encrypted: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    dev_wallet_id: Mapped[Optional[int]] = mapped_column(Integer, ForeignKey('wallets.id'), nullable=True)
    buyer_wallet_ids: Mapped[list] = mapped_column(JSON, default=list, nullable=False)
    buy_amount: Mapped[Decimal] = mapped_column(Numeric(20, 9), default=0, nullable=False)
    dev_buy_amount: Mapped[Decimal] = mapped_column(Numeric(20, 9), default=0, nullable=False)
    launch_stage: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    launch_attempt: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    lock_dev_sell: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    lock_wallet_sell: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    dev_sell_attempt: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    wallet_sell_attempt: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    buy_distribution: Mapped[list] = mapped_column(JSON, default=list, nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    dev_wallet: Mapped[Optional["Wallet"]] = relationship("Wallet")

    __table_args__ = (
        CheckConstraint(f"state IN ({_enum_values_sql(TokenState)})", name='ck_token_state_valid'),
        CheckConstraint('launch_attempt >= 0', name='ck_token_launch_attempt_positive'),
        Index('ix_tokens_owner_state', 'owner_id', 'state'),
    )

    @property
    def token_state(self) -> TokenState:
        return TokenState(self.state)


class TransactionRecord(Base):
    """Append-only ledger of attempted on-chain operations"""
    __tablename__ = 'transaction_records'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    token_address: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    wallet_public_key: Mapped[str] = mapped_column(String(64), nullable=False)
    transaction_type: Mapped[str] = mapped_column(String(20), nullable=False)
    signature: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    success: Mapped[bool] = mapped_column(Boolean, nullable=False)
    launch_attempt: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    amount_sol: Mapped[Optional[Decimal]] = mapped_column(Numeric(20, 9), nullable=True)
    amount_tokens: Mapped[Optional[str]] = mapped_column(String(40), nullable=True)  # Raw integer units
    retry_attempt: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    sell_attempt: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    sell_percent: Mapped[Optional[Decimal]] = mapped_column(Numeric(6, 2), nullable=True)
    slippage_used: Mapped[Optional[Decimal]] = mapped_column(Numeric(6, 2), nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    __table_args__ = (
        CheckConstraint(
            f"transaction_type IN ({_enum_values_sql(TransactionKind)})",
            name='ck_transaction_record_type_valid'
        ),
        Index('ix_transaction_records_token_wallet_type', 'token_address', 'wallet_public_key', 'transaction_type'),
        Index('ix_transaction_records_token_attempt', 'token_address', 'launch_attempt'),
    )

    @property
    def kind(self) -> TransactionKind:
        return TransactionKind(self.transaction_type)


class RetryData(Base):
    """Last user-entered parameters for a resumable flow"""
    __tablename__ = 'retry_data'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    owner_id: Mapped[str] = mapped_column(String(64), nullable=False)
    conversation_kind: Mapped[str] = mapped_column(String(30), nullable=False)
    payload: Mapped[dict] = mapped_column(JSON, nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    __table_args__ = (
        UniqueConstraint('owner_id', 'conversation_kind', name='uq_retry_data_owner_kind'),
        CheckConstraint(
            f"conversation_kind IN ({_enum_values_sql(ConversationKind)})",
            name='ck_retry_data_kind_valid'
        ),
    )
