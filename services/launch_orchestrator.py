"""
Launch Orchestrator
Drives the LISTED → LAUNCHING → LAUNCHED state machine and the sell locks

Every enqueue operation follows the same hand-off: verify preconditions,
apply one conditional update carrying the expected prior state, flush,
enqueue the job, commit. A failed enqueue rolls the update back; a failed
commit withdraws the job. Stage never advances without a dispatched job and
no job is dispatched without its stage advance.

Operations return ``{"success": bool, "message": str, ...}`` and never raise
on business failures.
"""

import logging
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Dict, List, Optional, Sequence, Union

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from config import Config
from database import SessionLocal
from jobs.execution_queue import ExecutionQueue, QueueName, build_job_id
from models import ConversationKind, LaunchStage, Token, TokenState
from services.address_pool_service import AddressPoolService
from services.buy_distribution import BuyDistributionGenerator
from services.key_custody_service import KeyCustodyService, get_custody_service, public_key_of
from services.launch_failure_classifier import LaunchFailureClassifier
from services.retry_data_service import RetryDataService
from services.solana_rpc import SolanaRPCClient
from services.wallet_service import WalletService
from utils.atomic_transactions import atomic_transaction
from utils.data_sanitizer import DataSanitizer
from utils.exception_handler import (
    InvalidAmount, LaunchEngineError, PreconditionFailed, QueueUnavailable, failure_result, structured_result
)
from utils.optimistic_locking import OptimisticLockManager

logger = logging.getLogger(__name__)


def _to_decimal(value: Any, field: str) -> Decimal:
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError, TypeError):
        raise InvalidAmount(f"{field} must be a number")
    if not amount.is_finite():
        raise InvalidAmount(f"{field} must be a finite number")
    return amount


def _validate_sell_percent(sell_percent: Any) -> Decimal:
    percent = _to_decimal(sell_percent, "sell_percent")
    if percent <= 0 or percent > 100:
        raise InvalidAmount(f"sell_percent must be in (0, 100], got {percent}")
    return percent


class LaunchOrchestrator:
    """Resumable launch/sell state machine over the persisted token rows"""

    def __init__(
        self,
        queue: ExecutionQueue,
        session_factory: Optional[Callable[[], Session]] = None,
        custody: Optional[KeyCustodyService] = None,
        pool: Optional[AddressPoolService] = None,
        rpc: Optional[SolanaRPCClient] = None,
        distribution: Optional[BuyDistributionGenerator] = None,
        wallets: Optional[WalletService] = None,
        retry_data: Optional[RetryDataService] = None,
    ):
        self.queue = queue
        self.session_factory = session_factory or SessionLocal
        self.custody = custody or get_custody_service()
        self.pool = pool or AddressPoolService(self.session_factory, self.custody)
        self.rpc = rpc or SolanaRPCClient()
        self.distribution = distribution or BuyDistributionGenerator()
        self.wallets = wallets or WalletService(self.session_factory, self.custody)
        self.retry_data = retry_data or RetryDataService(self.session_factory)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    @staticmethod
    def _load_token(db: Session, token_address: str, owner_id: Optional[str] = None) -> Token:
        token = db.execute(select(Token).where(Token.mint_address == token_address)).scalar_one_or_none()
        if token is None or (owner_id is not None and token.owner_id != str(owner_id)):
            raise PreconditionFailed("Token not found")
        return token

    def _hand_off(self, db: Session, queue_name: QueueName, job_id: str, payload: Dict[str, Any]) -> None:
        """Flush the state change, dispatch the job, then commit"""
        db.flush()
        try:
            self.queue.enqueue(queue_name, job_id, payload)
        except LaunchEngineError:
            raise
        except Exception as e:
            logger.error(f"❌ Execution queue rejected {job_id}: {type(e).__name__}")
            raise QueueUnavailable(f"Execution queue unavailable for {queue_name.value}") from e

        try:
            db.commit()
        except SQLAlchemyError:
            logger.error(f"❌ Commit failed after dispatching {job_id}, withdrawing job")
            self.queue.remove(job_id)
            raise

    # ------------------------------------------------------------------
    # Token creation and pre-launch checks
    # ------------------------------------------------------------------

    @structured_result("token creation")
    def create_token(
        self,
        owner_id: str,
        name: str,
        symbol: str,
        description: Optional[str] = None,
        metadata_uri: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Reserve a deployment address and persist a LISTED token linked to the default dev wallet"""
        if not name or not symbol:
            raise PreconditionFailed("Token name and symbol are required")

        with atomic_transaction(session_factory=self.session_factory) as db:
            address = self.pool.allocate_or_generate(str(owner_id), session=db)
            dev_wallet = self.wallets.get_or_create_dev_wallet(owner_id, session=db)
            token = Token(
                owner_id=str(owner_id),
                name=name,
                symbol=symbol,
                description=description,
                metadata_uri=metadata_uri,
                mint_address=address.public_key,
                encrypted_mint_key=self.custody.encrypt(address.secret_key),
                mint_from_pool=address.from_pool,
                state=TokenState.LISTED.value,
                dev_wallet_id=dev_wallet["id"],
            )
            db.add(token)
            db.flush()

        logger.info(f"🪙 Created token {symbol} at {DataSanitizer.short_key(address.public_key)} for {owner_id}")
        return {
            "success": True,
            "message": "Token created successfully",
            "token_address": address.public_key,
            "mint_from_pool": address.from_pool,
            "dev_wallet": dev_wallet["public_key"],
        }

    @structured_result("pre-launch checks")
    def pre_launch_checks(
        self,
        funding_secret: str,
        dev_encrypted_key: str,
        buy_amount: Any,
        dev_buy: Any,
        wallet_count: int,
    ) -> Dict[str, Any]:
        """
        Check the funder can cover the buys plus per-wallet fees and the dev
        wallet can cover creation, its own buy and fees
        """
        buy_amount = _to_decimal(buy_amount, "buy_amount")
        dev_buy = _to_decimal(dev_buy, "dev_buy")
        if buy_amount <= 0 or dev_buy < 0 or wallet_count < 0:
            raise InvalidAmount("Launch amounts must be positive")

        funder_public_key = public_key_of(funding_secret)
        dev_public_key = public_key_of(self.custody.decrypt(dev_encrypted_key))

        funder_balance = self.rpc.get_balance_sol(funder_public_key)
        dev_balance = self.rpc.get_balance_sol(dev_public_key)

        expected_funder = buy_amount + Decimal(wallet_count) * Decimal(str(Config.WALLET_FEE_RESERVE_SOL))
        expected_dev = (
            Decimal(str(Config.DEV_CREATION_FEE_SOL)) + dev_buy + Decimal(str(Config.DEV_FEE_RESERVE_SOL))
        )

        problems = []
        if funder_balance < expected_funder:
            problems.append(f"Funder balance too low. Expected {expected_funder} SOL, Gotten {funder_balance} SOL")
        if dev_balance < expected_dev:
            problems.append(f"Dev balance too low. Expected {expected_dev} SOL, Gotten {dev_balance} SOL")

        balances = {
            "funder_balance": funder_balance,
            "dev_balance": dev_balance,
            "expected_funder_balance": expected_funder,
            "expected_dev_balance": expected_dev,
        }
        if problems:
            logger.warning(f"⚠️ Pre-launch checks failed: {len(problems)} balance shortfall(s)")
            return failure_result("\n".join(problems), retryable=False, **balances)

        logger.info("✅ Pre-launch checks passed")
        return {"success": True, "message": "Pre-launch checks passed", **balances}

    # ------------------------------------------------------------------
    # Launch
    # ------------------------------------------------------------------

    @structured_result("launch enqueue")
    def enqueue_token_launch(
        self,
        owner_id: str,
        token_address: str,
        funding_secret: str,
        dev_encrypted_key: str,
        buyer_secrets: Sequence[str],
        dev_buy: Any,
        buy_amount: Any,
        seed: Optional[int] = None,
    ) -> Dict[str, Any]:
        """First launch of a LISTED token; a token that already attempted a launch goes through retry"""
        buy_amount = _to_decimal(buy_amount, "buy_amount")
        dev_buy = _to_decimal(dev_buy, "dev_buy")
        if dev_buy < 0:
            raise InvalidAmount("dev_buy cannot be negative")

        buyer_secrets = [secret for secret in buyer_secrets if secret]
        if not buyer_secrets:
            raise PreconditionFailed("At least one buyer wallet is required")
        # One schedule entry per supplied buyer wallet at most
        distribution = self.distribution.generate_distribution(
            float(buy_amount), max_wallets=len(buyer_secrets), seed=seed
        )

        funder_public_key = public_key_of(funding_secret)
        dev_secret = self.custody.decrypt(dev_encrypted_key)

        with atomic_transaction(session_factory=self.session_factory) as db:
            token = self._load_token(db, token_address, owner_id)
            if token.token_state is not TokenState.LISTED:
                raise PreconditionFailed(f"Token is {token.state}, expected {TokenState.LISTED.value}")
            if token.launch_attempt > 0:
                raise PreconditionFailed(
                    f"Token already attempted launch {token.launch_attempt} times, use launch retry"
                )

            mint_secret = self.custody.decrypt(token.encrypted_mint_key)
            buyer_wallet_ids = self.wallets.upsert_buyer_wallets(owner_id, buyer_secrets, session=db)
            attempt = 1

            OptimisticLockManager(db).update_if_matches(
                Token,
                [
                    Token.id == token.id,
                    Token.state == TokenState.LISTED.value,
                    Token.launch_attempt == 0,
                ],
                {
                    "state": TokenState.LAUNCHING.value,
                    "launch_stage": int(LaunchStage.START),
                    "launch_attempt": attempt,
                    "funding_key_encrypted": self.custody.encrypt(funding_secret),
                    "buyer_wallet_ids": buyer_wallet_ids,
                    "buy_amount": buy_amount,
                    "dev_buy_amount": dev_buy,
                    "buy_distribution": distribution,
                },
                raise_on_conflict=True,
                context=DataSanitizer.short_key(token_address),
            )
            self.retry_data.save(
                owner_id,
                ConversationKind.LAUNCH_TOKEN,
                {
                    "token_address": token_address,
                    "funder_public_key": funder_public_key,
                    "buy_amount": str(buy_amount),
                    "dev_buy": str(dev_buy),
                    "wallet_count": len(buyer_secrets),
                },
                session=db,
            )

            job_id = build_job_id(QueueName.TOKEN_LAUNCH, token_address, attempt)
            payload = {
                "owner_id": str(owner_id),
                "token_address": token_address,
                "token_secret": mint_secret,
                "funding_secret": funding_secret,
                "dev_secret": dev_secret,
                "buyer_secrets": buyer_secrets,
                "dev_buy": float(dev_buy),
                "buy_amount": float(buy_amount),
                "buy_distribution": distribution,
                "launch_stage": int(LaunchStage.START),
                "launch_attempt": attempt,
            }
            self._hand_off(db, QueueName.TOKEN_LAUNCH, job_id, payload)

        logger.info(
            f"🚀 Launch enqueued for {DataSanitizer.short_key(token_address)} (attempt {attempt}, "
            f"{len(distribution)} buys funded by {DataSanitizer.short_key(funder_public_key)})"
        )
        return {
            "success": True,
            "message": "Token launch enqueued",
            "job_id": job_id,
            "launch_attempt": attempt,
            "wallet_count": len(distribution),
        }

    @structured_result("launch retry enqueue")
    def enqueue_token_launch_retry(self, owner_id: str, token_address: str) -> Dict[str, Any]:
        """Re-enter LAUNCHING from the persisted stage and distribution"""
        with atomic_transaction(session_factory=self.session_factory) as db:
            token = self._load_token(db, token_address, owner_id)
            if token.token_state is TokenState.LAUNCHED:
                raise PreconditionFailed("Token is already launched")
            if not token.funding_key_encrypted or not token.buy_distribution:
                raise PreconditionFailed("Token has no launch data to retry")
            if token.launch_attempt > Config.MAX_LAUNCH_ATTEMPTS:
                raise PreconditionFailed(f"Launch retries exhausted after {token.launch_attempt} attempts")
            if token.mint_from_pool and not self.pool.is_used(token.mint_address, session=db):
                raise PreconditionFailed("Deployment address was released after a permanent failure")

            resume_stage = token.launch_stage or int(LaunchStage.START)
            attempt = token.launch_attempt + 1

            payload = {
                "owner_id": str(owner_id),
                "token_address": token_address,
                "token_secret": self.custody.decrypt(token.encrypted_mint_key),
                "funding_secret": self.custody.decrypt(token.funding_key_encrypted),
                "dev_secret": (
                    self.custody.decrypt(token.dev_wallet.encrypted_private_key) if token.dev_wallet else None
                ),
                "buyer_secrets": self.wallets.decrypt_wallet_secrets(token.buyer_wallet_ids, session=db),
                "dev_buy": float(token.dev_buy_amount),
                "buy_amount": float(token.buy_amount),
                "buy_distribution": list(token.buy_distribution),
                "launch_stage": resume_stage,
                "launch_attempt": attempt,
            }
            if payload["dev_secret"] is None:
                raise PreconditionFailed("Token has no dev wallet linked")

            OptimisticLockManager(db).update_if_matches(
                Token,
                [
                    Token.id == token.id,
                    Token.state == token.state,
                    Token.launch_attempt == token.launch_attempt,
                ],
                {
                    "state": TokenState.LAUNCHING.value,
                    "launch_stage": resume_stage,
                    "launch_attempt": attempt,
                },
                raise_on_conflict=True,
                context=DataSanitizer.short_key(token_address),
            )

            job_id = build_job_id(QueueName.TOKEN_LAUNCH, token_address, attempt)
            self._hand_off(db, QueueName.TOKEN_LAUNCH, job_id, payload)

        logger.info(
            f"🔁 Launch retry enqueued for {DataSanitizer.short_key(token_address)} "
            f"(attempt {attempt}, resuming at stage {resume_stage})"
        )
        return {
            "success": True,
            "message": "Token launch retry enqueued",
            "job_id": job_id,
            "launch_attempt": attempt,
            "launch_stage": resume_stage,
        }

    # ------------------------------------------------------------------
    # Sells
    # ------------------------------------------------------------------

    def _enqueue_sell(
        self,
        queue_name: QueueName,
        lock_column: str,
        attempt_column: str,
        owner_id: str,
        token_address: str,
        payload: Dict[str, Any],
    ) -> Dict[str, Any]:
        with atomic_transaction(session_factory=self.session_factory) as db:
            token = self._load_token(db, token_address, owner_id)
            if token.token_state is not TokenState.LAUNCHED:
                raise PreconditionFailed(f"Token is {token.state}, expected {TokenState.LAUNCHED.value}")
            if getattr(token, lock_column):
                raise PreconditionFailed(f"{queue_name.value.replace('_', ' ').capitalize()} already in progress")

            attempt = getattr(token, attempt_column) + 1
            lock_column_attr = getattr(Token, lock_column)
            acquired = OptimisticLockManager(db).update_if_matches(
                Token,
                [
                    Token.id == token.id,
                    lock_column_attr.is_(False),
                    getattr(Token, attempt_column) == attempt - 1,
                ],
                {lock_column: True, attempt_column: attempt},
                context=DataSanitizer.short_key(token_address),
            )
            if not acquired:
                raise PreconditionFailed(f"{queue_name.value.replace('_', ' ').capitalize()} already in progress")

            job_id = build_job_id(queue_name, token_address, attempt)
            payload = dict(payload, owner_id=str(owner_id), token_address=token_address, sell_attempt=attempt)
            self._hand_off(db, queue_name, job_id, payload)

        logger.info(f"💸 {queue_name.value} enqueued for {DataSanitizer.short_key(token_address)} (attempt {attempt})")
        return {"success": True, "message": f"{queue_name.value} enqueued", "job_id": job_id, "sell_attempt": attempt}

    @structured_result("dev sell enqueue")
    def enqueue_dev_sell(self, owner_id: str, token_address: str, dev_encrypted_key: str,
                         sell_percent: Any) -> Dict[str, Any]:
        percent = _validate_sell_percent(sell_percent)
        dev_secret = self.custody.decrypt(dev_encrypted_key)
        return self._enqueue_sell(
            QueueName.DEV_SELL, "lock_dev_sell", "dev_sell_attempt", owner_id, token_address,
            {"dev_secret": dev_secret, "sell_percent": float(percent)},
        )

    @structured_result("wallet sell enqueue")
    def enqueue_wallet_sell(
        self,
        owner_id: str,
        token_address: str,
        dev_encrypted_key: str,
        buyer_encrypted_keys: Sequence[str],
        sell_percent: Any,
    ) -> Dict[str, Any]:
        percent = _validate_sell_percent(sell_percent)
        buyer_secrets = [self.custody.decrypt(key) for key in buyer_encrypted_keys if key and key.strip()]
        if not buyer_secrets:
            raise PreconditionFailed("No buyer wallets to sell from")
        dev_secret = self.custody.decrypt(dev_encrypted_key)
        return self._enqueue_sell(
            QueueName.WALLET_SELL, "lock_wallet_sell", "wallet_sell_attempt", owner_id, token_address,
            {"dev_secret": dev_secret, "buyer_secrets": buyer_secrets, "sell_percent": float(percent)},
        )

    # ------------------------------------------------------------------
    # Worker callbacks
    # ------------------------------------------------------------------

    @structured_result("token state update")
    def update_token_state(self, token_address: str, state: Union[TokenState, str]) -> Dict[str, Any]:
        try:
            state = state if isinstance(state, TokenState) else TokenState(state)
        except ValueError:
            raise PreconditionFailed(f"Unknown token state {state!r}")

        with atomic_transaction(session_factory=self.session_factory) as db:
            token = self._load_token(db, token_address)
            token.state = state.value

        logger.info(f"🔄 Token {DataSanitizer.short_key(token_address)} is now {state.value}")
        return {"success": True, "message": f"Token state set to {state.value}"}

    @structured_result("launch stage update")
    def update_launch_stage(self, token_address: str, stage: Union[LaunchStage, int]) -> Dict[str, Any]:
        """Advance the persisted stage; a stage at or behind the current one is ignored"""
        try:
            stage = LaunchStage(int(stage))
        except (ValueError, TypeError):
            raise PreconditionFailed(f"Unknown launch stage {stage!r}")

        with atomic_transaction(session_factory=self.session_factory) as db:
            token = self._load_token(db, token_address)
            advanced = OptimisticLockManager(db).update_if_matches(
                Token,
                [Token.id == token.id, Token.launch_stage < int(stage)],
                {"launch_stage": int(stage)},
                context=f"{DataSanitizer.short_key(token_address)} stage {int(stage)}",
            )

        if advanced:
            logger.info(f"📈 Token {DataSanitizer.short_key(token_address)} reached stage {stage.name}")
            return {"success": True, "message": f"Launch stage advanced to {int(stage)}", "advanced": True}
        return {"success": True, "message": f"Launch stage already at or past {int(stage)}", "advanced": False}

    @structured_result("buy distribution update")
    def update_buy_distribution(self, token_address: str, distribution: List[Any]) -> Dict[str, Any]:
        amounts = [float(_to_decimal(amount, "distribution entry")) for amount in distribution]
        if not amounts or any(amount <= 0 for amount in amounts):
            raise InvalidAmount("Buy distribution must contain positive amounts")

        with atomic_transaction(session_factory=self.session_factory) as db:
            token = self._load_token(db, token_address)
            token.buy_distribution = amounts

        return {"success": True, "message": "Buy distribution updated", "wallet_count": len(amounts)}

    def _release_lock(self, token_address: str, lock_column: str) -> Dict[str, Any]:
        with atomic_transaction(session_factory=self.session_factory) as db:
            token = self._load_token(db, token_address)
            released = OptimisticLockManager(db).update_if_matches(
                Token,
                [Token.id == token.id, getattr(Token, lock_column).is_(True)],
                {lock_column: False},
                context=DataSanitizer.short_key(token_address),
            )
        if released:
            logger.info(f"🔓 Released {lock_column} on {DataSanitizer.short_key(token_address)}")
        return {"success": True, "message": f"{lock_column} released", "released": released}

    @structured_result("dev sell lock release")
    def release_dev_sell_lock(self, token_address: str) -> Dict[str, Any]:
        return self._release_lock(token_address, "lock_dev_sell")

    @structured_result("wallet sell lock release")
    def release_wallet_sell_lock(self, token_address: str) -> Dict[str, Any]:
        return self._release_lock(token_address, "lock_wallet_sell")

    @structured_result("launch outcome handling")
    def handle_launch_outcome(self, token_address: str, success: bool,
                              error: Optional[Union[str, Exception]] = None) -> Dict[str, Any]:
        """
        Terminal report for a launch attempt

        Success moves the token to LAUNCHED and burns the pool address. Failure
        returns it to LISTED with its stage kept for resumption, and applies
        the reservation release policy.
        """
        error = error if error is not None else "Unknown launch failure"
        with atomic_transaction(session_factory=self.session_factory) as db:
            token = self._load_token(db, token_address)
            attempt = token.launch_attempt
            lock_manager = OptimisticLockManager(db)

            if success:
                lock_manager.update_if_matches(
                    Token,
                    [Token.id == token.id, Token.state == TokenState.LAUNCHING.value],
                    {"state": TokenState.LAUNCHED.value, "launch_stage": int(LaunchStage.COMPLETE)},
                    raise_on_conflict=True,
                    context=DataSanitizer.short_key(token_address),
                )
                if token.mint_from_pool:
                    self.pool.mark_used(token_address, token.owner_id, session=db)
            else:
                lock_manager.update_if_matches(
                    Token,
                    [Token.id == token.id, Token.state == TokenState.LAUNCHING.value],
                    {"state": TokenState.LISTED.value},
                    raise_on_conflict=True,
                    context=DataSanitizer.short_key(token_address),
                )
                if token.mint_from_pool:
                    classification = self.pool.handle_launch_failure(token_address, error, attempt, session=db)
                else:
                    classification = LaunchFailureClassifier.classify(error, attempt)

        if success:
            logger.info(f"🎉 Token {DataSanitizer.short_key(token_address)} launched on attempt {attempt}")
            return {"success": True, "message": "Token launched", "launch_attempt": attempt}

        if classification.fatal:
            logger.error(
                f"❌ Launch of {DataSanitizer.short_key(token_address)} failed fatally on attempt {attempt} "
                f"({classification.decision.value})"
            )
            message = "Launch failed permanently; no further retries"
        else:
            logger.warning(f"⚠️ Launch of {DataSanitizer.short_key(token_address)} failed on attempt {attempt}")
            message = "Launch failed; retry available"

        return {
            "success": True,
            "message": message,
            "launch_attempt": attempt,
            "fatal": classification.fatal,
            "failure_class": classification.failure_class.value,
            "decision": classification.decision.value,
            "retryable": not classification.fatal,
        }
