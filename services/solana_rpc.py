"""Solana JSON-RPC client for balance checks and transaction receipt parsing"""

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, List, Optional

import requests

from config import Config
from utils.data_sanitizer import DataSanitizer
from utils.exception_handler import TransientChainError

logger = logging.getLogger(__name__)


@dataclass
class ParsedAmounts:
    """SOL and token deltas for one wallet in one confirmed transaction"""
    success: bool
    sol_amount: Optional[Decimal] = None
    token_amount: Optional[str] = None
    error: Optional[str] = None


class SolanaRPCClient:
    """Read-only RPC access; this engine never signs or broadcasts"""

    def __init__(self, rpc_url: Optional[str] = None, timeout: Optional[int] = None,
                 http: Optional[requests.Session] = None):
        self.rpc_url = rpc_url or Config.SOLANA_RPC_URL
        self.timeout = timeout or Config.RPC_TIMEOUT_SECONDS
        self.http = http or requests.Session()
        self.http.headers.update({"Content-Type": "application/json"})

    def _call(self, method: str, params: List[Any]) -> Any:
        """
        Raw JSON-RPC call

        Timeouts, connection failures, HTTP errors and RPC error objects all
        surface as TransientChainError; the orchestrator's attempt policy
        decides whether to retry.
        """
        payload = {"jsonrpc": "2.0", "id": 1, "method": method, "params": params}
        try:
            response = self.http.post(self.rpc_url, json=payload, timeout=self.timeout)
            response.raise_for_status()
            body = response.json()
        except requests.Timeout as e:
            logger.warning(f"⏱️ RPC {method} timed out after {self.timeout}s")
            raise TransientChainError(f"RPC {method} timeout") from e
        except requests.RequestException as e:
            logger.warning(f"❌ RPC {method} request failed: {type(e).__name__}")
            raise TransientChainError(f"RPC {method} network error: {type(e).__name__}") from e
        except ValueError as e:
            raise TransientChainError(f"RPC {method} returned invalid JSON") from e

        if body.get("error"):
            error = body["error"]
            message = error.get("message", "unknown") if isinstance(error, dict) else str(error)
            logger.warning(f"❌ RPC {method} error: {DataSanitizer.sanitize_error_message(message)}")
            raise TransientChainError(f"RPC {method} error: {message}")
        return body.get("result")

    def get_balance(self, public_key: str) -> int:
        """Balance in lamports"""
        result = self._call("getBalance", [public_key, {"commitment": Config.RPC_COMMITMENT}])
        return int((result or {}).get("value", 0))

    def get_balance_sol(self, public_key: str) -> Decimal:
        return Decimal(self.get_balance(public_key)) / Decimal(Config.LAMPORTS_PER_SOL)

    def get_token_balance(self, owner: str, mint: str) -> int:
        """Raw token units held by ``owner`` across its accounts for ``mint``"""
        result = self._call(
            "getTokenAccountsByOwner",
            [owner, {"mint": mint}, {"encoding": "jsonParsed", "commitment": Config.RPC_COMMITMENT}],
        )
        total = 0
        for account in (result or {}).get("value", []):
            info = account["account"]["data"]["parsed"]["info"]
            total += int(info["tokenAmount"]["amount"])
        return total

    def get_transaction(self, signature: str) -> Optional[Dict[str, Any]]:
        return self._call(
            "getTransaction",
            [signature, {
                "encoding": "jsonParsed",
                "commitment": Config.RPC_COMMITMENT,
                "maxSupportedTransactionVersion": 0,
            }],
        )

    def parse_transaction_amounts(self, signature: str, wallet: str, mint: str, is_sell: bool) -> ParsedAmounts:
        """
        Derive the SOL spent/received and tokens bought/sold by ``wallet``

        Never raises; failures return ``ParsedAmounts(success=False)`` so the
        ledger can fall back to estimated amounts.
        """
        try:
            tx = self.get_transaction(signature)
        except TransientChainError as e:
            return ParsedAmounts(success=False, error=e.message)

        try:
            return self._parse_amounts(tx, wallet, mint, is_sell)
        except (KeyError, IndexError, TypeError, ValueError) as e:
            logger.warning(f"⚠️ Could not parse transaction {signature[:12]}: {type(e).__name__}")
            return ParsedAmounts(success=False, error=f"Unparseable transaction: {type(e).__name__}")

    @staticmethod
    def _parse_amounts(tx: Optional[Dict[str, Any]], wallet: str, mint: str, is_sell: bool) -> ParsedAmounts:
        if not tx:
            return ParsedAmounts(success=False, error="Transaction not found")
        meta = tx.get("meta")
        if not meta:
            return ParsedAmounts(success=False, error="Transaction metadata not available")
        if meta.get("err"):
            return ParsedAmounts(success=False, error=f"Transaction failed: {meta['err']}")

        account_keys = tx["transaction"]["message"]["accountKeys"]
        keys = [key["pubkey"] if isinstance(key, dict) else key for key in account_keys]
        if wallet not in keys:
            return ParsedAmounts(success=False, error="Wallet not found in transaction")
        index = keys.index(wallet)

        lamport_change = meta["preBalances"][index] - meta["postBalances"][index]
        sol_amount = abs(Decimal(lamport_change)) / Decimal(Config.LAMPORTS_PER_SOL)

        def token_balance(balances: List[Dict[str, Any]]) -> Optional[int]:
            for balance in balances or []:
                if balance.get("mint") == mint and balance.get("owner") == wallet:
                    return int(balance["uiTokenAmount"]["amount"])
            return None

        pre_tokens = token_balance(meta.get("preTokenBalances"))
        post_tokens = token_balance(meta.get("postTokenBalances"))
        token_change = (post_tokens or 0) - (pre_tokens or 0)

        token_amount = str(abs(token_change)) if is_sell else str(token_change)
        return ParsedAmounts(success=True, sol_amount=sol_amount, token_amount=token_amount)
