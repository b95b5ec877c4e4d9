"""
Reconciliation Service
Turns the retry-laden transaction ledger into accurate spend, earn and P&L figures

Buys are grouped by (wallet, transaction type) and only the latest successful
record of each group counts, so a wallet whose buy was retried is charged
once. Sells are summed over successful records, deduplicated by signature.
"""

import logging
from collections import defaultdict
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

from models import TransactionKind
from services.price_feed import PriceFeedClient
from services.transaction_ledger import TransactionLedger

logger = logging.getLogger(__name__)

ZERO = Decimal("0")
SPEND_KINDS = (TransactionKind.DEV_BUY, TransactionKind.SNIPE_BUY)
SELL_KINDS = (TransactionKind.DEV_SELL, TransactionKind.WALLET_SELL, TransactionKind.EXTERNAL_SELL)


def _amount(row: Dict[str, Any]) -> Decimal:
    value = row.get("amount_sol")
    return Decimal(str(value)) if value is not None else ZERO


def _tokens(row: Dict[str, Any]) -> int:
    value = row.get("amount_tokens")
    if value in (None, ""):
        return 0
    return abs(int(Decimal(str(value))))


def calculate_profit_loss(total_spent: Decimal, total_earned: Decimal,
                          holdings_value: Decimal = ZERO) -> Dict[str, Any]:
    """P&L = holdings + earned − spent; percentage is 0 when nothing was spent"""
    net = holdings_value + total_earned - total_spent
    percentage = (net / total_spent * 100).quantize(Decimal("0.01")) if total_spent > 0 else ZERO
    return {
        "net_profit_loss": net,
        "profit_loss_percentage": percentage,
        "is_profit": net > 0,
    }


class ReconciliationService:
    """Wallet-grouped spending and earning calculations over the ledger"""

    def __init__(self, ledger: Optional[TransactionLedger] = None,
                 price_feed: Optional[PriceFeedClient] = None):
        self.ledger = ledger or TransactionLedger()
        self._price_feed = price_feed

    @property
    def price_feed(self) -> PriceFeedClient:
        if self._price_feed is None:
            self._price_feed = PriceFeedClient()
        return self._price_feed

    # ------------------------------------------------------------------
    # Grouping
    # ------------------------------------------------------------------

    @staticmethod
    def _latest_successful_buys(rows: List[Dict[str, Any]]) -> Dict[Tuple[str, str], Dict[str, Any]]:
        """Net terminal outcome per (wallet, buy type): the last successful row"""
        latest: Dict[Tuple[str, str], Dict[str, Any]] = {}
        for row in rows:
            kind = TransactionKind(row["transaction_type"])
            if kind not in SPEND_KINDS or not row["success"]:
                continue
            # rows arrive in insertion order, later rows win
            latest[(row["wallet_public_key"], kind.value)] = row
        return latest

    @staticmethod
    def _unique_sells(rows: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        seen_signatures = set()
        sells = []
        for row in rows:
            kind = TransactionKind(row["transaction_type"])
            if kind not in SELL_KINDS or not row["success"]:
                continue
            signature = row.get("signature")
            if signature:
                if signature in seen_signatures:
                    continue
                seen_signatures.add(signature)
            sells.append(row)
        return sells

    # ------------------------------------------------------------------
    # Public calculations
    # ------------------------------------------------------------------

    def accurate_spending_stats(self, token_address: str, holdings_value_sol: Decimal = ZERO) -> Dict[str, Any]:
        """Grouped spend/earn totals and P&L for one token"""
        rows = self.ledger.get_transactions(token_address)

        buys = self._latest_successful_buys(rows)
        total_dev_spent = sum(
            (_amount(row) for (_, kind), row in buys.items() if kind == TransactionKind.DEV_BUY.value), ZERO
        )
        total_snipe_spent = sum(
            (_amount(row) for (_, kind), row in buys.items() if kind == TransactionKind.SNIPE_BUY.value), ZERO
        )
        total_spent = total_dev_spent + total_snipe_spent
        buy_wallets = {wallet for wallet, _ in buys}

        sells = self._unique_sells(rows)
        earned = {kind: ZERO for kind in SELL_KINDS}
        tokens_sold = {kind: 0 for kind in SELL_KINDS}
        for row in sells:
            kind = TransactionKind(row["transaction_type"])
            earned[kind] += _amount(row)
            tokens_sold[kind] += _tokens(row)
        total_earned = sum(earned.values(), ZERO)

        stats = {
            "total_spent": total_spent,
            "total_dev_spent": total_dev_spent,
            "total_snipe_spent": total_snipe_spent,
            "successful_buy_wallets": len(buy_wallets),
            "average_spent_per_wallet": (total_spent / len(buy_wallets)) if buy_wallets else ZERO,
            "total_earned": total_earned,
            "total_dev_earned": earned[TransactionKind.DEV_SELL],
            "total_wallet_earned": earned[TransactionKind.WALLET_SELL],
            "total_external_earned": earned[TransactionKind.EXTERNAL_SELL],
            "successful_sells": len(sells),
            "unique_sell_wallets": len({row["wallet_public_key"] for row in sells}),
            "total_tokens_sold": sum(tokens_sold.values()),
            "total_dev_tokens_sold": tokens_sold[TransactionKind.DEV_SELL],
            "total_wallet_tokens_sold": tokens_sold[TransactionKind.WALLET_SELL],
            "total_external_tokens_sold": tokens_sold[TransactionKind.EXTERNAL_SELL],
            "holdings_value_sol": holdings_value_sol,
        }
        stats.update(calculate_profit_loss(total_spent, total_earned, holdings_value_sol))
        return stats

    def compare_spending_calculations(self, token_address: str) -> Dict[str, Any]:
        """Naive row summation next to the grouped figure, for diagnostics only"""
        rows = self.ledger.get_transactions(token_address)
        buy_rows = [row for row in rows if TransactionKind(row["transaction_type"]) in SPEND_KINDS]

        naive_total = sum((_amount(row) for row in buy_rows), ZERO)
        naive_successful = sum((_amount(row) for row in buy_rows if row["success"]), ZERO)
        accurate_total = self.accurate_spending_stats(token_address)["total_spent"]

        attempts = defaultdict(int)
        for row in buy_rows:
            attempts[(row["wallet_public_key"], row["transaction_type"])] += 1
        retried = sorted({wallet for (wallet, _), count in attempts.items() if count > 1})

        inflation = naive_total - accurate_total
        if inflation > 0:
            logger.info(
                f"📊 Naive spend for {token_address[:8]} overstates by {inflation} SOL "
                f"across {len(retried)} retried wallets"
            )
        return {
            "naive_total_spent": naive_total,
            "naive_successful_spent": naive_successful,
            "accurate_total_spent": accurate_total,
            "inflation": inflation,
            "buy_records": len(buy_rows),
            "wallets_with_retries": retried,
        }

    def detailed_spending_breakdown(self, token_address: str) -> List[Dict[str, Any]]:
        """Per wallet and buy type: attempts and the amount actually counted"""
        rows = self.ledger.get_transactions(token_address)
        counted = self._latest_successful_buys(rows)

        groups: Dict[Tuple[str, str], Dict[str, Any]] = {}
        for row in rows:
            kind = TransactionKind(row["transaction_type"])
            if kind not in SPEND_KINDS:
                continue
            key = (row["wallet_public_key"], kind.value)
            group = groups.setdefault(key, {
                "wallet_public_key": key[0],
                "transaction_type": key[1],
                "attempts": 0,
                "successful_attempts": 0,
                "failed_attempts": 0,
                "naive_amount_sol": ZERO,
                "counted_amount_sol": ZERO,
            })
            group["attempts"] += 1
            group["naive_amount_sol"] += _amount(row)
            if row["success"]:
                group["successful_attempts"] += 1
            else:
                group["failed_attempts"] += 1

        for key, row in counted.items():
            groups[key]["counted_amount_sol"] = _amount(row)

        return sorted(groups.values(), key=lambda g: (g["wallet_public_key"], g["transaction_type"]))

    def sell_history(self, token_address: str) -> List[Dict[str, Any]]:
        """Successful sells, newest first"""
        return list(reversed(self._unique_sells(self.ledger.get_transactions(token_address))))

    def sell_summary(self, token_address: str) -> Dict[str, Any]:
        sells = self._unique_sells(self.ledger.get_transactions(token_address))
        counts = defaultdict(int)
        for row in sells:
            counts[row["transaction_type"]] += 1
        return {
            "total_sells": len(sells),
            "dev_sells": counts[TransactionKind.DEV_SELL.value],
            "wallet_sells": counts[TransactionKind.WALLET_SELL.value],
            "external_sells": counts[TransactionKind.EXTERNAL_SELL.value],
            "total_earned": sum((_amount(row) for row in sells), ZERO),
            "total_tokens_sold": sum(_tokens(row) for row in sells),
            "unique_sell_wallets": len({row["wallet_public_key"] for row in sells}),
            "last_sell_at": sells[-1]["created_at"] if sells else None,
        }

    def profit_and_loss(self, token_address: str, holdings_tokens_raw: Any = 0) -> Dict[str, Any]:
        """
        Full report valuing current holdings through the price feed

        An unavailable feed values holdings at zero rather than failing.
        """
        worth = self.price_feed.holdings_worth(token_address, holdings_tokens_raw)
        stats = self.accurate_spending_stats(token_address, holdings_value_sol=worth["worth_in_sol"])
        stats["holdings_worth_usd"] = worth["worth_in_usd"]
        stats["price_available"] = worth["available"]
        return stats
