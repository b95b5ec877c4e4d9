"""Market data feed used only to express holdings for display"""

import logging
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Optional

import requests

from config import Config

logger = logging.getLogger(__name__)

ZERO_WORTH = {
    "worth_in_sol": Decimal("0"),
    "worth_in_usd": Decimal("0"),
    "price_per_token_sol": Decimal("0"),
    "price_per_token_usd": Decimal("0"),
    "market_cap": Decimal("0"),
    "available": False,
}


class PriceFeedClient:
    """Token price lookups; any failure degrades to zero instead of blocking"""

    def __init__(self, base_url: Optional[str] = None, timeout: Optional[int] = None,
                 http: Optional[requests.Session] = None):
        self.base_url = (base_url or Config.PRICE_FEED_URL).rstrip("/")
        self.timeout = timeout or Config.PRICE_FEED_TIMEOUT_SECONDS
        self.http = http or requests.Session()

    def get_token_price(self, mint: str) -> Optional[Dict[str, Decimal]]:
        try:
            response = self.http.get(f"{self.base_url}/{mint}", timeout=self.timeout)
            response.raise_for_status()
            pairs = response.json().get("pairs") or []
        except (requests.RequestException, ValueError) as e:
            logger.warning(f"⚠️ Price feed unavailable for {mint[:8]}: {type(e).__name__}")
            return None

        if not pairs:
            return None
        pair = pairs[0]
        try:
            return {
                "price_native": Decimal(str(pair.get("priceNative") or 0)),
                "price_usd": Decimal(str(pair.get("priceUsd") or 0)),
                "market_cap": Decimal(str(pair.get("marketCap") or pair.get("fdv") or 0)),
            }
        except InvalidOperation:
            logger.warning(f"⚠️ Price feed returned malformed prices for {mint[:8]}")
            return None

    def holdings_worth(self, mint: str, total_tokens_raw: Any) -> Dict[str, Any]:
        """Value of ``total_tokens_raw`` raw units (``Config.TOKEN_DECIMALS`` decimals)"""
        price = self.get_token_price(mint)
        if not price:
            return dict(ZERO_WORTH)

        token_amount = Decimal(str(total_tokens_raw or 0)) / (Decimal(10) ** Config.TOKEN_DECIMALS)
        return {
            "worth_in_sol": token_amount * price["price_native"],
            "worth_in_usd": token_amount * price["price_usd"],
            "price_per_token_sol": price["price_native"],
            "price_per_token_usd": price["price_usd"],
            "market_cap": price["market_cap"],
            "available": True,
        }
