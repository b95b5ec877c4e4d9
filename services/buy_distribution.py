"""
Buy Distribution Generator
Partitions a total buy amount across buyer wallets in tiered, randomized amounts

Wallet positions are 1-based. Each position belongs to a tier whose range is a
proportional envelope: raw draws inside the tier ranges are scaled to the
requested total, then clipped to per-position caps with the excess
redistributed to positions that still have headroom. Positions before
``LARGE_BUY_START_POSITION`` are capped just below ``LARGE_BUY_THRESHOLD``.
Amounts are settled in lamports so the schedule sums exactly to the total.
"""

import logging
import math
import random
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Tuple

from config import Config
from utils.exception_handler import InvalidAmount

logger = logging.getLogger(__name__)

LAMPORTS_PER_SOL = Config.LAMPORTS_PER_SOL
# Headroom kept below the large-buy threshold for early positions
THRESHOLD_MARGIN = 0.001


@dataclass(frozen=True)
class BuyTier:
    number: int
    first_position: int
    last_position: int
    min_amount: float
    max_amount: float

    @property
    def midpoint(self) -> float:
        return (self.min_amount + self.max_amount) / 2

    def contains(self, position: int) -> bool:
        return self.first_position <= position <= self.last_position


class BuyDistributionGenerator:
    """Tiered randomized buy schedule generator"""

    def __init__(
        self,
        tiers: Optional[Sequence[Tuple[int, int, float, float]]] = None,
        large_buy_threshold: Optional[float] = None,
        large_buy_start_position: Optional[int] = None,
        max_wallets: Optional[int] = None,
    ):
        table = tiers if tiers is not None else Config.BUY_TIERS
        if not table:
            raise ValueError("At least one buy tier is required")
        self.tiers: List[BuyTier] = [
            BuyTier(index + 1, first, last, low, high)
            for index, (first, last, low, high) in enumerate(table)
        ]
        self.large_buy_threshold = (
            large_buy_threshold if large_buy_threshold is not None else Config.LARGE_BUY_THRESHOLD
        )
        self.large_buy_start_position = (
            large_buy_start_position if large_buy_start_position is not None else Config.LARGE_BUY_START_POSITION
        )
        self.max_wallets = max_wallets if max_wallets is not None else Config.MAX_WALLETS

    # ------------------------------------------------------------------
    # Tier geometry
    # ------------------------------------------------------------------

    def tier_for(self, position: int) -> BuyTier:
        """Tier of a 1-based position; positions past the table use the last tier"""
        for tier in self.tiers:
            if tier.contains(position):
                return tier
        return self.tiers[-1]

    def position_cap(self, position: int) -> float:
        cap = self.tier_for(position).max_amount
        if position < self.large_buy_start_position:
            cap = min(cap, self.large_buy_threshold - THRESHOLD_MARGIN)
        return cap

    def capacity(self, wallet_count: int) -> float:
        return sum(self.position_cap(position) for position in range(1, wallet_count + 1))

    def _resolve_max_wallets(self, max_wallets: Optional[int]) -> int:
        limit = self.max_wallets if max_wallets is None else max_wallets
        if not isinstance(limit, int) or limit < 1:
            raise InvalidAmount(f"max_wallets must be a positive integer, got {limit!r}")
        return limit

    def calculate_max_buy_amount(self, max_wallets: Optional[int] = None) -> float:
        """System ceiling for a single campaign given the wallet limit"""
        return round(self.capacity(self._resolve_max_wallets(max_wallets)), 9)

    def calculate_required_wallets(self, total_amount: float, max_wallets: Optional[int] = None) -> int:
        """Minimum wallet count whose tier capacity can absorb ``total_amount``"""
        limit = self._resolve_max_wallets(max_wallets)
        self._validate_total(total_amount, limit)

        running = 0.0
        for position in range(1, limit + 1):
            running += self.position_cap(position)
            if running + 1e-9 >= total_amount:
                return position
        raise InvalidAmount(f"{total_amount} SOL exceeds capacity of {limit} wallets")

    def _nominal_wallets(self, total_amount: float, limit: int) -> int:
        """Wallet count at which tier midpoints would naturally reach the total"""
        running = 0.0
        for position in range(1, limit + 1):
            running += min(self.tier_for(position).midpoint, self.position_cap(position))
            if running >= total_amount:
                return position
        return limit

    def _validate_total(self, total_amount: float, limit: int) -> None:
        if not isinstance(total_amount, (int, float)) or isinstance(total_amount, bool):
            raise InvalidAmount(f"Buy amount must be numeric, got {type(total_amount).__name__}")
        if not math.isfinite(total_amount) or total_amount <= 0:
            raise InvalidAmount(f"Buy amount must be positive, got {total_amount}")
        maximum = self.calculate_max_buy_amount(limit)
        if total_amount > maximum:
            raise InvalidAmount(
                f"Buy amount {total_amount} SOL exceeds system maximum of {maximum:.3f} SOL for {limit} wallets"
            )

    # ------------------------------------------------------------------
    # Generation
    # ------------------------------------------------------------------

    def generate_distribution(
        self, total_amount: float, max_wallets: Optional[int] = None, seed: Optional[int] = None
    ) -> List[float]:
        """
        Generate a per-wallet buy schedule

        Args:
            total_amount: SOL to distribute
            max_wallets: Upper bound on entries (defaults to Config.MAX_WALLETS)
            seed: Fixed seed for reproducible output; None uses system randomness

        Returns:
            SOL amounts ordered by wallet position, summing to ``total_amount``

        Raises:
            InvalidAmount: non-positive total, total above capacity, or bad wallet limit
        """
        limit = self._resolve_max_wallets(max_wallets)
        self._validate_total(total_amount, limit)

        if total_amount <= self.tiers[0].min_amount:
            return [round(total_amount, 9)]

        rng = random.Random(seed) if seed is not None else random.SystemRandom()

        required = self.calculate_required_wallets(total_amount, limit)
        wallet_count = max(required, min(limit, self._nominal_wallets(total_amount, limit)))
        positions = range(1, wallet_count + 1)
        caps = [self.position_cap(position) for position in positions]

        raw = []
        for position, cap in zip(positions, caps):
            tier = self.tier_for(position)
            low = min(tier.min_amount, cap)
            raw.append(rng.uniform(low, cap))

        scale = total_amount / sum(raw)
        amounts = self._water_fill([value * scale for value in raw], caps, total_amount)
        lamports = self._settle_lamports(amounts, caps, total_amount)
        distribution = [value / LAMPORTS_PER_SOL for value in lamports]

        logger.debug(
            f"🎲 Generated {len(distribution)} buys for {total_amount} SOL "
            f"(required {required}, seeded={seed is not None})"
        )
        return distribution

    @staticmethod
    def _water_fill(amounts: List[float], caps: List[float], total_amount: float) -> List[float]:
        """Clip to caps and push the excess onto positions with headroom"""
        amounts = list(amounts)
        for _ in range(len(amounts) + 1):
            excess = 0.0
            for index, cap in enumerate(caps):
                if amounts[index] > cap:
                    excess += amounts[index] - cap
                    amounts[index] = cap
            if excess <= 1e-12:
                return amounts

            open_positions = [index for index, cap in enumerate(caps) if amounts[index] < cap]
            open_weight = sum(amounts[index] for index in open_positions)
            if not open_positions or open_weight <= 0:
                raise InvalidAmount(f"{total_amount} SOL cannot fit under the per-wallet caps")
            for index in open_positions:
                amounts[index] += excess * amounts[index] / open_weight
        return amounts

    @staticmethod
    def _settle_lamports(amounts: List[float], caps: List[float], total_amount: float) -> List[int]:
        """Round to lamports and put the rounding residual where it stays under the caps"""
        lamports = [int(round(value * LAMPORTS_PER_SOL)) for value in amounts]
        cap_lamports = [int(math.floor(cap * LAMPORTS_PER_SOL)) for cap in caps]
        lamports = [min(value, cap) for value, cap in zip(lamports, cap_lamports)]
        residual = int(round(total_amount * LAMPORTS_PER_SOL)) - sum(lamports)

        while residual:
            if residual > 0:
                index = max(range(len(lamports)), key=lambda i: cap_lamports[i] - lamports[i])
                step = min(residual, cap_lamports[index] - lamports[index])
                if step <= 0:
                    raise InvalidAmount(f"{total_amount} SOL cannot fit under the per-wallet caps")
            else:
                index = max(range(len(lamports)), key=lambda i: lamports[i])
                step = max(residual, 1 - lamports[index])
                if step >= 0:
                    raise InvalidAmount(f"{total_amount} SOL is too small to split across {len(lamports)} wallets")
            lamports[index] += step
            residual -= step
        return lamports

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    def distribution_summary(self, amounts: Sequence[float]) -> Dict[str, Any]:
        """Per-tier breakdown and large-buy placement of a schedule"""
        tiers: Dict[int, Dict[str, Any]] = {}
        large_positions = []
        for position, amount in enumerate(amounts, start=1):
            tier = self.tier_for(position)
            bucket = tiers.setdefault(tier.number, {
                "tier": tier.number,
                "positions": f"{tier.first_position}-{tier.last_position}",
                "count": 0,
                "total": 0.0,
                "min": amount,
                "max": amount,
            })
            bucket["count"] += 1
            bucket["total"] += amount
            bucket["min"] = min(bucket["min"], amount)
            bucket["max"] = max(bucket["max"], amount)
            if amount >= self.large_buy_threshold:
                large_positions.append(position)

        for bucket in tiers.values():
            bucket["total"] = round(bucket["total"], 9)

        return {
            "wallet_count": len(amounts),
            "total": round(sum(amounts), 9),
            "tiers": [tiers[number] for number in sorted(tiers)],
            "large_buys": len(large_positions),
            "first_large_position": large_positions[0] if large_positions else None,
            "large_buys_placed_correctly": all(p >= self.large_buy_start_position for p in large_positions),
        }


# Default generator built from Config
_default_generator = BuyDistributionGenerator()


def generate_distribution(total_amount: float, max_wallets: Optional[int] = None, seed: Optional[int] = None) -> List[float]:
    return _default_generator.generate_distribution(total_amount, max_wallets, seed)


def calculate_required_wallets(total_amount: float, max_wallets: Optional[int] = None) -> int:
    return _default_generator.calculate_required_wallets(total_amount, max_wallets)


def calculate_max_buy_amount(max_wallets: Optional[int] = None) -> float:
    return _default_generator.calculate_max_buy_amount(max_wallets)
