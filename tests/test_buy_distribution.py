"""
Buy Distribution Tests
Sum and length guarantees, large-buy placement, seeded determinism and the
amount edge cases
"""

import math

import pytest

from services.buy_distribution import (
    BuyDistributionGenerator, generate_distribution, calculate_required_wallets, calculate_max_buy_amount
)
from utils.exception_handler import InvalidAmount

TOLERANCE = 0.001


def assert_valid_schedule(amounts, total, max_wallets, generator):
    assert abs(sum(amounts) - total) <= TOLERANCE, f"Sum {sum(amounts)} != {total}"
    assert 1 <= len(amounts) <= max_wallets
    assert all(amount > 0 for amount in amounts)
    for position, amount in enumerate(amounts, start=1):
        if amount >= generator.large_buy_threshold:
            assert position >= generator.large_buy_start_position, (
                f"Large buy {amount} at position {position}"
            )


class TestCapacity:
    """Tier geometry derived from the configured table"""

    def test_max_buy_amount_for_default_limit(self):
        assert calculate_max_buy_amount() == pytest.approx(182.85)

    def test_max_buy_amount_respects_limit(self):
        assert calculate_max_buy_amount(15) == pytest.approx(15 * 0.85)

    def test_required_wallets_for_85(self):
        assert calculate_required_wallets(85) == 49

    def test_required_wallets_small_amount(self):
        assert calculate_required_wallets(0.5) == 1

    def test_positions_past_table_use_last_tier(self):
        generator = BuyDistributionGenerator()
        assert generator.tier_for(200).number == generator.tiers[-1].number

    def test_early_positions_capped_below_threshold(self):
        generator = BuyDistributionGenerator(tiers=[(1, 10, 1.0, 3.0)])
        assert generator.position_cap(39) < generator.large_buy_threshold
        assert generator.position_cap(40) == 3.0


class TestGeneration:
    """Schedules for valid amounts"""

    def test_reference_scenario(self):
        """85 SOL over at most 73 wallets with seed 12345"""
        generator = BuyDistributionGenerator()
        amounts = generator.generate_distribution(85, 73, seed=12345)
        assert_valid_schedule(amounts, 85, 73, generator)
        assert not any(amount >= 2.0 for amount in amounts[:39])
        print(f"✅ 85 SOL split across {len(amounts)} wallets")

    @pytest.mark.parametrize("total,max_wallets", [
        (0.2, 73), (1, 73), (5, 73), (12, 20), (40, 73), (85, 73), (150, 73), (10, 15),
    ])
    def test_sum_and_length(self, total, max_wallets):
        generator = BuyDistributionGenerator()
        for seed in range(5):
            amounts = generator.generate_distribution(total, max_wallets, seed=seed)
            assert_valid_schedule(amounts, total, max_wallets, generator)

    def test_unseeded_schedules_satisfy_invariants(self):
        generator = BuyDistributionGenerator()
        for _ in range(10):
            assert_valid_schedule(generator.generate_distribution(60), 60, 73, generator)

    def test_amounts_are_whole_lamports(self):
        amounts = generate_distribution(7.5, seed=7)
        for amount in amounts:
            assert math.isclose(round(amount * 1_000_000_000), amount * 1_000_000_000, abs_tol=1e-3)

    def test_large_buys_only_from_configured_position(self):
        generator = BuyDistributionGenerator()
        amounts = generator.generate_distribution(120, seed=3)
        summary = generator.distribution_summary(amounts)
        assert summary["large_buys"] > 0
        assert summary["first_large_position"] >= 40
        assert summary["large_buys_placed_correctly"] is True


class TestDeterminism:
    """Seeded reproducibility and unseeded variance"""

    def test_same_seed_same_output(self):
        assert generate_distribution(85, 73, seed=12345) == generate_distribution(85, 73, seed=12345)

    def test_different_seeds_differ(self):
        assert generate_distribution(30, seed=1) != generate_distribution(30, seed=2)

    def test_unseeded_calls_differ(self):
        assert generate_distribution(30) != generate_distribution(30)


class TestEdgeCases:
    """Invalid and boundary amounts"""

    def test_tiny_total_single_entry(self):
        assert generate_distribution(0.1) == [0.1]

    def test_tier_minimum_single_entry(self):
        assert generate_distribution(0.15) == [0.15]

    @pytest.mark.parametrize("total", [0, -1, -0.0001, float("nan"), float("inf")])
    def test_non_positive_or_non_finite_rejected(self, total):
        with pytest.raises(InvalidAmount):
            generate_distribution(total)

    def test_above_capacity_rejected(self):
        with pytest.raises(InvalidAmount):
            generate_distribution(calculate_max_buy_amount() + 0.01)

    def test_above_capacity_for_limit_rejected(self):
        with pytest.raises(InvalidAmount):
            generate_distribution(20, max_wallets=10)

    def test_invalid_wallet_limit_rejected(self):
        with pytest.raises(InvalidAmount):
            generate_distribution(5, max_wallets=0)

    def test_non_numeric_rejected(self):
        with pytest.raises(InvalidAmount):
            generate_distribution("85")


class TestSummary:
    """Per-tier reporting"""

    def test_summary_totals(self):
        generator = BuyDistributionGenerator()
        amounts = generator.generate_distribution(40, seed=11)
        summary = generator.distribution_summary(amounts)
        assert summary["wallet_count"] == len(amounts)
        assert summary["total"] == pytest.approx(40, abs=TOLERANCE)
        assert sum(tier["count"] for tier in summary["tiers"]) == len(amounts)
