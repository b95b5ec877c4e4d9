"""
Address Pool Allocation Tests
Exclusive allocation under contention, idempotent release, administrative
mark-used and the failure-driven release policy
"""

import threading

import pytest
from sqlalchemy import select

from models import PoolAddress, Token
from services.address_pool_service import AddressPoolService
from services.key_custody_service import public_key_of
from services.launch_failure_classifier import ReservationDecision
from utils.exception_handler import PoolExhausted, PermanentChainError


@pytest.fixture
def provisioned(pool, make_secret):
    """Pool with three addresses, returned in provisioning order"""
    secrets = [make_secret() for _ in range(3)]
    assert pool.add_addresses(secrets) == 3
    return [public_key_of(secret) for secret in secrets]


class TestAllocation:
    """Oldest-free-first allocation"""

    def test_allocates_oldest_free_address(self, pool, provisioned):
        allocated = pool.allocate("userA")
        assert allocated.public_key == provisioned[0]
        assert allocated.from_pool is True
        assert public_key_of(allocated.secret_key) == allocated.public_key

    def test_allocation_marks_row_used(self, pool, provisioned, session_factory):
        allocated = pool.allocate("userA")
        with session_factory() as db:
            row = db.execute(select(PoolAddress).where(PoolAddress.public_key == allocated.public_key)).scalar_one()
            assert row.is_used is True
            assert row.used_by == "userA"
            assert row.used_at is not None

    def test_distinct_addresses_until_exhausted(self, pool, provisioned):
        allocated = {pool.allocate(f"user{i}").public_key for i in range(3)}
        assert allocated == set(provisioned)
        with pytest.raises(PoolExhausted):
            pool.allocate("user4")

    def test_secret_stored_encrypted(self, pool, make_secret, session_factory, custody):
        secret = make_secret()
        pool.add_addresses([secret])
        with session_factory() as db:
            stored = db.execute(select(PoolAddress.secret_key_material)).scalar_one()
        assert stored != secret
        assert custody.decrypt(stored) == secret

    def test_duplicate_provisioning_skipped(self, pool, make_secret):
        secret = make_secret()
        assert pool.add_addresses([secret, secret]) == 1
        assert pool.stats()["total"] == 1

    def test_allocate_or_generate_falls_back(self, pool):
        """An empty pool yields an ad-hoc keypair that is never persisted"""
        allocated = pool.allocate_or_generate("userA")
        assert allocated.from_pool is False
        assert public_key_of(allocated.secret_key) == allocated.public_key
        assert pool.stats()["total"] == 0

    def test_repr_hides_secret(self, pool, provisioned):
        allocated = pool.allocate("userA")
        assert allocated.secret_key not in repr(allocated)


class TestConcurrentAllocation:
    """At-most-one winner against a single free address"""

    def test_two_requesters_one_address(self, file_session_factory, custody, make_secret):
        pool = AddressPoolService(session_factory=file_session_factory, custody=custody)
        pool.add_addresses([make_secret()])

        results = {}
        barrier = threading.Barrier(2)

        def allocate(requester):
            barrier.wait()
            try:
                results[requester] = pool.allocate(requester).public_key
            except PoolExhausted:
                results[requester] = None

        threads = [threading.Thread(target=allocate, args=(name,)) for name in ("userA", "userB")]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=60)

        winners = [name for name, address in results.items() if address]
        assert len(results) == 2
        assert len(winners) == 1, f"Expected exactly one winner, got {results}"

        with file_session_factory() as db:
            row = db.execute(select(PoolAddress)).scalar_one()
            assert row.is_used is True
            assert row.used_by == winners[0]

    def test_many_requesters_small_pool(self, file_session_factory, custody, make_secret):
        pool = AddressPoolService(session_factory=file_session_factory, custody=custody)
        pool.add_addresses([make_secret() for _ in range(2)])

        results = []
        lock = threading.Lock()

        def allocate(requester):
            try:
                address = pool.allocate(requester).public_key
            except PoolExhausted:
                address = None
            with lock:
                results.append(address)

        threads = [threading.Thread(target=allocate, args=(f"user{i}",)) for i in range(6)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=60)

        allocated = [address for address in results if address]
        assert len(results) == 6
        assert len(allocated) == 2
        assert len(set(allocated)) == 2, "Two requesters received the same address"
        print(f"✅ {len(allocated)} winners, {len(results) - len(allocated)} exhausted")


class TestReleaseAndMarkUsed:
    """Release idempotency and administrative burn"""

    def test_release_is_idempotent(self, pool, provisioned):
        allocated = pool.allocate("userA")
        assert pool.release(allocated.public_key) is True
        assert pool.release(allocated.public_key) is False
        assert pool.is_used(allocated.public_key) is False

    def test_released_address_is_reallocated(self, pool, provisioned):
        first = pool.allocate("userA")
        pool.release(first.public_key)
        assert pool.allocate("userB").public_key == first.public_key

    def test_address_named_by_token_not_reallocated(self, pool, provisioned, session_factory):
        first = pool.allocate("userA")
        with session_factory() as db:
            db.add(Token(
                owner_id="userA", name="Moon", symbol="MOON",
                mint_address=first.public_key, encrypted_mint_key="sealed",
            ))
            db.commit()

        assert pool.release(first.public_key) is True
        assert pool.is_used(first.public_key) is False
        assert pool.allocate("userB").public_key == provisioned[1]

    def test_release_unknown_address_is_noop(self, pool):
        assert pool.release("UnknownAddress1111111111111111111111111111") is False

    def test_mark_used_is_permanent(self, pool, provisioned):
        assert pool.mark_used(provisioned[0]) is True
        assert pool.is_used(provisioned[0]) is True
        assert pool.release(provisioned[0]) is False
        assert pool.allocate("userA").public_key == provisioned[1]

    def test_mark_used_keeps_existing_owner(self, pool, provisioned):
        allocated = pool.allocate("userA")
        pool.mark_used(allocated.public_key)
        addresses = pool.get_user_addresses("userA")
        assert [entry["public_key"] for entry in addresses] == [allocated.public_key]
        assert addresses[0]["permanently_allocated"] is True

    def test_mark_used_defaults_to_admin(self, pool, provisioned):
        pool.mark_used(provisioned[2])
        assert [entry["public_key"] for entry in pool.get_user_addresses("admin")] == [provisioned[2]]

    def test_mark_used_bulk(self, pool, provisioned):
        assert pool.mark_used_bulk(provisioned[:2], "ops") == 2
        assert pool.stats()["used"] == 2

    def test_unknown_address_counts_as_used(self, pool):
        assert pool.is_used("UnknownAddress1111111111111111111111111111") is True


class TestStats:
    """Pool usage summary"""

    def test_empty_pool(self, pool):
        assert pool.stats() == {"total": 0, "used": 0, "available": 0, "usage_percentage": 0.0}

    def test_partial_usage(self, pool, provisioned):
        pool.allocate("userA")
        stats = pool.stats()
        assert stats["total"] == 3
        assert stats["used"] == 1
        assert stats["available"] == 2
        assert stats["usage_percentage"] == 33.33


class TestFailurePolicy:
    """Reservation release after reported launch failures"""

    def test_permanent_failure_releases(self, pool, provisioned):
        allocated = pool.allocate("userA")
        result = pool.handle_launch_failure(allocated.public_key, "Account already initialized", 1)
        assert result.decision is ReservationDecision.RELEASE_PERMANENT
        assert pool.is_used(allocated.public_key) is False

    def test_transient_failure_keeps_reservation(self, pool, provisioned):
        allocated = pool.allocate("userA")
        result = pool.handle_launch_failure(allocated.public_key, "RPC request timed out", 3)
        assert result.decision is ReservationDecision.KEEP
        assert pool.is_used(allocated.public_key) is True

    def test_transient_failure_past_threshold_releases(self, pool, provisioned):
        allocated = pool.allocate("userA")
        result = pool.handle_launch_failure(allocated.public_key, "RPC request timed out", 4)
        assert result.decision is ReservationDecision.RELEASE_EXHAUSTED
        assert result.fatal is True
        assert pool.is_used(allocated.public_key) is False

    def test_typed_permanent_error(self, pool, provisioned):
        allocated = pool.allocate("userA")
        result = pool.handle_launch_failure(allocated.public_key, PermanentChainError("program rejected"), 1)
        assert result.decision is ReservationDecision.RELEASE_PERMANENT
