"""
External Interface Tests
Execution queue identity, Solana RPC parsing and the degrading price feed,
with HTTP mocked through unittest.mock
"""

from decimal import Decimal
from unittest.mock import MagicMock

import pytest
import requests

from jobs.execution_queue import InMemoryExecutionQueue, QueueName, build_job_id
from services.price_feed import PriceFeedClient
from services.solana_rpc import SolanaRPCClient
from utils.exception_handler import DuplicateJobError, TransientChainError

WALLET = "Wallet11111111111111111111111111111111111111"
MINT = "Mint1111111111111111111111111111111111111111"


def http_returning(body=None, error=None):
    http = MagicMock(spec=requests.Session)
    http.headers = {}
    response = MagicMock()
    response.json.return_value = body
    response.raise_for_status.return_value = None
    if error is not None:
        http.post.side_effect = error
        http.get.side_effect = error
    else:
        http.post.return_value = response
        http.get.return_value = response
    return http


def confirmed_transaction(pre_lamports, post_lamports, pre_tokens, post_tokens, err=None):
    def token_balances(amount):
        if amount is None:
            return []
        return [{"mint": MINT, "owner": WALLET, "uiTokenAmount": {"amount": str(amount)}}]

    return {
        "transaction": {"message": {"accountKeys": [{"pubkey": "Other111"}, {"pubkey": WALLET}]}},
        "meta": {
            "err": err,
            "preBalances": [10, pre_lamports],
            "postBalances": [10, post_lamports],
            "preTokenBalances": token_balances(pre_tokens),
            "postTokenBalances": token_balances(post_tokens),
        },
    }


class TestExecutionQueue:
    """Attempt-scoped job identity"""

    def test_job_id_format(self):
        assert build_job_id(QueueName.TOKEN_LAUNCH, MINT, 2) == f"launch-{MINT}-2"
        assert build_job_id(QueueName.DEV_SELL, MINT, 1) == f"dev-sell-{MINT}-1"
        assert build_job_id(QueueName.WALLET_SELL, MINT, 3) == f"wallet-sell-{MINT}-3"

    def test_duplicate_job_rejected(self):
        queue = InMemoryExecutionQueue()
        queue.enqueue(QueueName.TOKEN_LAUNCH, "launch-x-1", {"a": 1})
        with pytest.raises(DuplicateJobError):
            queue.enqueue(QueueName.TOKEN_LAUNCH, "launch-x-1", {"a": 2})

    def test_remove_and_pop_order(self):
        queue = InMemoryExecutionQueue()
        queue.enqueue(QueueName.DEV_SELL, "dev-sell-x-1", {})
        queue.enqueue(QueueName.DEV_SELL, "dev-sell-y-1", {})
        assert queue.remove("dev-sell-x-1") is True
        assert queue.remove("dev-sell-x-1") is False
        assert queue.pop_next(QueueName.DEV_SELL).job_id == "dev-sell-y-1"
        assert queue.pop_next(QueueName.DEV_SELL) is None

    def test_payload_hidden_from_repr(self):
        queue = InMemoryExecutionQueue()
        queue.enqueue(QueueName.TOKEN_LAUNCH, "launch-x-1", {"dev_secret": "very-secret"})
        assert "very-secret" not in repr(queue.get("launch-x-1"))


class TestSolanaRPC:
    """JSON-RPC calls and receipt parsing"""

    def test_get_balance(self):
        client = SolanaRPCClient(rpc_url="http://rpc", http=http_returning({"result": {"value": 1_500_000_000}}))
        assert client.get_balance(WALLET) == 1_500_000_000
        assert client.get_balance_sol(WALLET) == Decimal("1.5")

    def test_get_token_balance_sums_accounts(self):
        accounts = [
            {"account": {"data": {"parsed": {"info": {"tokenAmount": {"amount": amount}}}}}}
            for amount in ("1500000", "500000")
        ]
        client = SolanaRPCClient(rpc_url="http://rpc", http=http_returning({"result": {"value": accounts}}))
        assert client.get_token_balance(WALLET, MINT) == 2_000_000

    def test_timeout_is_transient(self):
        client = SolanaRPCClient(rpc_url="http://rpc", http=http_returning(error=requests.Timeout()))
        with pytest.raises(TransientChainError) as exc_info:
            client.get_balance(WALLET)
        assert exc_info.value.retryable is True

    def test_rpc_error_object_is_transient(self):
        client = SolanaRPCClient(rpc_url="http://rpc", http=http_returning({"error": {"message": "node is behind"}}))
        with pytest.raises(TransientChainError):
            client.get_balance(WALLET)

    def test_parse_buy(self):
        tx = confirmed_transaction(2_000_000_000, 1_500_000_000, None, 3_000_000)
        client = SolanaRPCClient(rpc_url="http://rpc", http=http_returning({"result": tx}))
        parsed = client.parse_transaction_amounts("sig", WALLET, MINT, is_sell=False)
        assert parsed.success is True
        assert parsed.sol_amount == Decimal("0.5")
        assert parsed.token_amount == "3000000"

    def test_parse_sell(self):
        tx = confirmed_transaction(1_000_000_000, 1_700_000_000, 3_000_000, 1_000_000)
        client = SolanaRPCClient(rpc_url="http://rpc", http=http_returning({"result": tx}))
        parsed = client.parse_transaction_amounts("sig", WALLET, MINT, is_sell=True)
        assert parsed.sol_amount == Decimal("0.7")
        assert parsed.token_amount == "2000000"

    def test_parse_failed_transaction(self):
        tx = confirmed_transaction(1, 1, None, None, err={"InstructionError": [0, {"Custom": 1}]})
        client = SolanaRPCClient(rpc_url="http://rpc", http=http_returning({"result": tx}))
        assert client.parse_transaction_amounts("sig", WALLET, MINT, is_sell=False).success is False

    def test_parse_never_raises(self):
        client = SolanaRPCClient(rpc_url="http://rpc", http=http_returning(error=requests.ConnectionError()))
        parsed = client.parse_transaction_amounts("sig", WALLET, MINT, is_sell=False)
        assert parsed.success is False
        assert parsed.error

    def test_wallet_not_in_transaction(self):
        tx = confirmed_transaction(1, 1, None, None)
        client = SolanaRPCClient(rpc_url="http://rpc", http=http_returning({"result": tx}))
        parsed = client.parse_transaction_amounts("sig", "SomeoneElse", MINT, is_sell=False)
        assert parsed.success is False


class TestPriceFeed:
    """Display-only valuation that degrades to zero"""

    def test_holdings_worth(self):
        body = {"pairs": [{"priceNative": "0.00002", "priceUsd": "0.003", "marketCap": 30000}]}
        feed = PriceFeedClient(base_url="http://feed", http=http_returning(body))
        worth = feed.holdings_worth(MINT, 5_000_000_000)
        assert worth["available"] is True
        assert worth["worth_in_sol"] == Decimal("0.1")
        assert worth["worth_in_usd"] == Decimal("15")

    def test_feed_down_degrades_to_zero(self):
        feed = PriceFeedClient(base_url="http://feed", http=http_returning(error=requests.ConnectionError()))
        worth = feed.holdings_worth(MINT, 5_000_000_000)
        assert worth["available"] is False
        assert worth["worth_in_sol"] == Decimal("0")

    def test_no_pairs(self):
        feed = PriceFeedClient(base_url="http://feed", http=http_returning({"pairs": []}))
        assert feed.get_token_price(MINT) is None
