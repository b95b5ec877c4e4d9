"""
Launch Failure Classification Tests
"""

import pytest

from services.launch_failure_classifier import (
    LaunchFailureClassifier, FailureClass, LaunchFailureCode, ReservationDecision
)
from utils.exception_handler import PermanentChainError, TransientChainError


class TestLaunchFailureClassifier:
    """Permanent versus transient failures and the attempt threshold"""

    @pytest.mark.parametrize("message,code", [
        ("Allocate: account Address already in use", LaunchFailureCode.ACCOUNT_ALREADY_INITIALIZED),
        ('{"InstructionError":[0,{"Custom":0}]}', LaunchFailureCode.ACCOUNT_ALREADY_INITIALIZED),
        ("custom program error: custom:0", LaunchFailureCode.ACCOUNT_ALREADY_INITIALIZED),
        ("Token creation failed after submission", LaunchFailureCode.TOKEN_CREATION_FAILED),
        ("Unable to fetch curve data for mint", LaunchFailureCode.CURVE_DATA_UNAVAILABLE),
    ])
    def test_permanent_patterns(self, message, code):
        assert LaunchFailureClassifier.detect_code(message) is code
        assert LaunchFailureClassifier.is_permanent(message) is True

    @pytest.mark.parametrize("message", [
        "Request timed out",
        "429 Too Many Requests",
        "Blockhash not found",
        "insufficient lamports",
        "Custom: 6001 slippage exceeded",
    ])
    def test_transient_messages(self, message):
        assert LaunchFailureClassifier.is_permanent(message) is False

    def test_permanent_releases_on_first_attempt(self):
        result = LaunchFailureClassifier.classify("already initialized", 1)
        assert result.failure_class is FailureClass.PERMANENT
        assert result.decision is ReservationDecision.RELEASE_PERMANENT
        assert result.fatal is True

    @pytest.mark.parametrize("attempt,decision", [
        (1, ReservationDecision.KEEP),
        (3, ReservationDecision.KEEP),
        (4, ReservationDecision.RELEASE_EXHAUSTED),
    ])
    def test_transient_threshold(self, attempt, decision):
        result = LaunchFailureClassifier.classify("connection reset by peer", attempt)
        assert result.failure_class is FailureClass.TRANSIENT
        assert result.decision is decision

    def test_typed_errors_override_message(self):
        assert LaunchFailureClassifier.is_permanent(PermanentChainError("something odd")) is True
        assert LaunchFailureClassifier.is_permanent(TransientChainError("already initialized")) is False
