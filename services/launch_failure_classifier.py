"""
Launch Failure Classification
Determines whether a reported launch failure is permanent (deployment address
unusable, never auto-retry) or transient (retryable up to the attempt threshold),
and what to do with the reserved pool address
"""

import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import Union

from config import Config
from utils.data_sanitizer import DataSanitizer
from utils.exception_handler import PermanentChainError, TransientChainError

logger = logging.getLogger(__name__)


class FailureClass(Enum):
    PERMANENT = "permanent"
    TRANSIENT = "transient"


class LaunchFailureCode(Enum):
    """Launch failure codes"""
    ACCOUNT_ALREADY_INITIALIZED = "account_already_initialized"
    TOKEN_CREATION_FAILED = "token_creation_failed"
    CURVE_DATA_UNAVAILABLE = "curve_data_unavailable"
    RPC_TIMEOUT = "rpc_timeout"
    RPC_RATE_LIMITED = "rpc_rate_limited"
    BLOCKHASH_EXPIRED = "blockhash_expired"
    INSUFFICIENT_FUNDS = "insufficient_funds"
    NETWORK_ERROR = "network_error"
    UNKNOWN_ERROR = "unknown_error"


class ReservationDecision(Enum):
    """What happens to the reserved deployment address after a failure"""
    RELEASE_PERMANENT = "release_permanent"
    RELEASE_EXHAUSTED = "release_exhausted"
    KEEP = "keep"

    @property
    def releases(self) -> bool:
        return self is not ReservationDecision.KEEP


@dataclass
class FailureClassification:
    failure_class: FailureClass
    code: LaunchFailureCode
    decision: ReservationDecision
    launch_attempt: int

    @property
    def fatal(self) -> bool:
        """True when no further automatic retry should be offered"""
        return self.decision.releases


class LaunchFailureClassifier:
    """Classifies launch failures for reservation release and retry decisions"""

    # Address is provably unusable on-chain or the program rejected creation
    PERMANENT_ERROR_PATTERNS = {
        r"already.*initiali[sz]ed|already.*in.*use": LaunchFailureCode.ACCOUNT_ALREADY_INITIALIZED,
        r"custom[\s\"':{]*0\b": LaunchFailureCode.ACCOUNT_ALREADY_INITIALIZED,
        r"token.*creation.*failed": LaunchFailureCode.TOKEN_CREATION_FAILED,
        r"unable.*to.*fetch.*curve.*data": LaunchFailureCode.CURVE_DATA_UNAVAILABLE,
    }

    TRANSIENT_ERROR_PATTERNS = {
        r"timeout|timed.*out": LaunchFailureCode.RPC_TIMEOUT,
        r"rate.*limit|too.*many.*requests|429": LaunchFailureCode.RPC_RATE_LIMITED,
        r"blockhash.*not.*found|block.*height.*exceeded|expired": LaunchFailureCode.BLOCKHASH_EXPIRED,
        r"insufficient.*(funds|lamports|balance)": LaunchFailureCode.INSUFFICIENT_FUNDS,
        r"network.*error|connection.*(error|reset|refused)|service.*unavailable|502|503|504": LaunchFailureCode.NETWORK_ERROR,
    }

    @classmethod
    def detect_code(cls, error_message: str) -> LaunchFailureCode:
        message = error_message.lower()
        for pattern, code in cls.PERMANENT_ERROR_PATTERNS.items():
            if re.search(pattern, message):
                return code
        for pattern, code in cls.TRANSIENT_ERROR_PATTERNS.items():
            if re.search(pattern, message):
                return code
        return LaunchFailureCode.UNKNOWN_ERROR

    @classmethod
    def is_permanent(cls, error: Union[str, Exception]) -> bool:
        if isinstance(error, PermanentChainError):
            return True
        if isinstance(error, TransientChainError):
            return False
        return cls.detect_code(str(error)) in cls.PERMANENT_ERROR_PATTERNS.values()

    @classmethod
    def classify(cls, error: Union[str, Exception], launch_attempt: int) -> FailureClassification:
        """
        Classify a launch failure

        Permanent → release immediately. Transient and ``launch_attempt`` past
        ``Config.MAX_LAUNCH_ATTEMPTS`` → release as exhausted. Otherwise keep
        the reservation for the next retry.
        """
        code = cls.detect_code(str(error))
        if cls.is_permanent(error):
            failure_class = FailureClass.PERMANENT
            decision = ReservationDecision.RELEASE_PERMANENT
        else:
            failure_class = FailureClass.TRANSIENT
            if launch_attempt > Config.MAX_LAUNCH_ATTEMPTS:
                decision = ReservationDecision.RELEASE_EXHAUSTED
            else:
                decision = ReservationDecision.KEEP

        logger.info(
            f"🔍 Launch failure classified: {failure_class.value}/{code.value} "
            f"attempt={launch_attempt} decision={decision.value} "
            f"({DataSanitizer.sanitize_error_message(error)[:100]})"
        )
        return FailureClassification(failure_class, code, decision, launch_attempt)
