"""
Data Sanitization Module
Masks secret key material and ciphertext in log lines, error messages and payload dumps
"""

import re
import json
import logging
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


class DataSanitizer:
    """Data sanitization for preventing key material exposure"""

    # Sensitive data patterns
    SENSITIVE_PATTERNS = {
        # 64-byte ed25519 secret keys encode to 86-88 base58 characters
        "secret_key": re.compile(r"\b[1-9A-HJ-NP-Za-km-z]{80,90}\b"),
        "colon_ciphertext": re.compile(r"\b[0-9a-fA-F]{32}:[0-9a-fA-F]{32,}\b"),
        "salted_ciphertext": re.compile(r"U2FsdGVk[A-Za-z0-9+/=]{8,}"),
        "byte_array_key": re.compile(r"\[(?:\s*\d{1,3}\s*,){31,}\s*\d{1,3}\s*\]"),
        "private_key": re.compile(
            r'(?i)(private[_-]?key|secret[_-]?key|priv[_-]?key)["\':=\s]+([^\s"\',}]{16,})'
        ),
        "password": re.compile(r'(?i)(password|passphrase|secret)["\':=\s]+([^\s"\',}]{8,})'),
    }

    # Sensitive field names to mask in dictionaries
    SENSITIVE_FIELDS = {
        "secret",
        "private_key",
        "privatekey",
        "secret_key",
        "secret_key_material",
        "encrypted_private_key",
        "encrypted_mint_key",
        "funding_key_encrypted",
        "funding_secret",
        "funder_wallet",
        "dev_wallet",
        "buyer_wallets",
        "buyer_secrets",
        "mint_private_key",
        "token_private_key",
        "password",
        "passphrase",
    }

    @classmethod
    def sanitize_text(cls, text: Any, mask_char: str = "*") -> str:
        """
        Sanitize text by masking secret patterns

        Args:
            text: Text to sanitize
            mask_char: Character to use for masking

        Returns:
            Sanitized text with key material replaced by a redaction marker
        """
        if not isinstance(text, str):
            text = str(text)

        sanitized = text

        for pattern_name, pattern in cls.SENSITIVE_PATTERNS.items():

            def replace_match(match, pattern_name=pattern_name):
                if pattern.groups > 1:
                    return f"{match.group(1)}=[REDACTED-{pattern_name.upper()}:{mask_char * 4}]"
                return f"[REDACTED-{pattern_name.upper()}]"

            sanitized = pattern.sub(replace_match, sanitized)

        return sanitized

    @classmethod
    def sanitize_dict(cls, data: Dict[str, Any], deep: bool = True) -> Dict[str, Any]:
        """
        Sanitize dictionary by masking sensitive fields

        Args:
            data: Dictionary to sanitize
            deep: Whether to recursively sanitize nested structures

        Returns:
            Sanitized dictionary
        """
        if not isinstance(data, dict):
            return data

        sanitized = {}

        for key, value in data.items():
            key_lower = str(key).lower()

            if key_lower in cls.SENSITIVE_FIELDS:
                sanitized[key] = "[REDACTED]"
            elif deep and isinstance(value, dict):
                sanitized[key] = cls.sanitize_dict(value, deep=True)
            elif deep and isinstance(value, list):
                sanitized[key] = cls.sanitize_list(value, deep=True)
            elif isinstance(value, str):
                sanitized[key] = cls.sanitize_text(value)
            else:
                sanitized[key] = value

        return sanitized

    @classmethod
    def sanitize_list(cls, data: List[Any], deep: bool = True) -> List[Any]:
        """Sanitize list items"""
        if not isinstance(data, list):
            return data

        sanitized = []

        for item in data:
            if deep and isinstance(item, dict):
                sanitized.append(cls.sanitize_dict(item, deep=True))
            elif deep and isinstance(item, list):
                sanitized.append(cls.sanitize_list(item, deep=True))
            elif isinstance(item, str):
                sanitized.append(cls.sanitize_text(item))
            else:
                sanitized.append(item)

        return sanitized

    @classmethod
    def sanitize_error_message(cls, error_msg: Any) -> str:
        """
        Sanitize error messages before they reach logs or results

        Keeps the first three lines, drops stack trace lines and truncates long output.
        """
        if not error_msg:
            return "Unknown error"

        sanitized = cls.sanitize_text(str(error_msg))

        safe_lines = [
            line for line in sanitized.split("\n")
            if "Traceback" not in line and "site-packages" not in line
        ]
        result = "\n".join(safe_lines[:3])

        if len(result) > 200:
            result = result[:200] + "... [TRUNCATED]"

        return result if result.strip() else "Error details redacted for security"

    @staticmethod
    def short_key(public_key: Optional[str], show_chars: int = 8) -> str:
        """Shorten a public key for log lines"""
        if not public_key:
            return "[NO_KEY]"
        return f"{public_key[:show_chars]}..."


# Global instance for application use
data_sanitizer = DataSanitizer()


def sanitize_for_log(data: Any) -> str:
    """Sanitize any data for safe logging"""
    if isinstance(data, dict):
        return json.dumps(data_sanitizer.sanitize_dict(data), default=str)
    elif isinstance(data, list):
        return json.dumps(data_sanitizer.sanitize_list(data), default=str)
    else:
        return data_sanitizer.sanitize_text(str(data))
