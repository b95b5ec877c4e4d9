"""
Secret Hygiene Tests
Sanitizer masking and the structured_result decorator
"""

from sqlalchemy.exc import OperationalError

from utils.data_sanitizer import DataSanitizer, sanitize_for_log
from utils.exception_handler import PoolExhausted, TransientChainError, structured_result


class TestDataSanitizer:
    """Masking of key material in text and payloads"""

    def test_base58_secret_masked(self, make_secret):
        secret = make_secret()
        assert secret not in DataSanitizer.sanitize_text(f"loaded key {secret} for signing")

    def test_colon_ciphertext_masked(self, custody):
        ciphertext = custody.encrypt("payload")
        assert ciphertext not in DataSanitizer.sanitize_text(f"stored {ciphertext}")

    def test_salted_ciphertext_masked(self, custody):
        ciphertext = custody.encrypt_legacy_salted("payload")
        assert ciphertext not in DataSanitizer.sanitize_text(ciphertext)

    def test_sensitive_dict_fields_masked(self, make_secret):
        secret = make_secret()
        dumped = sanitize_for_log({"funding_secret": secret, "token_address": "Mint111"})
        assert secret not in dumped
        assert "Mint111" in dumped

    def test_error_message_truncated(self):
        assert len(DataSanitizer.sanitize_error_message("x" * 1000)) < 250

    def test_short_key(self):
        assert DataSanitizer.short_key("ABCDEFGHIJKLMNOP") == "ABCDEFGH..."
        assert DataSanitizer.short_key(None) == "[NO_KEY]"


class TestStructuredResult:
    """Business failures become results, never exceptions"""

    def test_engine_error_mapped(self):
        @structured_result("pool allocation")
        def allocate():
            raise PoolExhausted("No unused deployment address available")

        result = allocate()
        assert result["success"] is False
        assert result["message"] == "An error occurred during pool allocation: No unused deployment address available"
        assert result["error_type"] == "PoolExhausted"
        assert result["retryable"] is False

    def test_transient_error_retryable(self):
        @structured_result("balance check")
        def check():
            raise TransientChainError("RPC getBalance timeout")

        assert check()["retryable"] is True

    def test_database_error_mapped(self):
        @structured_result("stage update")
        def update():
            raise OperationalError("UPDATE tokens", {}, Exception("database is locked"))

        result = update()
        assert result["success"] is False
        assert result["retryable"] is True

    def test_secret_in_error_masked(self, make_secret):
        secret = make_secret()

        @structured_result("launch enqueue")
        def enqueue():
            raise PoolExhausted(f"bad key {secret}")

        assert secret not in enqueue()["message"]

    def test_success_passes_through(self):
        @structured_result("noop")
        def noop():
            return {"success": True, "message": "ok"}

        assert noop() == {"success": True, "message": "ok"}
