"""
Secret redaction for logs and caller-facing error messages
"""

from utils.data_sanitizer import REDACTED, DataSanitizer, mask_secret, sanitize_for_log


class TestDataSanitizer:

    def test_stripe_keys_are_redacted(self):
        text = DataSanitizer.sanitize_text("auth failed for sk_test_51Habcdefghijkl and whsec_testsigningsecret")
        assert "sk_test_51Habcdefghijkl" not in text
        assert "whsec_testsigningsecret" not in text

    def test_password_assignments_are_redacted(self):
        text = DataSanitizer.sanitize_text("MerchantLogin=demo_shop&password1=pass-one-123")
        assert "pass-one-123" not in text
        assert "demo_shop" in text

    def test_known_secrets_are_replaced_literally(self):
        text = DataSanitizer.sanitize_text("bad credentials: plain-value-42", known_secrets=["plain-value-42"])
        assert text == f"bad credentials: {REDACTED}"

    def test_vault_ciphertext_is_redacted(self):
        ciphertext = f"{'a' * 32}:{'b' * 32}:{'c' * 20}"
        assert ciphertext not in DataSanitizer.sanitize_text(f"stored {ciphertext}")

    def test_nested_dicts(self):
        sanitized = DataSanitizer.sanitize_dict({
            "merchant_login": "demo_shop",
            "provider_settings": {"password1": "pass-one-123", "items": [{"api_key": "k-123456"}]},
        })
        assert sanitized["merchant_login"] == "demo_shop"
        assert sanitized["provider_settings"]["password1"] == REDACTED
        assert sanitized["provider_settings"]["items"][0]["api_key"] == REDACTED

    def test_set_flags_are_left_alone(self):
        assert DataSanitizer.sanitize_dict({"_secret_key_set": True}) == {"_secret_key_set": True}

    def test_error_message_drops_tracebacks_and_truncates(self):
        message = DataSanitizer.sanitize_error_message("Traceback (most recent call last):\nboom\n" + "x" * 600)
        assert "Traceback" not in message
        assert message.endswith("[TRUNCATED]")

    def test_empty_error_message(self):
        assert DataSanitizer.sanitize_error_message(None) == "Unknown error"

    def test_mask_secret(self):
        assert mask_secret("sk_test_abcdef123456") == "sk_t••••3456"
        assert mask_secret("") == ""

    def test_sanitize_for_log_handles_any_shape(self):
        assert "pass-one-123" not in sanitize_for_log({"password2": "pass-one-123"})
        assert "pass-one-123" not in sanitize_for_log([{"password2": "pass-one-123"}])
