"""
Credential Vault
Encrypts, decrypts and masks per-provider secret fields of a PaymentConfig.

Ciphertext format: "<iv hex>:<auth tag hex>:<ciphertext hex>" (AES-256-GCM, 16 byte IV,
16 byte tag). The master key is SHA-256 of PAYMENT_ENCRYPTION_KEY and never leaves this
module.
"""

import hashlib
import logging
import os
import re
from typing import Any, Dict, List, Optional, Tuple

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from config import Config
from services.payment_errors import DecryptionError, VaultKeyError
from utils.data_sanitizer import mask_secret

logger = logging.getLogger(__name__)

IV_LENGTH = 16
TAG_LENGTH = 16
MASK_MARKER = "••••"

_ENCRYPTED_RE = re.compile(r"^[0-9a-f]{32}:[0-9a-f]{32}:[0-9a-f]*$")

# Secret fields per provider; everything else in a provider blob is stored as-is
SENSITIVE_FIELDS: Dict[str, List[str]] = {
    "yookassa": ["secret_key"],
    "tinkoff": ["secret_key"],
    "robokassa": ["password1", "password2", "password3", "password4"],
    "stripe": ["secret_key", "webhook_secret"],
    "crypto_trc20": ["trongrid_api_key"],
}


def set_flag_name(field: str) -> str:
    return f"_{field}_set"


class CredentialVault:
    """AES-256-GCM field encryption for provider credentials"""

    def __init__(self, master_secret: Optional[str] = None):
        self._master_secret = master_secret
        self._aesgcm: Optional[AESGCM] = None

    def _cipher(self) -> AESGCM:
        if self._aesgcm is None:
            secret = self._master_secret or Config.PAYMENT_ENCRYPTION_KEY
            if not secret:
                raise VaultKeyError("PAYMENT_ENCRYPTION_KEY is not configured")
            key = hashlib.sha256(secret.encode("utf-8")).digest()
            self._aesgcm = AESGCM(key)
        return self._aesgcm

    # ------------------------------------------------------------------
    # Field level
    # ------------------------------------------------------------------

    def encrypt_field(self, plaintext: str) -> str:
        iv = os.urandom(IV_LENGTH)
        sealed = self._cipher().encrypt(iv, plaintext.encode("utf-8"), None)
        ciphertext, tag = sealed[:-TAG_LENGTH], sealed[-TAG_LENGTH:]
        return f"{iv.hex()}:{tag.hex()}:{ciphertext.hex()}"

    def decrypt_field(self, value: str) -> str:
        """
        Decrypt a vault value.

        Raises:
            DecryptionError: malformed input or authentication failure. The error
                message never includes the value itself.
        """
        if not self.is_encrypted(value):
            raise DecryptionError("Value is not in vault ciphertext format")

        iv_hex, tag_hex, ct_hex = value.split(":")
        try:
            plaintext = self._cipher().decrypt(
                bytes.fromhex(iv_hex), bytes.fromhex(ct_hex) + bytes.fromhex(tag_hex), None
            )
        except InvalidTag as e:
            logger.error("❌ VAULT_DECRYPT_FAILED: authentication tag mismatch")
            raise DecryptionError("Authentication failed while decrypting credential") from e
        except ValueError as e:
            raise DecryptionError("Malformed vault ciphertext") from e

        try:
            return plaintext.decode("utf-8")
        except UnicodeDecodeError as e:
            raise DecryptionError("Decrypted credential is not valid UTF-8") from e

    @staticmethod
    def is_encrypted(value: Any) -> bool:
        return isinstance(value, str) and bool(_ENCRYPTED_RE.match(value))

    @staticmethod
    def is_masked_value(value: Any) -> bool:
        return isinstance(value, str) and MASK_MARKER in value

    def mask_for_display(self, value: Optional[str]) -> Tuple[str, bool]:
        """
        Returns (masked display string, is_set).

        Encrypted values are decrypted first so the mask shows the real secret's edges.
        """
        if not value:
            return "", False
        plaintext = self.decrypt_field(value) if self.is_encrypted(value) else value
        return mask_secret(plaintext), True

    # ------------------------------------------------------------------
    # Provider blob level
    # ------------------------------------------------------------------

    @staticmethod
    def secret_fields(provider: str) -> List[str]:
        return SENSITIVE_FIELDS.get(provider, [])

    def encrypt_provider_config(self, provider: str, config: Dict[str, Any]) -> Dict[str, Any]:
        result = dict(config)
        for field in self.secret_fields(provider):
            value = result.get(field)
            if value and isinstance(value, str) and not self.is_encrypted(value):
                result[field] = self.encrypt_field(value)
        return result

    def decrypt_provider_config(self, provider: str, config: Dict[str, Any]) -> Dict[str, Any]:
        result = dict(config)
        for field in self.secret_fields(provider):
            value = result.get(field)
            if value and self.is_encrypted(value):
                result[field] = self.decrypt_field(value)
        return result

    def mask_provider_config(self, provider: str, config: Dict[str, Any]) -> Dict[str, Any]:
        result = dict(config)
        for field in self.secret_fields(provider):
            masked, is_set = self.mask_for_display(result.get(field))
            result[field] = masked
            result[set_flag_name(field)] = is_set
        return result

    def merge_on_update(self, provider: str, existing: Optional[Dict[str, Any]],
                        incoming: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        """
        Merge an incoming provider blob into the stored one.

        For every secret field, an empty, missing or masked incoming value keeps the stored
        (still encrypted) value. Display-only `_<field>_set` flags are dropped.
        """
        existing = existing or {}
        merged = {k: v for k, v in (incoming or {}).items() if not (k.startswith("_") and k.endswith("_set"))}

        for field in self.secret_fields(provider):
            new_value = merged.get(field)
            if new_value in (None, "") or self.is_masked_value(new_value):
                if existing.get(field):
                    merged[field] = existing[field]
                else:
                    merged.pop(field, None)
        return merged

    def encrypt_all(self, provider_settings: Dict[str, Dict[str, Any]]) -> Dict[str, Dict[str, Any]]:
        return {p: self.encrypt_provider_config(p, c or {}) for p, c in provider_settings.items()}

    def decrypt_all(self, provider_settings: Dict[str, Dict[str, Any]]) -> Dict[str, Dict[str, Any]]:
        return {p: self.decrypt_provider_config(p, c or {}) for p, c in provider_settings.items()}

    def mask_all(self, provider_settings: Dict[str, Dict[str, Any]]) -> Dict[str, Dict[str, Any]]:
        return {p: self.mask_provider_config(p, c or {}) for p, c in provider_settings.items()}

    def plaintext_secrets(self, provider: str, decrypted_config: Dict[str, Any]) -> List[str]:
        """Decrypted secret values, for redaction of provider error text"""
        return [str(decrypted_config[f]) for f in self.secret_fields(provider) if decrypted_config.get(f)]


credential_vault = CredentialVault()
