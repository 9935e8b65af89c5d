"""
Payment error taxonomy

Every failure leaving the payment module is a PaymentError carrying a stable,
machine-readable code the frontend can branch on, the provider involved (if any)
and whether retrying the same call may succeed.
"""

from enum import Enum
from typing import Any, Dict, List, Optional


class PaymentErrorCode(Enum):
    INVALID_CONFIG = "INVALID_CONFIG"
    INVALID_AMOUNT = "INVALID_AMOUNT"
    INVALID_CURRENCY = "INVALID_CURRENCY"
    PAYMENT_DECLINED = "PAYMENT_DECLINED"
    PAYMENT_NOT_FOUND = "PAYMENT_NOT_FOUND"
    REFUND_FAILED = "REFUND_FAILED"
    WEBHOOK_VERIFICATION_FAILED = "WEBHOOK_VERIFICATION_FAILED"
    NETWORK_ERROR = "NETWORK_ERROR"
    PROVIDER_ERROR = "PROVIDER_ERROR"
    RATE_LIMIT = "RATE_LIMIT"
    UNAUTHORIZED = "UNAUTHORIZED"
    NOT_SUPPORTED = "NOT_SUPPORTED"
    INVALID_STATE_TRANSITION = "INVALID_STATE_TRANSITION"
    PAYMENTS_DISABLED = "PAYMENTS_DISABLED"
    PROVIDER_NOT_ENABLED = "PROVIDER_NOT_ENABLED"
    ACCESS_DENIED = "ACCESS_DENIED"
    DECRYPTION_ERROR = "DECRYPTION_ERROR"
    UNKNOWN_ERROR = "UNKNOWN_ERROR"


class PaymentError(Exception):
    """Base class for all payment module errors"""

    default_code = PaymentErrorCode.UNKNOWN_ERROR
    default_retryable = False

    def __init__(
        self,
        message: str,
        code: Optional[PaymentErrorCode] = None,
        provider: Optional[str] = None,
        retryable: Optional[bool] = None,
        original_error: Optional[BaseException] = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.provider = provider
        self.retryable = self.default_retryable if retryable is None else retryable
        self.original_error = original_error

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code.value,
            "message": self.message,
            "provider": self.provider,
            "retryable": self.retryable,
        }

    def __repr__(self):
        return f"{type(self).__name__}(code={self.code.value}, provider={self.provider}, message={self.message!r})"


class InvalidConfigError(PaymentError):
    default_code = PaymentErrorCode.INVALID_CONFIG

    def __init__(self, message: str, errors: Optional[List[str]] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.errors = list(errors or [])

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["errors"] = self.errors
        return data


class InvalidAmountError(PaymentError):
    default_code = PaymentErrorCode.INVALID_AMOUNT


class InvalidCurrencyError(PaymentError):
    default_code = PaymentErrorCode.INVALID_CURRENCY


class PaymentDeclinedError(PaymentError):
    default_code = PaymentErrorCode.PAYMENT_DECLINED


class PaymentNotFoundError(PaymentError):
    default_code = PaymentErrorCode.PAYMENT_NOT_FOUND


class RefundFailedError(PaymentError):
    default_code = PaymentErrorCode.REFUND_FAILED


class WebhookVerificationError(PaymentError):
    default_code = PaymentErrorCode.WEBHOOK_VERIFICATION_FAILED


class PaymentNetworkError(PaymentError):
    default_code = PaymentErrorCode.NETWORK_ERROR
    default_retryable = True


class ProviderError(PaymentError):
    default_code = PaymentErrorCode.PROVIDER_ERROR


class RateLimitError(PaymentError):
    default_code = PaymentErrorCode.RATE_LIMIT
    default_retryable = True


class UnauthorizedError(PaymentError):
    default_code = PaymentErrorCode.UNAUTHORIZED


class NotSupportedError(PaymentError):
    default_code = PaymentErrorCode.NOT_SUPPORTED

    def __init__(self, operation: str, provider: Optional[str] = None, message: Optional[str] = None):
        super().__init__(message or f"{operation} is not supported by {provider or 'this provider'}", provider=provider)
        self.operation = operation


class InvalidStateTransitionError(PaymentError):
    default_code = PaymentErrorCode.INVALID_STATE_TRANSITION

    def __init__(self, message: str, current_status: Optional[str] = None,
                 requested_status: Optional[str] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.current_status = current_status
        self.requested_status = requested_status


class PaymentsDisabledError(PaymentError):
    default_code = PaymentErrorCode.PAYMENTS_DISABLED


class ProviderNotEnabledError(PaymentError):
    default_code = PaymentErrorCode.PROVIDER_NOT_ENABLED


class PaymentAccessDeniedError(PaymentError):
    default_code = PaymentErrorCode.ACCESS_DENIED


class DecryptionError(PaymentError):
    """Ciphertext is malformed or failed authentication"""
    default_code = PaymentErrorCode.DECRYPTION_ERROR


class VaultKeyError(PaymentError):
    """Master key is not configured"""
    default_code = PaymentErrorCode.INVALID_CONFIG
