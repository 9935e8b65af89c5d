"""
USDT TRC-20 adapter (on-chain stablecoin rail E)

There is no payment API on the other side: an invoice is a perturbed USDT amount the
payer sends to the tenant's wallet, and confirmation comes from polling TronGrid for
incoming token transfers. Pending invoices live only in the payments table; the adapter
reads them through an injected lookup so nothing is lost on restart.
"""

import base64
import hashlib
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Awaitable, Callable, Dict, List, Optional

import orjson

from config import Config
from models import PaymentStatus
from services.crypto_amount_service import AwaitedAmount, IncomingTransfer, UniqueAmountService
from services.exchange_rate_service import ExchangeRateService, exchange_rate_service
from services.payment_errors import PaymentError, PaymentNotFoundError, UnauthorizedError
from services.providers.base_provider import (
    BasePaymentProvider, PaymentRequest, PaymentResult, PaymentStatusInfo, ProviderInfo,
)
from utils.datetime_helpers import ensure_aware_utc, from_timestamp_ms, to_iso, to_timestamp_ms, utc_now
from utils.decimal_precision import MonetaryDecimal
from utils.provider_config_validator import ValidationResult, provider_config_validator

logger = logging.getLogger(__name__)

TRONGRID_MAINNET_URL = "https://api.trongrid.io"
TRONGRID_TESTNET_URL = "https://nile.trongrid.io"
USDT_CONTRACT_ADDRESS = "TR7NHqjeKQxGTCi8q8ZY4pL8otSzgjLj6t"
USDT_TESTNET_CONTRACT_ADDRESS = "TXLAQ63Xg1NAzckPwKHvzw7CSEmLMEqcdj"
USDT_DECIMALS = 6

TRANSFER_PAGE_SIZE = 200
# Upper bound per scan; a scan that stops here is reported as incomplete
MAX_TRANSFER_PAGES = 25

DEFAULT_EXPIRATION_MINUTES = 60
DEFAULT_TOLERANCE_PERCENT = Decimal("0.0001")
DEFAULT_UNIQUE_DECIMALS = 4


@dataclass
class PendingCryptoPayment:
    """Read-only view of a crypto Payment row used for matching"""
    external_id: str
    expected_amount: Decimal
    wallet_address: str
    created_at: datetime
    expires_at: datetime
    original_amount: Optional[Decimal] = None
    original_currency: Optional[str] = None
    exchange_rate: Optional[Decimal] = None
    transaction_id: Optional[str] = None
    claimed_transaction_ids: List[str] = field(default_factory=list)

    def is_expired(self, now: datetime) -> bool:
        return ensure_aware_utc(now) > ensure_aware_utc(self.expires_at)


@dataclass
class TransferScan:
    transfers: List[IncomingTransfer]
    # False when paging stopped before TronGrid ran out of pages
    complete: bool = True


PendingPaymentLookup = Callable[[str], Awaitable[Optional[PendingCryptoPayment]]]


def external_id_from_key(idempotency_key: str) -> str:
    """Client-side invoice id; the same idempotency key always maps to the same invoice"""
    return f"crypto_{hashlib.sha256(idempotency_key.encode('utf-8')).hexdigest()[:24]}"


class CryptoTRC20Provider(BasePaymentProvider):
    provider_name = "crypto_trc20"

    def __init__(self, config: Dict[str, Any], test_mode: bool = False,
                 exchange_rates: Optional[ExchangeRateService] = None,
                 payment_lookup: Optional[PendingPaymentLookup] = None,
                 clock: Callable[[], datetime] = utc_now, **kwargs):
        super().__init__(config, test_mode, **kwargs)
        # Test mode always wins: a sandbox tenant never watches the production token
        self.use_testnet = bool(test_mode or config.get("use_testnet"))
        if self.use_testnet:
            self.base_url = TRONGRID_TESTNET_URL
            self.contract_address = USDT_TESTNET_CONTRACT_ADDRESS
        else:
            self.base_url = TRONGRID_MAINNET_URL
            self.contract_address = USDT_CONTRACT_ADDRESS

        self.wallet_address = config["wallet_address"]
        self.expiration_minutes = int(config.get("expiration_minutes") or DEFAULT_EXPIRATION_MINUTES)
        tolerance = config.get("amount_tolerance_percent")
        self.tolerance_percent = Decimal(str(tolerance)) if tolerance is not None else DEFAULT_TOLERANCE_PERCENT
        self.unique_decimals = int(config.get("unique_amount_decimals") or DEFAULT_UNIQUE_DECIMALS)
        self.exchange_rates = exchange_rates or exchange_rate_service
        self.payment_lookup = payment_lookup
        self._clock = clock

    @property
    def info(self) -> ProviderInfo:
        return ProviderInfo(
            name="USDT TRC-20",
            type=self.provider_name,
            supported_currencies=["RUB", "USD", "EUR", "GBP", "USDT"],
            supported_methods=["crypto"],
            supports_refunds=False,
            supports_capture=False,
            supports_webhooks=False,
            test_mode=self.test_mode,
        )

    def _headers(self) -> Dict[str, str]:
        headers = {"Accept": "application/json"}
        api_key = self.config.get("trongrid_api_key") or Config.TRONGRID_API_KEY
        if api_key:
            headers["TRON-PRO-API-KEY"] = api_key
        return headers

    def _secrets(self) -> List[str]:
        secrets = super()._secrets()
        if Config.TRONGRID_API_KEY:
            secrets.append(Config.TRONGRID_API_KEY)
        return secrets

    # -- capability interface ------------------------------------------------

    async def validate_config(self) -> ValidationResult:
        result, normalized = provider_config_validator.validate(self.provider_name, self.config, self.test_mode)
        if not result.is_valid:
            return result

        for error in UniqueAmountService.validate_tuning(
            normalized.get("amount_tolerance_percent", DEFAULT_TOLERANCE_PERCENT),
            normalized.get("unique_amount_decimals", DEFAULT_UNIQUE_DECIMALS),
        ):
            result.add_error(error)

        try:
            response = await self._request("GET", f"{self.base_url}/v1/accounts/{self.wallet_address}",
                                           "validate_config", headers=self._headers())
            body = response.json()
            if not body.get("success", True) and not body.get("data"):
                result.add_error("Wallet address not found on the TRON network")
        except UnauthorizedError:
            result.add_error("TronGrid rejected the API key")
        except PaymentError as e:
            result.warnings.append(f"Could not reach TronGrid: {e.message}")
        return result

    async def create_payment(self, request: PaymentRequest) -> PaymentResult:
        self.log_operation("create_payment", {"amount": str(request.amount), "currency": request.currency,
                                              "order_id": request.order_id})
        currency = request.currency.upper()
        if currency == "USDT":
            usdt_amount, rate = MonetaryDecimal.quantize_usdt(request.amount), Decimal("1")
        else:
            conversion = await self.exchange_rates.convert_to_usdt(
                request.amount,
                currency,
                source=self.config.get("exchange_rate_source") or "binance",
                manual_rate=self.config.get("manual_exchange_rate"),
                markup_percent=Decimal(str(self.config.get("exchange_rate_markup") or 0)),
            )
            usdt_amount, rate = conversion.usdt_amount, conversion.rate

        expected_amount = UniqueAmountService.generate_unique_amount(
            usdt_amount,
            decimals=self.unique_decimals,
            tolerance_percent=self.tolerance_percent,
            reserved_amounts=request.reserved_amounts,
        )
        now = self._clock()
        expires_at = now + timedelta(minutes=self.expiration_minutes)
        external_id = external_id_from_key(request.idempotency_key)

        metadata = {
            "wallet_address": self.wallet_address,
            "expected_amount": str(expected_amount),
            "original_amount": MonetaryDecimal.format_fiat(request.amount),
            "original_currency": currency,
            "exchange_rate": str(rate),
            "expires_at": to_iso(expires_at),
            "expiration_minutes": self.expiration_minutes,
            "network": "TRC-20",
            "currency": "USDT",
            "contract_address": self.contract_address,
            "testnet": self.use_testnet,
        }
        logger.info(f"🪙 CRYPTO_INVOICE_CREATED: {external_id} expects {expected_amount} USDT "
                    f"({request.amount} {currency} @ {rate}) until {metadata['expires_at']}")
        return PaymentResult(
            external_id=external_id,
            status=PaymentStatus.PENDING,
            amount=expected_amount,
            currency="USDT",
            payment_url=self._payment_data_url(external_id, expected_amount, expires_at),
            expires_at=expires_at,
            metadata=metadata,
        )

    async def get_payment_status(self, external_id: str) -> PaymentStatusInfo:
        if self.payment_lookup is None:
            raise PaymentNotFoundError(f"No pending invoice store wired for {external_id}",
                                       provider=self.provider_name)
        pending = await self.payment_lookup(external_id)
        if pending is None:
            raise PaymentNotFoundError(f"Crypto invoice {external_id} not found", provider=self.provider_name)

        if pending.transaction_id:
            return PaymentStatusInfo(external_id=external_id, status=PaymentStatus.SUCCEEDED,
                                     amount=pending.expected_amount, currency="USDT",
                                     metadata={"transaction_id": pending.transaction_id})

        scan = await self.scan_incoming_transfers(pending.wallet_address, since=pending.created_at)
        match = self.match_transfers([pending], scan.transfers, pending.claimed_transaction_ids).get(external_id)
        if match:
            return self.confirmed_status(pending, match)
        # An unread tail may still hold the payment
        if scan.complete and pending.is_expired(self._clock()):
            return PaymentStatusInfo(external_id=external_id, status=PaymentStatus.CANCELED,
                                     amount=pending.expected_amount, currency="USDT",
                                     metadata={"reason": "expired", "expires_at": to_iso(pending.expires_at)})
        return PaymentStatusInfo(external_id=external_id, status=PaymentStatus.PENDING,
                                 amount=pending.expected_amount, currency="USDT")

    async def cancel_payment(self, external_id: str) -> PaymentStatusInfo:
        # Nothing exists upstream; dropping the row from the pending set stops the watch
        self.log_operation("cancel_payment", {"external_id": external_id})
        return PaymentStatusInfo(external_id=external_id, status=PaymentStatus.CANCELED, currency="USDT")

    # -- chain access --------------------------------------------------------

    async def list_incoming_transfers(self, wallet_address: str, since: Optional[datetime] = None,
                                      ) -> List[IncomingTransfer]:
        """Confirmed USDT transfers into wallet_address, oldest first"""
        return (await self.scan_incoming_transfers(wallet_address, since=since)).transfers

    async def scan_incoming_transfers(self, wallet_address: str, since: Optional[datetime] = None,
                                      ) -> TransferScan:
        url = f"{self.base_url}/v1/accounts/{wallet_address}/transactions/trc20"
        params: Dict[str, Any] = {
            "only_to": "true",
            "only_confirmed": "true",
            "limit": TRANSFER_PAGE_SIZE,
            "contract_address": self.contract_address,
            "order_by": "block_timestamp,asc",
        }
        if since is not None:
            params["min_timestamp"] = to_timestamp_ms(since)

        transfers: List[IncomingTransfer] = []
        complete = False
        for _ in range(MAX_TRANSFER_PAGES):
            response = await self._request("GET", url, "list_transfers", headers=self._headers(), params=params)
            body = response.json()
            for item in body.get("data") or []:
                transfer = self._parse_transfer(item, wallet_address)
                if transfer:
                    transfers.append(transfer)
            fingerprint = (body.get("meta") or {}).get("fingerprint")
            if not fingerprint:
                complete = True
                break
            params["fingerprint"] = fingerprint

        if not complete:
            logger.warning(f"⚠️ CRYPTO_TRANSFERS_TRUNCATED: stopped after {MAX_TRANSFER_PAGES} pages "
                           f"({len(transfers)} transfers) for {wallet_address[:6]}…; newer transfers unread")
        else:
            logger.debug(f"🔍 CRYPTO_TRANSFERS: {len(transfers)} incoming to {wallet_address[:6]}…")
        return TransferScan(transfers=transfers, complete=complete)

    def _parse_transfer(self, item: Dict[str, Any], wallet_address: str) -> Optional[IncomingTransfer]:
        token_info = item.get("token_info") or {}
        if token_info.get("address") and token_info["address"] != self.contract_address:
            return None
        if item.get("to") and item["to"] != wallet_address:
            return None
        try:
            value = MonetaryDecimal.from_token_units(item["value"], int(token_info.get("decimals") or USDT_DECIMALS))
            timestamp = from_timestamp_ms(item["block_timestamp"])
        except (KeyError, ValueError, TypeError):
            logger.warning(f"⚠️ CRYPTO_TRANSFER_UNREADABLE: {item.get('transaction_id')}")
            return None
        return IncomingTransfer(
            transaction_id=item["transaction_id"],
            value=value,
            timestamp=timestamp,
            from_address=item.get("from"),
        )

    def match_transfers(self, pending: List[PendingCryptoPayment], transfers: List[IncomingTransfer],
                        claimed_transaction_ids=()) -> Dict[str, IncomingTransfer]:
        awaited = [AwaitedAmount(p.external_id, p.expected_amount, p.created_at) for p in pending]
        return UniqueAmountService.assign_transfers(awaited, transfers, self.tolerance_percent,
                                                    claimed_transaction_ids)

    @staticmethod
    def confirmed_status(pending: PendingCryptoPayment, transfer: IncomingTransfer) -> PaymentStatusInfo:
        return PaymentStatusInfo(
            external_id=pending.external_id,
            status=PaymentStatus.SUCCEEDED,
            amount=transfer.value,
            currency="USDT",
            paid_at=transfer.timestamp,
            metadata={
                "transaction_id": transfer.transaction_id,
                "confirmed_at": to_iso(transfer.timestamp),
                "received_amount": str(transfer.value),
                "from_address": transfer.from_address,
            },
        )

    def _payment_data_url(self, external_id: str, amount: Decimal, expires_at: datetime) -> str:
        """Display payload for the checkout page (address, amount, deadline)"""
        payload = {
            "type": self.provider_name,
            "address": self.wallet_address,
            "amount": str(amount),
            "currency": "USDT",
            "network": "TRC-20",
            "paymentId": external_id,
            "expiresAt": to_iso(expires_at),
        }
        return "crypto://" + base64.b64encode(orjson.dumps(payload)).decode("ascii")
