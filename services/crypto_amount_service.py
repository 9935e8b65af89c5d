"""
Unique Amount Service
Perturbed invoice amounts and tolerance matching for the on-chain rail.

Several invoices can be pending on one shared wallet address at the same time, so each
invoice is told to pay a slightly different, non-round amount and incoming transfers are
correlated by value alone.

Tuned pair (perturbation, tolerance):
- Offset grid: {1 .. R/step - 1} x step, step = 10^-unique_amount_decimals,
  R = 1 for base amounts >= 10 and R = 0.1 below.
- Tolerance: a transfer V matches an expected amount E iff |E - V| <= E * t / 100.
- Two pending amounts must be more than 2 * E * t / 100 apart, otherwise one transfer
  could satisfy both windows. Minting re-draws until that holds.
- Config save accepts (t, decimals) only if 2 * E_ref * t / 100 < R / 10 for the largest
  expected invoice E_ref, so at least ten invoices fit in one offset range.
"""

import logging
import secrets
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Sequence

from services.payment_errors import ProviderError
from utils.decimal_precision import MonetaryDecimal

logger = logging.getLogger(__name__)

SMALL_AMOUNT_THRESHOLD = Decimal("10")
LARGE_OFFSET_RANGE = Decimal("1")
SMALL_OFFSET_RANGE = Decimal("0.1")
MAX_MINT_ATTEMPTS = 20
DEFAULT_REFERENCE_AMOUNT = Decimal("10000")
MIN_DISTINGUISHABLE_INVOICES = 10


@dataclass
class IncomingTransfer:
    """One confirmed token transfer to a watched address"""
    transaction_id: str
    value: Decimal
    timestamp: datetime
    from_address: Optional[str] = None


@dataclass
class AwaitedAmount:
    """A pending invoice as seen by the matcher"""
    key: str
    expected_amount: Decimal
    not_before: Optional[datetime] = None


class UniqueAmountService:
    """Mint perturbed amounts and match transfers to them"""

    @staticmethod
    def offset_range(base_amount: Decimal) -> Decimal:
        return LARGE_OFFSET_RANGE if base_amount >= SMALL_AMOUNT_THRESHOLD else SMALL_OFFSET_RANGE

    @staticmethod
    def tolerance_window(expected_amount: Decimal, tolerance_percent: Decimal) -> Decimal:
        return expected_amount * Decimal(str(tolerance_percent)) / Decimal("100")

    @classmethod
    def is_amount_match(cls, expected_amount: Decimal, actual_amount: Decimal,
                        tolerance_percent: Decimal) -> bool:
        return abs(expected_amount - actual_amount) <= cls.tolerance_window(expected_amount, tolerance_percent)

    @classmethod
    def are_distinguishable(cls, first: Decimal, second: Decimal, tolerance_percent: Decimal) -> bool:
        """True when no single transfer can fall inside both tolerance windows"""
        if first == second:
            return False
        widest = max(first, second)
        return abs(first - second) > 2 * cls.tolerance_window(widest, tolerance_percent)

    @classmethod
    def generate_unique_amount(
        cls,
        base_amount: Decimal,
        decimals: int = 4,
        tolerance_percent: Decimal = Decimal("0.0001"),
        reserved_amounts: Iterable[Decimal] = (),
    ) -> Decimal:
        """
        Add a random offset to base_amount so it differs from every reserved amount.

        Raises:
            ProviderError: no free amount found after MAX_MINT_ATTEMPTS draws
        """
        base_amount = MonetaryDecimal.to_decimal(base_amount)
        step = Decimal(1).scaleb(-int(decimals))
        slots = int(cls.offset_range(base_amount) / step) - 1
        if slots < 1:
            raise ProviderError(f"unique_amount_decimals={decimals} leaves no room for an offset")

        reserved = [Decimal(str(a)) for a in reserved_amounts]
        base = base_amount.quantize(step)
        for attempt in range(1, MAX_MINT_ATTEMPTS + 1):
            candidate = base + step * (secrets.randbelow(slots) + 1)
            if all(cls.are_distinguishable(candidate, other, tolerance_percent) for other in reserved):
                return candidate
            logger.debug(f"🎲 UNIQUE_AMOUNT_COLLISION: attempt {attempt} drew {candidate}")

        logger.error(f"❌ UNIQUE_AMOUNT_EXHAUSTED: no free amount near {base} among {len(reserved)} pending")
        raise ProviderError(
            "Too many pending invoices with a similar amount on this wallet; try again later",
            provider="crypto_trc20",
            retryable=True,
        )

    @classmethod
    def validate_tuning(cls, tolerance_percent: Decimal, decimals: int,
                        reference_amount: Optional[Decimal] = None) -> List[str]:
        """
        Check that a (tolerance, decimals) pair keeps concurrent invoices apart.

        Both offset regimes are checked: amounts up to the reference amount with R = 1 and
        amounts just under the small-amount threshold with R = 0.1.
        """
        errors: List[str] = []
        tolerance_percent = Decimal(str(tolerance_percent))
        step = Decimal(1).scaleb(-int(decimals))
        reference_amount = Decimal(str(reference_amount or DEFAULT_REFERENCE_AMOUNT))

        regimes = [(SMALL_AMOUNT_THRESHOLD, SMALL_OFFSET_RANGE)]
        if reference_amount >= SMALL_AMOUNT_THRESHOLD:
            regimes.append((reference_amount, LARGE_OFFSET_RANGE))

        for amount, offset_range in regimes:
            spread = 2 * cls.tolerance_window(amount, tolerance_percent)
            if spread >= offset_range / MIN_DISTINGUISHABLE_INVOICES:
                errors.append(
                    f"amount_tolerance_percent={tolerance_percent} is too wide for invoices of {amount}: "
                    f"two invoices must differ by more than {spread} but offsets only span {offset_range}"
                )
            if step >= offset_range:
                errors.append(f"unique_amount_decimals={decimals} is too coarse for invoices below {amount}")
        return errors

    @classmethod
    def assign_transfers(
        cls,
        awaited: Sequence[AwaitedAmount],
        transfers: Sequence[IncomingTransfer],
        tolerance_percent: Decimal,
        claimed_transaction_ids: Iterable[str] = (),
    ) -> Dict[str, IncomingTransfer]:
        """
        Pair transfers with pending invoices.

        Each transfer confirms at most one invoice and each invoice takes at most one
        transfer; the closest expected amount wins. Transfers already recorded on another
        payment and transfers older than the invoice are skipped.

        Returns:
            {awaited.key: transfer}
        """
        claimed = set(claimed_transaction_ids)
        candidates = []
        for item in awaited:
            for transfer in transfers:
                if transfer.transaction_id in claimed:
                    continue
                if item.not_before and transfer.timestamp < item.not_before:
                    continue
                if cls.is_amount_match(item.expected_amount, transfer.value, tolerance_percent):
                    distance = abs(item.expected_amount - transfer.value)
                    candidates.append((distance, item.key, transfer))

        candidates.sort(key=lambda c: (c[0], c[2].timestamp))
        assigned: Dict[str, IncomingTransfer] = {}
        used = set()
        for _, key, transfer in candidates:
            if key in assigned or transfer.transaction_id in used:
                continue
            assigned[key] = transfer
            used.add(transfer.transaction_id)
        return assigned


unique_amount_service = UniqueAmountService()
