"""
Crypto Payment Monitor - USDT TRC-20 confirmation and expiry

One periodic job, not one worker per payment:
1. Load every pending crypto payment from the payments table (nothing else is kept
   between ticks, so a restart loses no tracking)
2. Group by receiving wallet so each address costs one explorer call per tick
3. Match confirmed incoming transfers to perturbed expected amounts, tenant by tenant
   with each tenant's own tolerance
4. Confirm matches and expire overdue invoices through the transaction engine

Wallet groups are independent and are checked concurrently.
"""

import asyncio
import logging
from collections import defaultdict
from typing import Any, Dict, List, Optional, Tuple

from apscheduler.executors.asyncio import AsyncIOExecutor
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from config import Config
from models import Payment, PaymentStatus
from services.crypto_amount_service import IncomingTransfer
from services.payment_errors import PaymentError
from services.payment_transaction_service import (
    CRYPTO_PROVIDER, EXPIRED_REASON, PaymentTransactionService, pending_crypto_view,
    payment_transaction_service,
)
from services.providers.base_provider import PaymentStatusInfo
from services.providers.crypto_trc20_provider import CryptoTRC20Provider
from utils.data_sanitizer import safe_error_log
from utils.datetime_helpers import ensure_aware_utc, to_iso, utc_now

logger = logging.getLogger(__name__)

JOB_ID = "crypto_payment_monitor"


class CryptoPaymentMonitor:
    """Polls TronGrid for pending USDT invoices"""

    def __init__(self, engine: Optional[PaymentTransactionService] = None, clock=utc_now):
        self.engine = engine if engine is not None else payment_transaction_service
        self._clock = clock
        self._tick_lock = asyncio.Lock()
        self.is_running = False
        self.pending_payments_count = 0
        self.last_run_at = None
        self.last_confirmed = 0
        self.last_expired = 0

    async def run_tick(self) -> Dict[str, int]:
        """One monitoring pass; returns {checked, confirmed, expired, failed_groups}"""
        if self._tick_lock.locked():
            logger.info("⏭️ CRYPTO_MONITOR: previous tick still running, skipping")
            return {"checked": 0, "confirmed": 0, "expired": 0, "failed_groups": 0}

        async with self._tick_lock:
            pending = await self.engine.get_pending_crypto_payments()
            self.pending_payments_count = len(pending)
            self.last_run_at = self._clock()
            if not pending:
                self.last_confirmed = self.last_expired = 0
                return {"checked": 0, "confirmed": 0, "expired": 0, "failed_groups": 0}

            groups = self._group_by_wallet(pending)
            logger.info(f"🔍 CRYPTO_MONITOR: {len(pending)} pending payment(s) on {len(groups)} wallet(s)")

            outcomes = await asyncio.gather(
                *(self._process_group(key, payments) for key, payments in groups.items()),
                return_exceptions=True,
            )

            confirmed = expired = failed = 0
            for (wallet, _), outcome in zip(groups.keys(), outcomes):
                if isinstance(outcome, BaseException):
                    failed += 1
                    logger.error(f"❌ CRYPTO_MONITOR_GROUP_FAILED: {wallet[:6]}… {safe_error_log(outcome)}")
                    continue
                confirmed += outcome[0]
                expired += outcome[1]
                failed += outcome[2]

            self.last_confirmed, self.last_expired = confirmed, expired
            if confirmed or expired:
                logger.info(f"✅ CRYPTO_MONITOR: confirmed={confirmed} expired={expired}")
            return {"checked": len(pending), "confirmed": confirmed, "expired": expired, "failed_groups": failed}

    @staticmethod
    def _group_by_wallet(payments: List[Payment]) -> Dict[Tuple[str, bool], List[Payment]]:
        groups: Dict[Tuple[str, bool], List[Payment]] = defaultdict(list)
        for payment in payments:
            wallet = (payment.payment_metadata or {}).get("wallet_address")
            if not wallet:
                logger.warning(f"⚠️ CRYPTO_MONITOR: payment {payment.id} has no wallet address")
                continue
            groups[(wallet, bool(payment.test_mode))].append(payment)
        return groups

    async def _process_group(self, key: Tuple[str, bool], payments: List[Payment]) -> Tuple[int, int, int]:
        """
        Match one wallet's pending invoices; returns (confirmed, expired, failed).

        The explorer is read once per wallet. Each tenant's invoices are matched with that
        tenant's own adapter settings, and a transfer assigned to one tenant is not offered
        to the next.
        """
        wallet, test_mode = key
        tenants: Dict[Tuple[str, str], List[Payment]] = defaultdict(list)
        for payment in payments:
            tenants[(payment.entity_type, payment.entity_id)].append(payment)

        adapters: Dict[Tuple[str, str], CryptoTRC20Provider] = {}
        for entity_type, entity_id in tenants:
            try:
                adapters[(entity_type, entity_id)] = await self.engine.get_adapter(
                    entity_type, entity_id, CRYPTO_PROVIDER, test_mode=test_mode)
            except PaymentError as e:
                logger.warning(f"⚠️ CRYPTO_MONITOR_ADAPTER_UNAVAILABLE: {entity_type}:{entity_id} "
                               f"{safe_error_log(e)}")

        now = self._clock()
        if not adapters:
            # Nobody can read this wallet any more; deadlines still apply
            expired = 0
            for tenant_payments in tenants.values():
                expired += (await self._settle(tenant_payments, {}, now, expire=True))[1]
            return 0, expired, 1

        reader = next(iter(adapters.values()))
        since = min(ensure_aware_utc(p.created_at) for p in payments)
        # An explorer failure skips the group entirely; nothing expires on missing data
        scan = await reader.scan_incoming_transfers(wallet, since=since)
        claimed = list(await self.engine.get_claimed_transaction_ids(wallet, since=since))

        confirmed = expired = 0
        for tenant, tenant_payments in tenants.items():
            adapter = adapters.get(tenant)
            matches = {}
            if adapter is not None:
                views = [pending_crypto_view(p) for p in tenant_payments]
                matches = adapter.match_transfers(views, scan.transfers, claimed)
                claimed.extend(t.transaction_id for t in matches.values())
            # A truncated scan may have missed the transfer that pays an overdue invoice
            counts = await self._settle(tenant_payments, matches, now, expire=scan.complete or adapter is None)
            confirmed += counts[0]
            expired += counts[1]
        return confirmed, expired, 0

    async def _settle(self, payments: List[Payment], matches: Dict[str, IncomingTransfer], now,
                      expire: bool) -> Tuple[int, int]:
        confirmed = expired = 0
        for payment in payments:
            view = pending_crypto_view(payment)
            transfer = matches.get(view.external_id)
            if transfer is not None:
                info = CryptoTRC20Provider.confirmed_status(view, transfer)
            elif expire and view.is_expired(now):
                info = PaymentStatusInfo(
                    external_id=view.external_id,
                    status=PaymentStatus.CANCELED,
                    currency="USDT",
                    metadata={"reason": EXPIRED_REASON, "expires_at": to_iso(view.expires_at)},
                )
            else:
                continue

            try:
                updated = await self.engine.apply_status_info(payment, info, reason="crypto_monitor")
            except PaymentError as e:
                logger.error(f"❌ CRYPTO_MONITOR_UPDATE_FAILED: payment {payment.id}: {safe_error_log(e)}")
                continue
            if updated.status == PaymentStatus.SUCCEEDED.value and transfer is not None:
                confirmed += 1
                logger.info(f"💰 CRYPTO_PAYMENT_CONFIRMED: {payment.id} tx={transfer.transaction_id} "
                            f"value={transfer.value} expected={view.expected_amount}")
            elif updated.status == PaymentStatus.CANCELED.value:
                expired += 1
                logger.info(f"⌛ CRYPTO_PAYMENT_EXPIRED: {payment.id} expected={view.expected_amount} "
                            f"deadline={to_iso(view.expires_at)}")
        return confirmed, expired

    async def check_payment_by_id(self, payment_id: str) -> Payment:
        """Force a single check outside the schedule"""
        return await self.engine.check_payment_status(payment_id)

    def get_stats(self) -> Dict[str, Any]:
        return {
            "is_running": self.is_running,
            "pending_payments_count": self.pending_payments_count,
            "last_run_at": to_iso(self.last_run_at),
            "last_confirmed": self.last_confirmed,
            "last_expired": self.last_expired,
        }


class CryptoMonitorScheduler:
    """APScheduler wrapper started and stopped by the web server lifespan"""

    def __init__(self, monitor: CryptoPaymentMonitor, interval_seconds: Optional[int] = None):
        self.monitor = monitor
        self.interval_seconds = interval_seconds or Config.CRYPTO_MONITOR_INTERVAL_SECONDS
        self.scheduler = AsyncIOScheduler(
            jobstores={"default": MemoryJobStore()},
            executors={"default": AsyncIOExecutor()},
            job_defaults={
                "coalesce": True,  # Prevent job pileup
                "max_instances": 1,
                "misfire_grace_time": self.interval_seconds,
            },
            timezone="UTC",
        )

    def start(self):
        self.scheduler.add_job(
            self.monitor.run_tick,
            trigger=IntervalTrigger(seconds=self.interval_seconds),
            id=JOB_ID,
            name="🪙 Crypto Payment Monitor - USDT TRC-20 confirmations",
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )
        self.scheduler.start()
        self.monitor.is_running = True
        logger.info(f"✅ Crypto payment monitor scheduled every {self.interval_seconds} seconds")

    def stop(self):
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
        self.monitor.is_running = False
        logger.info("🛑 Crypto payment monitor stopped")


crypto_payment_monitor = CryptoPaymentMonitor()
