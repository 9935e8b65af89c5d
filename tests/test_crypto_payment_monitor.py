"""
Crypto monitor ticks: one explorer call per wallet, confirmations, expiry and
explorer outages that must not expire anything
"""

from datetime import timedelta
from decimal import Decimal
from unittest.mock import AsyncMock, patch

import orjson
import pytest

from conftest import CRYPTO_SETTINGS, OWNER_ID, SHOP_ID, TRON_WALLET, save_provider_config
from jobs.crypto_payment_monitor import JOB_ID, CryptoMonitorScheduler, CryptoPaymentMonitor
from models import PaymentStatus
from services.api_adapter_retry import HttpResponse
from services.payment_errors import PaymentNetworkError
from services.payment_transaction_service import CreatePaymentDto
from services.providers.crypto_trc20_provider import (
    MAX_TRANSFER_PAGES, USDT_TESTNET_CONTRACT_ADDRESS, CryptoTRC20Provider,
)
from utils.datetime_helpers import to_timestamp_ms


def _explorer(*transfers):
    return HttpResponse(200, orjson.dumps({"data": list(transfers), "success": True, "meta": {}}).decode())


def _transfer(tx_id, value, when):
    return {
        "transaction_id": tx_id,
        "token_info": {"address": USDT_TESTNET_CONTRACT_ADDRESS, "decimals": 6},
        "block_timestamp": to_timestamp_ms(when),
        "from": "TPayerAddressXXXXXXXXXXXXXXXXXXXXX",
        "to": TRON_WALLET,
        "value": str(int(value * 10 ** 6)),
    }


@pytest.fixture
def monitor(engine, clock):
    return CryptoPaymentMonitor(engine=engine, clock=clock)


async def _invoice(engine, amount):
    return await engine.create_payment(CreatePaymentDto(
        entity_type="shop", entity_id=SHOP_ID, provider="crypto_trc20", amount=Decimal(amount),
    ))


class TestMonitorTick:

    @pytest.mark.asyncio
    async def test_nothing_pending(self, monitor):
        explorer = AsyncMock()
        with patch.object(CryptoTRC20Provider, "_request", explorer):
            stats = await monitor.run_tick()
        assert stats == {"checked": 0, "confirmed": 0, "expired": 0, "failed_groups": 0}
        explorer.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_confirms_matches_and_expires_the_rest(self, monitor, engine, config_service, recorder, clock):
        await save_provider_config(config_service, "crypto_trc20", CRYPTO_SETTINGS)
        paid = await _invoice(engine, "1500")
        unpaid = await _invoice(engine, "3000")
        expected = Decimal(paid.payment_metadata["expected_amount"])
        transfer = _transfer("tx-paid", expected, clock.now + timedelta(minutes=10))
        clock.advance(minutes=61)

        explorer = AsyncMock(return_value=_explorer(transfer))
        with patch.object(CryptoTRC20Provider, "_request", explorer):
            stats = await monitor.run_tick()

        assert stats == {"checked": 2, "confirmed": 1, "expired": 1, "failed_groups": 0}
        # Both invoices share a wallet, so the explorer is called once
        assert explorer.await_count == 1

        confirmed = await engine.get_payment(paid.id)
        assert confirmed.status == PaymentStatus.SUCCEEDED.value
        assert confirmed.payment_metadata["transaction_id"] == "tx-paid"
        expired = await engine.get_payment(unpaid.id)
        assert expired.status == PaymentStatus.CANCELED.value
        assert expired.status_history[-1]["reason"] == "expired"

        assert "crypto.payment.confirmed" in recorder.types()
        assert "crypto.payment.expired" in recorder.types()
        assert monitor.get_stats()["last_confirmed"] == 1
        assert monitor.get_stats()["last_expired"] == 1

    @pytest.mark.asyncio
    async def test_explorer_outage_expires_nothing(self, monitor, engine, config_service, clock):
        await save_provider_config(config_service, "crypto_trc20", CRYPTO_SETTINGS)
        payment = await _invoice(engine, "1500")
        clock.advance(minutes=90)

        with patch.object(CryptoTRC20Provider, "_request", AsyncMock(side_effect=PaymentNetworkError("down"))):
            stats = await monitor.run_tick()

        assert stats["failed_groups"] == 1
        assert stats["expired"] == 0
        assert (await engine.get_payment(payment.id)).status == PaymentStatus.PENDING.value

    @pytest.mark.asyncio
    async def test_pending_before_deadline_is_left_alone(self, monitor, engine, config_service, clock):
        await save_provider_config(config_service, "crypto_trc20", CRYPTO_SETTINGS)
        payment = await _invoice(engine, "1500")
        clock.advance(minutes=30)

        with patch.object(CryptoTRC20Provider, "_request", AsyncMock(return_value=_explorer())):
            stats = await monitor.run_tick()

        assert stats == {"checked": 1, "confirmed": 0, "expired": 0, "failed_groups": 0}
        assert (await engine.get_payment(payment.id)).status == PaymentStatus.PENDING.value
        assert monitor.get_stats()["pending_payments_count"] == 1

    @pytest.mark.asyncio
    async def test_overdue_invoices_expire_after_config_is_deleted(self, monitor, engine, config_service,
                                                                   recorder, clock):
        await save_provider_config(config_service, "crypto_trc20", CRYPTO_SETTINGS)
        payment = await _invoice(engine, "1500")
        await config_service.delete_config("shop", SHOP_ID, user_id=OWNER_ID)
        clock.advance(minutes=61)

        explorer = AsyncMock()
        with patch.object(CryptoTRC20Provider, "_request", explorer):
            stats = await monitor.run_tick()

        assert stats == {"checked": 1, "confirmed": 0, "expired": 1, "failed_groups": 1}
        explorer.assert_not_awaited()
        expired = await engine.get_payment(payment.id)
        assert expired.status == PaymentStatus.CANCELED.value
        assert expired.status_history[-1]["reason"] == "expired"
        assert "crypto.payment.expired" in recorder.types()

    @pytest.mark.asyncio
    async def test_deleted_config_leaves_fresh_invoices_pending(self, monitor, engine, config_service, clock):
        await save_provider_config(config_service, "crypto_trc20", CRYPTO_SETTINGS)
        payment = await _invoice(engine, "1500")
        await config_service.delete_config("shop", SHOP_ID, user_id=OWNER_ID)
        clock.advance(minutes=30)

        stats = await monitor.run_tick()

        assert stats["expired"] == 0
        assert (await engine.get_payment(payment.id)).status == PaymentStatus.PENDING.value

    @pytest.mark.asyncio
    async def test_truncated_transfer_scan_expires_nothing(self, monitor, engine, config_service, clock):
        await save_provider_config(config_service, "crypto_trc20", CRYPTO_SETTINGS)
        payment = await _invoice(engine, "1500")
        clock.advance(minutes=61)

        endless = HttpResponse(200, orjson.dumps({
            "data": [], "success": True, "meta": {"fingerprint": "more"},
        }).decode())
        explorer = AsyncMock(return_value=endless)
        with patch.object(CryptoTRC20Provider, "_request", explorer):
            stats = await monitor.run_tick()

        assert explorer.await_count == MAX_TRANSFER_PAGES
        assert stats == {"checked": 1, "confirmed": 0, "expired": 0, "failed_groups": 0}
        assert (await engine.get_payment(payment.id)).status == PaymentStatus.PENDING.value

    @pytest.mark.asyncio
    async def test_shared_wallet_uses_each_tenants_tolerance(self, monitor, engine, config_service, clock):
        await save_provider_config(config_service, "crypto_trc20", CRYPTO_SETTINGS)
        await save_provider_config(config_service, "crypto_trc20",
                                   dict(CRYPTO_SETTINGS, amount_tolerance_percent="0.0004"),
                                   entity_id="shop-2")
        strict = await _invoice(engine, "1500")
        lenient = await engine.create_payment(CreatePaymentDto(
            entity_type="shop", entity_id="shop-2", provider="crypto_trc20", amount=Decimal("3000"),
        ))
        # 0.0001 USDT short: inside shop-2's window, outside the default one
        short_paid = Decimal(lenient.payment_metadata["expected_amount"]) - Decimal("0.0001")
        transfer = _transfer("tx-short", short_paid, clock.now + timedelta(minutes=5))
        clock.advance(minutes=10)

        explorer = AsyncMock(return_value=_explorer(transfer))
        with patch.object(CryptoTRC20Provider, "_request", explorer):
            stats = await monitor.run_tick()

        assert explorer.await_count == 1
        assert stats == {"checked": 2, "confirmed": 1, "expired": 0, "failed_groups": 0}
        assert (await engine.get_payment(lenient.id)).status == PaymentStatus.SUCCEEDED.value
        assert (await engine.get_payment(strict.id)).status == PaymentStatus.PENDING.value

    @pytest.mark.asyncio
    async def test_overlapping_tick_is_skipped(self, monitor):
        async with monitor._tick_lock:
            stats = await monitor.run_tick()
        assert stats["checked"] == 0


class TestMonitorScheduler:

    @pytest.mark.asyncio
    async def test_start_registers_one_interval_job(self, monitor):
        scheduler = CryptoMonitorScheduler(monitor, interval_seconds=30)
        scheduler.start()
        try:
            job = scheduler.scheduler.get_job(JOB_ID)
            assert job is not None
            assert job.max_instances == 1
            assert monitor.is_running is True
        finally:
            scheduler.stop()
        assert monitor.is_running is False
