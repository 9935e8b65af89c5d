"""
Transaction engine scenarios

Creation guards, webhook reconciliation, refunds, the forward-only state machine,
idempotent replays and the crypto rail's confirm/expire paths, all against an
in-memory database with provider HTTP patched out.
"""

import asyncio
import hashlib
from datetime import timedelta
from decimal import Decimal
from unittest.mock import AsyncMock, patch

import orjson
import pytest
from sqlalchemy import func, select

from conftest import (
    CRYPTO_SETTINGS, OWNER_ID, ROBOKASSA_SETTINGS, SHOP_ID, TRON_WALLET, YOOKASSA_SETTINGS,
    save_provider_config,
)
from database import get_async_session
from models import Booking, Order, Payment, PaymentStatus, RefundStatus
from services.api_adapter_retry import HttpResponse
from services.payment_errors import (
    InvalidAmountError, InvalidStateTransitionError, NotSupportedError, PaymentAccessDeniedError,
    PaymentErrorCode, PaymentsDisabledError, ProviderError, ProviderNotEnabledError, RefundFailedError,
    WebhookVerificationError,
)
from services.payment_transaction_service import MAX_EXTERNAL_ID_DRAWS, CreatePaymentDto, is_transition_allowed
from services.providers.base_provider import PaymentStatusInfo, RefundResult
from services.providers.crypto_trc20_provider import USDT_TESTNET_CONTRACT_ADDRESS, CryptoTRC20Provider
from services.providers import robokassa_provider
from services.providers.robokassa_provider import RobokassaProvider
from services.providers.yookassa_provider import YookassaProvider
from utils.datetime_helpers import to_timestamp_ms


async def _add_order(order_id="order-1", total="1500.00", shop_id=SHOP_ID):
    async with get_async_session() as session:
        session.add(Order(id=order_id, shop_id=shop_id, owner_id=OWNER_ID, total_amount=Decimal(total),
                          currency="RUB", customer_email="buyer@example.test"))


async def _load(model, key):
    async with get_async_session() as session:
        return await session.get(model, key)


async def _count_payments():
    async with get_async_session() as session:
        return (await session.execute(select(func.count()).select_from(Payment))).scalar_one()


def _robokassa_result(payment, out_sum="1500.00", password="pass-two-456"):
    signature = hashlib.md5(f"{out_sum}:{payment.external_id}:{password}".encode()).hexdigest()
    return {"OutSum": out_sum, "InvId": payment.external_id, "SignatureValue": signature}


def _yookassa_reply(payment_id="yk-1", status="pending", amount="1500.00"):
    return HttpResponse(200, orjson.dumps({
        "id": payment_id, "status": status, "amount": {"value": amount, "currency": "RUB"},
        "confirmation": {"type": "redirect", "confirmation_url": f"https://yoomoney.ru/checkout/{payment_id}"},
    }).decode())


async def _succeeded_yookassa_payment(engine, config_service, amount="1500.00"):
    await save_provider_config(config_service, "yookassa", YOOKASSA_SETTINGS)
    with patch.object(YookassaProvider, "_request", AsyncMock(return_value=_yookassa_reply(amount=amount))):
        payment = await engine.create_payment(CreatePaymentDto(
            entity_type="shop", entity_id=SHOP_ID, provider="yookassa", amount=Decimal(amount),
        ))
    return await engine.update_payment_status("yk-1", PaymentStatus.SUCCEEDED, provider="yookassa")


class TestStateMachine:

    @pytest.mark.parametrize("current,requested,allowed", [
        (PaymentStatus.PENDING, PaymentStatus.SUCCEEDED, True),
        (PaymentStatus.PENDING, PaymentStatus.WAITING_FOR_CAPTURE, True),
        (PaymentStatus.WAITING_FOR_CAPTURE, PaymentStatus.CANCELED, True),
        (PaymentStatus.SUCCEEDED, PaymentStatus.PARTIALLY_REFUNDED, True),
        (PaymentStatus.PARTIALLY_REFUNDED, PaymentStatus.REFUNDED, True),
        (PaymentStatus.SUCCEEDED, PaymentStatus.PENDING, False),
        (PaymentStatus.SUCCEEDED, PaymentStatus.CANCELED, False),
        (PaymentStatus.CANCELED, PaymentStatus.SUCCEEDED, False),
        (PaymentStatus.REFUNDED, PaymentStatus.SUCCEEDED, False),
        (PaymentStatus.PARTIALLY_REFUNDED, PaymentStatus.SUCCEEDED, False),
    ])
    def test_transitions(self, current, requested, allowed):
        assert is_transition_allowed(current, requested) is allowed


class TestCreatePayment:

    @pytest.mark.asyncio
    async def test_order_payment_via_robokassa(self, engine, config_service, recorder):
        await save_provider_config(config_service, "robokassa", ROBOKASSA_SETTINGS)
        await _add_order()

        payment = await engine.create_order_payment(SHOP_ID, "order-1", "robokassa")

        assert payment.status == PaymentStatus.PENDING.value
        assert payment.amount == Decimal("1500.00")
        assert payment.currency == "RUB"
        assert payment.target_type == "order"
        assert payment.owner_id == OWNER_ID
        assert "OutSum=1500.00" in payment.payment_url
        assert payment.status_history[0]["status"] == "pending"

        order = await _load(Order, "order-1")
        assert order.payment_id == payment.id
        assert order.payment_status == "pending"
        assert recorder.types() == ["payment.created"]

    @pytest.mark.asyncio
    async def test_booking_payment(self, engine, config_service):
        await save_provider_config(config_service, "robokassa", ROBOKASSA_SETTINGS, entity_type="booking_system",
                                   entity_id="bs-1")
        async with get_async_session() as session:
            session.add(Booking(id="booking-1", booking_system_id="bs-1", price=Decimal("2500"), currency="RUB"))

        payment = await engine.create_booking_payment("bs-1", "booking-1", "robokassa")

        assert payment.entity_type == "booking_system"
        assert payment.amount == Decimal("2500.00")
        assert (await _load(Booking, "booking-1")).payment_id == payment.id

    @pytest.mark.asyncio
    async def test_disabled_tenant_never_reaches_provider(self, engine):
        create = AsyncMock()
        with patch.object(RobokassaProvider, "create_payment", create):
            with pytest.raises(PaymentsDisabledError):
                await engine.create_payment(CreatePaymentDto(
                    entity_type="shop", entity_id="unconfigured", provider="robokassa", amount=Decimal("10"),
                ))
        create.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_provider_must_be_enabled(self, engine, config_service):
        await save_provider_config(config_service, "robokassa", ROBOKASSA_SETTINGS)
        with pytest.raises(ProviderNotEnabledError):
            await engine.create_payment(CreatePaymentDto(
                entity_type="shop", entity_id=SHOP_ID, provider="stripe", amount=Decimal("10"),
            ))

    @pytest.mark.asyncio
    @pytest.mark.parametrize("amount", ["0", "-5", "5", "100001", "abc"])
    async def test_amount_bounds(self, engine, config_service, amount):
        await save_provider_config(config_service, "robokassa", ROBOKASSA_SETTINGS,
                                   settings={"min_amount": "10", "max_amount": "100000"})
        create = AsyncMock()
        with patch.object(RobokassaProvider, "create_payment", create):
            with pytest.raises(InvalidAmountError):
                await engine.create_payment(CreatePaymentDto(
                    entity_type="shop", entity_id=SHOP_ID, provider="robokassa", amount=amount,
                ))
        create.assert_not_awaited()
        assert await _count_payments() == 0

    @pytest.mark.asyncio
    async def test_idempotent_replay_returns_same_payment(self, engine, config_service, recorder):
        await save_provider_config(config_service, "robokassa", ROBOKASSA_SETTINGS)
        dto = CreatePaymentDto(entity_type="shop", entity_id=SHOP_ID, provider="robokassa",
                               amount=Decimal("990"), idempotency_key="checkout-42")

        first = await engine.create_payment(dto)
        second = await engine.create_payment(dto)

        assert second.id == first.id
        assert await _count_payments() == 1
        assert recorder.types() == ["payment.created"]

    @pytest.mark.asyncio
    async def test_already_paid_order_is_rejected(self, engine, config_service):
        await save_provider_config(config_service, "robokassa", ROBOKASSA_SETTINGS)
        await _add_order()
        payment = await engine.create_order_payment(SHOP_ID, "order-1", "robokassa")
        await engine.handle_webhook("shop", SHOP_ID, "robokassa", _robokassa_result(payment))

        with pytest.raises(InvalidStateTransitionError):
            await engine.create_order_payment(SHOP_ID, "order-1", "robokassa")


class TestWebhookReconciliation:

    @pytest.mark.asyncio
    async def test_success_webhook_marks_order_paid(self, engine, config_service, recorder, clock):
        await save_provider_config(config_service, "robokassa", ROBOKASSA_SETTINGS)
        await _add_order()
        payment = await engine.create_order_payment(SHOP_ID, "order-1", "robokassa")
        clock.advance(minutes=2)

        updated = await engine.handle_webhook("shop", SHOP_ID, "robokassa", _robokassa_result(payment))

        assert updated.status == PaymentStatus.SUCCEEDED.value
        assert updated.paid_at is not None
        assert [h["status"] for h in updated.status_history] == ["pending", "succeeded"]
        assert (await _load(Order, "order-1")).payment_status == "paid"
        assert recorder.types() == ["payment.created", "payment.succeeded"]
        assert recorder.events[-1].previous_status == "pending"

    @pytest.mark.asyncio
    async def test_duplicate_webhook_is_a_no_op(self, engine, config_service, recorder):
        await save_provider_config(config_service, "robokassa", ROBOKASSA_SETTINGS)
        payment = await engine.create_payment(CreatePaymentDto(
            entity_type="shop", entity_id=SHOP_ID, provider="robokassa", amount=Decimal("1500"),
        ))
        notification = _robokassa_result(payment)

        await engine.handle_webhook("shop", SHOP_ID, "robokassa", notification)
        again = await engine.handle_webhook("shop", SHOP_ID, "robokassa", notification)

        assert again.status == PaymentStatus.SUCCEEDED.value
        assert len(again.status_history) == 2
        assert recorder.types().count("payment.succeeded") == 1

    @pytest.mark.asyncio
    async def test_forged_webhook_changes_nothing(self, engine, config_service, recorder):
        await save_provider_config(config_service, "robokassa", ROBOKASSA_SETTINGS)
        payment = await engine.create_payment(CreatePaymentDto(
            entity_type="shop", entity_id=SHOP_ID, provider="robokassa", amount=Decimal("1500"),
        ))

        with pytest.raises(WebhookVerificationError):
            await engine.handle_webhook("shop", SHOP_ID, "robokassa",
                                        _robokassa_result(payment, password="guessed-password"))

        assert (await engine.get_payment(payment.id)).status == PaymentStatus.PENDING.value
        assert recorder.types() == ["payment.created"]

    @pytest.mark.asyncio
    async def test_webhook_for_another_tenant_is_ignored(self, engine, config_service):
        await save_provider_config(config_service, "robokassa", ROBOKASSA_SETTINGS)
        await save_provider_config(config_service, "robokassa", ROBOKASSA_SETTINGS, entity_id="shop-2")
        payment = await engine.create_payment(CreatePaymentDto(
            entity_type="shop", entity_id=SHOP_ID, provider="robokassa", amount=Decimal("1500"),
        ))

        assert await engine.handle_webhook("shop", "shop-2", "robokassa", _robokassa_result(payment)) is None
        assert (await engine.get_payment(payment.id)).status == PaymentStatus.PENDING.value

    @pytest.mark.asyncio
    async def test_late_pending_report_does_not_regress(self, engine, config_service, recorder):
        payment = await _succeeded_yookassa_payment(engine, config_service)
        notification = {"type": "notification", "event": "payment.waiting_for_capture", "object": {"id": "yk-1"}}

        with patch.object(YookassaProvider, "_request",
                          AsyncMock(return_value=_yookassa_reply(status="waiting_for_capture"))):
            result = await engine.handle_webhook("shop", SHOP_ID, "yookassa", notification)

        assert result.id == payment.id
        assert result.status == PaymentStatus.SUCCEEDED.value
        assert recorder.types() == ["payment.created", "payment.succeeded"]

    @pytest.mark.asyncio
    async def test_direct_backward_update_raises(self, engine, config_service):
        await _succeeded_yookassa_payment(engine, config_service)
        with pytest.raises(InvalidStateTransitionError):
            await engine.update_payment_status("yk-1", PaymentStatus.PENDING, provider="yookassa")

    @pytest.mark.asyncio
    async def test_status_poll_reconciles_like_a_webhook(self, engine, config_service, recorder):
        await save_provider_config(config_service, "yookassa", YOOKASSA_SETTINGS)
        with patch.object(YookassaProvider, "_request", AsyncMock(return_value=_yookassa_reply())):
            payment = await engine.create_payment(CreatePaymentDto(
                entity_type="shop", entity_id=SHOP_ID, provider="yookassa", amount=Decimal("1500"),
            ))
        with patch.object(YookassaProvider, "_request", AsyncMock(return_value=_yookassa_reply(status="canceled"))):
            polled = await engine.check_payment_status(payment.id, user_id=OWNER_ID)

        assert polled.status == PaymentStatus.CANCELED.value
        assert polled.canceled_at is not None
        assert recorder.types()[-1] == "payment.canceled"

    @pytest.mark.asyncio
    async def test_provider_reported_partial_refund(self, engine, config_service):
        await _succeeded_yookassa_payment(engine, config_service)
        updated = await engine.update_payment_status("yk-1", PaymentStatus.PARTIALLY_REFUNDED,
                                                     metadata={"refunded_amount": "300.00"}, provider="yookassa")
        assert updated.status == PaymentStatus.PARTIALLY_REFUNDED.value
        assert updated.refunded_amount == Decimal("300.00")

        updated = await engine.update_payment_status("yk-1", PaymentStatus.REFUNDED, provider="yookassa")
        assert updated.status == PaymentStatus.REFUNDED.value
        assert updated.refunded_amount == Decimal("1500.00")


class TestRefundCancelCapture:

    @pytest.mark.asyncio
    async def test_partial_then_full_refund(self, engine, config_service, recorder):
        payment = await _succeeded_yookassa_payment(engine, config_service)

        refund = AsyncMock(return_value=RefundResult("rf-1", RefundStatus.SUCCEEDED, Decimal("500.00")))
        with patch.object(YookassaProvider, "refund", refund):
            partial = await engine.refund_payment(payment.id, Decimal("500"), reason="damaged", user_id=OWNER_ID)

        assert partial.status == PaymentStatus.PARTIALLY_REFUNDED.value
        assert partial.refunded_amount == Decimal("500.00")
        assert partial.remaining_amount == Decimal("1000.00")
        assert partial.refunds[0]["refund_id"] == "rf-1"
        assert refund.await_args.args[0].amount == Decimal("500.00")
        assert recorder.types()[-1] == "payment.refunded"

        with pytest.raises(InvalidAmountError):
            await engine.refund_payment(payment.id, Decimal("1000.01"))

        rest = AsyncMock(return_value=RefundResult("rf-2", RefundStatus.SUCCEEDED, Decimal("1000.00")))
        with patch.object(YookassaProvider, "refund", rest):
            full = await engine.refund_payment(payment.id)

        assert rest.await_args.args[0].amount == Decimal("1000.00")
        assert full.status == PaymentStatus.REFUNDED.value
        assert full.refunded_amount == Decimal("1500.00")
        assert len(full.refunds) == 2

    @pytest.mark.asyncio
    async def test_refund_of_pending_payment_is_rejected(self, engine, config_service):
        await save_provider_config(config_service, "robokassa", ROBOKASSA_SETTINGS)
        payment = await engine.create_payment(CreatePaymentDto(
            entity_type="shop", entity_id=SHOP_ID, provider="robokassa", amount=Decimal("100"),
        ))
        with pytest.raises(InvalidStateTransitionError):
            await engine.refund_payment(payment.id)

    @pytest.mark.asyncio
    async def test_provider_without_refund_api(self, engine, config_service):
        await save_provider_config(config_service, "robokassa", ROBOKASSA_SETTINGS)
        payment = await engine.create_payment(CreatePaymentDto(
            entity_type="shop", entity_id=SHOP_ID, provider="robokassa", amount=Decimal("100"),
        ))
        await engine.handle_webhook("shop", SHOP_ID, "robokassa", _robokassa_result(payment, out_sum="100.00"))

        with pytest.raises(NotSupportedError):
            await engine.refund_payment(payment.id)
        assert (await engine.get_payment(payment.id)).refunded_amount == Decimal("0")

    @pytest.mark.asyncio
    async def test_rejected_refund_leaves_payment_untouched(self, engine, config_service):
        payment = await _succeeded_yookassa_payment(engine, config_service)
        with patch.object(YookassaProvider, "refund", AsyncMock(side_effect=RefundFailedError("no funds"))):
            with pytest.raises(RefundFailedError):
                await engine.refund_payment(payment.id, Decimal("100"))

        stored = await engine.get_payment(payment.id)
        assert stored.status == PaymentStatus.SUCCEEDED.value
        assert stored.refunded_amount == Decimal("0")
        assert stored.refunds == []

    @pytest.mark.asyncio
    async def test_other_users_cannot_refund(self, engine, config_service):
        payment = await _succeeded_yookassa_payment(engine, config_service)
        with pytest.raises(PaymentAccessDeniedError):
            await engine.refund_payment(payment.id, user_id="someone-else")

    @pytest.mark.asyncio
    async def test_cancel_pending(self, engine, config_service, recorder):
        await save_provider_config(config_service, "yookassa", YOOKASSA_SETTINGS)
        with patch.object(YookassaProvider, "_request", AsyncMock(return_value=_yookassa_reply())):
            payment = await engine.create_payment(CreatePaymentDto(
                entity_type="shop", entity_id=SHOP_ID, provider="yookassa", amount=Decimal("1500"),
            ))
        cancel = AsyncMock(return_value=PaymentStatusInfo("yk-1", PaymentStatus.CANCELED))
        with patch.object(YookassaProvider, "cancel_payment", cancel):
            canceled = await engine.cancel_payment(payment.id, reason="customer_request")

        assert canceled.status == PaymentStatus.CANCELED.value
        assert canceled.status_history[-1]["reason"] == "customer_request"
        assert recorder.types()[-1] == "payment.canceled"

        with pytest.raises(InvalidStateTransitionError):
            await engine.cancel_payment(payment.id)

    @pytest.mark.asyncio
    async def test_capture(self, engine, config_service):
        await save_provider_config(config_service, "yookassa", YOOKASSA_SETTINGS)
        with patch.object(YookassaProvider, "_request",
                          AsyncMock(return_value=_yookassa_reply(status="waiting_for_capture"))):
            payment = await engine.create_payment(CreatePaymentDto(
                entity_type="shop", entity_id=SHOP_ID, provider="yookassa", amount=Decimal("1500"),
            ))
        assert payment.status == PaymentStatus.WAITING_FOR_CAPTURE.value

        capture = AsyncMock(return_value=PaymentStatusInfo("yk-1", PaymentStatus.SUCCEEDED))
        with patch.object(YookassaProvider, "capture_payment", capture):
            captured = await engine.capture_payment(payment.id)
        assert captured.status == PaymentStatus.SUCCEEDED.value


class TestCryptoRail:

    async def _invoice(self, engine, config_service, amount="1500"):
        await save_provider_config(config_service, "crypto_trc20", CRYPTO_SETTINGS)
        return await engine.create_payment(CreatePaymentDto(
            entity_type="shop", entity_id=SHOP_ID, provider="crypto_trc20", amount=Decimal(amount),
        ))

    @staticmethod
    def _transfers(*items):
        return HttpResponse(200, orjson.dumps({"data": list(items), "success": True, "meta": {}}).decode())

    @staticmethod
    def _transfer(tx_id, value, when):
        return {
            "transaction_id": tx_id,
            "token_info": {"address": USDT_TESTNET_CONTRACT_ADDRESS, "decimals": 6},
            "block_timestamp": to_timestamp_ms(when),
            "from": "TPayerAddressXXXXXXXXXXXXXXXXXXXXX",
            "to": TRON_WALLET,
            "value": str(int(value * 10 ** 6)),
        }

    @pytest.mark.asyncio
    async def test_invoice_records_fiat_and_usdt(self, engine, config_service):
        payment = await self._invoice(engine, config_service)
        metadata = payment.payment_metadata

        assert payment.amount == Decimal("1500.00")
        assert payment.currency == "RUB"
        assert metadata["wallet_address"] == TRON_WALLET
        assert Decimal("16.6667") < Decimal(metadata["expected_amount"]) < Decimal("17.6667")
        assert payment.expires_at is not None

    @pytest.mark.asyncio
    async def test_concurrent_invoices_get_distinct_amounts(self, engine, config_service):
        first = await self._invoice(engine, config_service)
        second = await engine.create_payment(CreatePaymentDto(
            entity_type="shop", entity_id=SHOP_ID, provider="crypto_trc20", amount=Decimal("1500"),
        ))
        assert first.payment_metadata["expected_amount"] != second.payment_metadata["expected_amount"]

    @pytest.mark.asyncio
    async def test_matching_transfer_confirms(self, engine, config_service, recorder, clock):
        payment = await self._invoice(engine, config_service)
        expected = Decimal(payment.payment_metadata["expected_amount"])
        transfer = self._transfer("tx-abc", expected, clock.now + timedelta(minutes=5))
        clock.advance(minutes=6)

        with patch.object(CryptoTRC20Provider, "_request", AsyncMock(return_value=self._transfers(transfer))):
            confirmed = await engine.check_payment_status(payment.id)

        assert confirmed.status == PaymentStatus.SUCCEEDED.value
        assert confirmed.payment_metadata["transaction_id"] == "tx-abc"
        assert confirmed.status_history[-1]["reason"] == "crypto_transfer_confirmed"
        assert recorder.types()[-2:] == ["payment.succeeded", "crypto.payment.confirmed"]

    @pytest.mark.asyncio
    async def test_invoice_expires_after_deadline(self, engine, config_service, recorder, clock):
        payment = await self._invoice(engine, config_service)

        clock.advance(minutes=59)
        with patch.object(CryptoTRC20Provider, "_request", AsyncMock(return_value=self._transfers())):
            still_pending = await engine.check_payment_status(payment.id)
        assert still_pending.status == PaymentStatus.PENDING.value

        clock.advance(minutes=2)
        with patch.object(CryptoTRC20Provider, "_request", AsyncMock(return_value=self._transfers())):
            expired = await engine.check_payment_status(payment.id)

        assert expired.status == PaymentStatus.CANCELED.value
        assert expired.status_history[-1]["reason"] == "expired"
        assert recorder.types()[-2:] == ["payment.canceled", "crypto.payment.expired"]

    @pytest.mark.asyncio
    async def test_transfer_claimed_by_confirmed_invoice_is_not_reused(self, engine, config_service, clock):
        first = await self._invoice(engine, config_service)
        second = await engine.create_payment(CreatePaymentDto(
            entity_type="shop", entity_id=SHOP_ID, provider="crypto_trc20", amount=Decimal("1500"),
        ))
        expected = Decimal(first.payment_metadata["expected_amount"])
        transfer = self._transfer("tx-abc", expected, clock.now + timedelta(minutes=1))
        clock.advance(minutes=2)

        with patch.object(CryptoTRC20Provider, "_request", AsyncMock(return_value=self._transfers(transfer))):
            assert (await engine.check_payment_status(first.id)).status == PaymentStatus.SUCCEEDED.value
            assert (await engine.check_payment_status(second.id)).status == PaymentStatus.PENDING.value


class TestRobokassaInvoiceIds:

    @staticmethod
    def _robokassa_dto(key):
        return CreatePaymentDto(entity_type="shop", entity_id=SHOP_ID, provider="robokassa",
                                amount=Decimal("1500"), idempotency_key=key)

    @pytest.mark.asyncio
    async def test_taken_invoice_id_is_redrawn(self, engine, config_service):
        await save_provider_config(config_service, "robokassa", ROBOKASSA_SETTINGS)
        real = robokassa_provider.invoice_id_from_key

        def first_draw_collides(key, attempt=0):
            return "42" if attempt == 0 else real(key, attempt)

        with patch("services.providers.robokassa_provider.invoice_id_from_key", side_effect=first_draw_collides):
            first = await engine.create_payment(self._robokassa_dto("cart-a"))
            second = await engine.create_payment(self._robokassa_dto("cart-b"))

        assert first.external_id == "42"
        assert second.external_id == real("cart-b", 1)
        assert second.id != first.id
        assert f"InvId={second.external_id}" in second.payment_url
        assert await _count_payments() == 2

    @pytest.mark.asyncio
    async def test_exhausted_redraws_raise_a_provider_error(self, engine, config_service):
        await save_provider_config(config_service, "robokassa", ROBOKASSA_SETTINGS)

        with patch("services.providers.robokassa_provider.invoice_id_from_key", return_value="42") as minted:
            await engine.create_payment(self._robokassa_dto("cart-a"))
            with pytest.raises(ProviderError) as exc_info:
                await engine.create_payment(self._robokassa_dto("cart-b"))

        assert exc_info.value.code == PaymentErrorCode.PROVIDER_ERROR
        assert exc_info.value.provider == "robokassa"
        assert minted.call_count == 1 + MAX_EXTERNAL_ID_DRAWS
        assert await _count_payments() == 1

    @pytest.mark.asyncio
    async def test_replayed_key_after_redraw_returns_the_stored_invoice(self, engine, config_service):
        await save_provider_config(config_service, "robokassa", ROBOKASSA_SETTINGS)
        real = robokassa_provider.invoice_id_from_key

        def first_draw_collides(key, attempt=0):
            return "42" if attempt == 0 else real(key, attempt)

        with patch("services.providers.robokassa_provider.invoice_id_from_key", side_effect=first_draw_collides):
            await engine.create_payment(self._robokassa_dto("cart-a"))
            second = await engine.create_payment(self._robokassa_dto("cart-b"))
            replay = await engine.create_payment(self._robokassa_dto("cart-b"))

        assert replay.id == second.id
        assert replay.external_id == second.external_id


class TestConcurrentReconciliation:

    @pytest.mark.asyncio
    async def test_webhook_and_status_poll_apply_once(self, engine, config_service, recorder):
        await save_provider_config(config_service, "yookassa", YOOKASSA_SETTINGS)
        with patch.object(YookassaProvider, "_request", AsyncMock(return_value=_yookassa_reply())):
            payment = await engine.create_payment(CreatePaymentDto(
                entity_type="shop", entity_id=SHOP_ID, provider="yookassa", amount=Decimal("1500"),
            ))

        # Hold both callers until each has read the payment as pending
        arrived = []
        both_stale = asyncio.Event()
        transition = engine._transition

        async def transition_when_both_arrive(*args, **kwargs):
            arrived.append(args[0])
            if len(arrived) == 2:
                both_stale.set()
            await asyncio.wait_for(both_stale.wait(), timeout=5)
            return await transition(*args, **kwargs)

        notification = {"type": "notification", "event": "payment.succeeded", "object": {"id": "yk-1"}}
        with patch.object(YookassaProvider, "_request", AsyncMock(return_value=_yookassa_reply(status="succeeded"))), \
                patch.object(engine, "_transition", transition_when_both_arrive):
            from_webhook, from_poll = await asyncio.gather(
                engine.handle_webhook("shop", SHOP_ID, "yookassa", notification),
                engine.check_payment_status(payment.id, user_id=OWNER_ID),
            )

        assert arrived == [payment.id, payment.id]
        assert from_webhook.status == PaymentStatus.SUCCEEDED.value
        assert from_poll.status == PaymentStatus.SUCCEEDED.value

        stored = await engine.get_payment(payment.id)
        assert [h["status"] for h in stored.status_history] == ["pending", "succeeded"]
        assert recorder.types().count("payment.succeeded") == 1
