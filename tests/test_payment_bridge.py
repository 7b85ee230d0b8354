"""Payment bridge against the fake gateway"""
from datetime import datetime
import hashlib
import hmac
import json
import time
import uuid

import pytest

from fakes import FakeEmailSender, FakeEvents, FakeGateway, FakeSmsSender, InMemoryOrderRepository
from pharmacy_service.models.order import OrderStatus, PaymentStatus
from pharmacy_service.models.records import ContactRecord, OrderItemRecord, OrderRecord
from pharmacy_service.services import events as event_names
from pharmacy_service.services.auth import GUEST_ACTOR
from pharmacy_service.services.notifications import NotificationDispatcher
from pharmacy_service.services.payment_bridge import PaymentBridge
from pharmacy_service.services.payment_gateway import PaymentGatewayError
from pharmacy_service.services.results import ErrorKind

WEBHOOK_SECRET = "whsec_unit"


class Harness:
    def __init__(self):
        self.orders = InMemoryOrderRepository()
        self.gateway = FakeGateway()
        self.email = FakeEmailSender()
        self.events = FakeEvents()
        notifier = NotificationDispatcher(self.email, FakeSmsSender(), "https://pay.example.com")
        self.bridge = PaymentBridge(
            self.orders, self.gateway, notifier, self.events, webhook_secret=WEBHOOK_SECRET
        )

    def seed_order(self, code="AB12", status=OrderStatus.CREATED, total=38.0) -> OrderRecord:
        return self.orders.add(OrderRecord(
            id=str(uuid.uuid4()),
            code=code,
            user_id="user-1",
            status=status,
            product_cost=total - 9.0,
            delivery_price=9.0,
            total_price=total,
            created_at=datetime.utcnow(),
            items=[OrderItemRecord(
                product_id="p1", product_name="Ibuprofen", medicine_code="IBU-200",
                quantity=2, price=14.5, subtotal=29.0,
            )],
            user=ContactRecord(id="user-1", name="Lia", email="lia@example.com", phone="+13055550100"),
        ))

    async def pay(self, code="AB12", payer_id="user-1") -> str:
        """Create an intent and have the gateway report it succeeded"""
        await self.bridge.create_intent(code, payer_id=payer_id)
        intent_id = self.orders.get_by_code(code).payment.payment_intent_id
        self.gateway.succeed(intent_id)
        return intent_id


@pytest.fixture
def harness():
    return Harness()


def signed(payload: bytes, secret: str = WEBHOOK_SECRET, timestamp: int = None) -> str:
    timestamp = int(time.time()) if timestamp is None else timestamp
    digest = hmac.new(secret.encode(), f"{timestamp}.".encode() + payload, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


class TestOrderByCode:
    @pytest.mark.asyncio
    async def test_summary(self, harness):
        order = harness.seed_order()

        result = await harness.bridge.get_order_by_code("AB12")

        assert result.success
        summary = result.data
        assert summary.order_id == order.id
        assert summary.total_sub_amount == 29.0
        assert summary.total_amount == 38.0
        assert summary.is_paid is False
        assert summary.order_placed_by.email == "lia@example.com"
        assert summary.items[0].name == "Ibuprofen"

    @pytest.mark.asyncio
    async def test_three_character_code_is_rejected_without_lookup(self, harness):
        harness.orders.get_by_code = None

        result = await harness.bridge.get_order_by_code("AB1")

        assert result.error == ErrorKind.VALIDATION

    @pytest.mark.asyncio
    async def test_unknown_code(self, harness):
        result = await harness.bridge.get_order_by_code("ZZZZ")
        assert result.error == ErrorKind.NOT_FOUND


class TestCreateIntent:
    @pytest.mark.asyncio
    async def test_amount_in_cents_and_metadata(self, harness):
        order = harness.seed_order(total=38.45)

        result = await harness.bridge.create_intent("AB12", payer_id="user-1", payer_name="Lia")

        assert result.success
        assert result.data.client_secret == "pi_1_secret"
        assert result.data.amount == 38.45
        intent = harness.gateway.intents["pi_1"]
        assert intent.amount == 3845
        assert intent.metadata == {"orderId": order.id, "orderCode": "AB12", "paymentBy": "user-1"}

        payment = harness.orders.get_by_id(order.id).payment
        assert payment.payment_intent_id == "pi_1"
        assert payment.status == PaymentStatus.PENDING
        assert payment.payer_name == "Lia"

    @pytest.mark.asyncio
    async def test_guest_payer(self, harness):
        order = harness.seed_order()

        await harness.bridge.create_intent("AB12")

        payment = harness.orders.get_by_id(order.id).payment
        assert payment.payer_id == GUEST_ACTOR
        assert payment.payer_name == "Guest"

    @pytest.mark.asyncio
    async def test_unknown_code(self, harness):
        result = await harness.bridge.create_intent("NOPE")
        assert result.error == ErrorKind.NOT_FOUND
        assert result.message == "Invalid order code."

    @pytest.mark.asyncio
    async def test_paid_order(self, harness):
        harness.seed_order(status=OrderStatus.PAID)

        result = await harness.bridge.create_intent("AB12")

        assert result.error == ErrorKind.INVALID_STATE
        assert result.message == "This order is already paid."
        assert harness.gateway.calls == []

    @pytest.mark.asyncio
    async def test_cancelled_order(self, harness):
        harness.seed_order(status=OrderStatus.CANCELLED)
        result = await harness.bridge.create_intent("AB12")
        assert result.error == ErrorKind.INVALID_STATE

    @pytest.mark.asyncio
    async def test_new_intent_supersedes_pending_one(self, harness):
        order = harness.seed_order()

        await harness.bridge.create_intent("AB12")
        await harness.bridge.create_intent("AB12")

        assert harness.gateway.cancelled == ["pi_1"]
        assert harness.orders.get_by_id(order.id).payment.payment_intent_id == "pi_2"

    @pytest.mark.asyncio
    async def test_failed_replacement_can_be_retried(self, harness):
        order = harness.seed_order()
        await harness.bridge.create_intent("AB12")
        harness.gateway.errors["create_intent"] = PaymentGatewayError(502, "Payment provider is unreachable")

        failed = await harness.bridge.create_intent("AB12")

        assert failed.status_code == 502
        payment = harness.orders.get_by_id(order.id).payment
        assert (payment.payment_intent_id, payment.status) == ("pi_1", PaymentStatus.CANCELLED)

        del harness.gateway.errors["create_intent"]
        for _ in range(2):
            retried = await harness.bridge.create_intent("AB12")
            assert retried.success, retried.message

        assert harness.gateway.cancelled == ["pi_1", "pi_2"]
        payment = harness.orders.get_by_id(order.id).payment
        assert (payment.payment_intent_id, payment.status) == ("pi_3", PaymentStatus.PENDING)

    @pytest.mark.asyncio
    async def test_intent_already_cancelled_at_gateway_is_replaced(self, harness):
        order = harness.seed_order()
        await harness.bridge.create_intent("AB12")
        harness.gateway.intents["pi_1"].status = "canceled"

        result = await harness.bridge.create_intent("AB12")

        assert result.success
        assert harness.orders.get_by_id(order.id).payment.payment_intent_id == "pi_2"

    @pytest.mark.asyncio
    async def test_paid_intent_is_not_replaced(self, harness):
        order = harness.seed_order()
        intent_id = await harness.pay()

        result = await harness.bridge.create_intent("AB12")

        assert result.error == ErrorKind.UPSTREAM
        assert result.status_code == 400
        payment = harness.orders.get_by_id(order.id).payment
        assert (payment.payment_intent_id, payment.status) == (intent_id, PaymentStatus.PENDING)
        assert (await harness.bridge.confirm_intent(intent_id)).success

    @pytest.mark.asyncio
    async def test_gateway_error_passes_through(self, harness):
        harness.seed_order()
        harness.gateway.errors["create_intent"] = PaymentGatewayError(400, "Amount must be at least $0.50 usd")

        result = await harness.bridge.create_intent("AB12")

        assert result.error == ErrorKind.UPSTREAM
        assert result.status_code == 400
        assert result.message == "Amount must be at least $0.50 usd"


class TestConfirmIntent:
    @pytest.mark.asyncio
    async def test_marks_order_paid(self, harness):
        order = harness.seed_order()
        intent_id = await harness.pay()

        result = await harness.bridge.confirm_intent(intent_id, payer_id="user-1", payer_name="Lia")

        assert result.success
        assert result.data.order_id == order.id
        assert result.data.status == OrderStatus.PAID
        stored = harness.orders.get_by_id(order.id)
        assert stored.status == OrderStatus.PAID
        assert stored.payment.status == PaymentStatus.PAID
        assert stored.status_changes[-1].changed_by == "user-1"
        assert harness.events.names() == [event_names.PAYMENT]
        assert harness.email.sent[-1]["subject"] == "Your order has been paid!"

    @pytest.mark.asyncio
    async def test_confirm_is_idempotent(self, harness):
        harness.seed_order()
        intent_id = await harness.pay()

        first = await harness.bridge.confirm_intent(intent_id)
        second = await harness.bridge.confirm_intent(intent_id)

        assert first.success and second.success
        assert first.data == second.data
        assert harness.events.names() == [event_names.PAYMENT]
        assert harness.orders.transition_calls == 1

    @pytest.mark.asyncio
    async def test_repeat_confirmation_reports_current_status(self, harness):
        order = harness.seed_order()
        intent_id = await harness.pay()
        await harness.bridge.confirm_intent(intent_id)
        harness.orders.transition(order.id, (OrderStatus.PAID,), OrderStatus.FULFILLED, "staff-1")

        result = await harness.bridge.confirm_intent(intent_id)

        assert result.success
        assert result.data.status == OrderStatus.FULFILLED

    @pytest.mark.asyncio
    async def test_guest_confirmation_is_attributed_to_guest(self, harness):
        order = harness.seed_order()
        intent_id = await harness.pay(payer_id=GUEST_ACTOR)

        await harness.bridge.confirm_intent(intent_id)

        assert harness.orders.get_by_id(order.id).status_changes[-1].changed_by == GUEST_ACTOR

    @pytest.mark.asyncio
    async def test_unfinished_intent(self, harness):
        harness.seed_order()
        await harness.bridge.create_intent("AB12")

        result = await harness.bridge.confirm_intent("pi_1")

        assert result.error == ErrorKind.INVALID_STATE
        assert "requires_payment_method" in result.message

    @pytest.mark.asyncio
    async def test_superseded_intent_cannot_confirm(self, harness):
        order = harness.seed_order()
        await harness.bridge.create_intent("AB12")
        await harness.bridge.create_intent("AB12")
        harness.gateway.succeed("pi_1")

        result = await harness.bridge.confirm_intent("pi_1")

        assert result.error == ErrorKind.INVALID_STATE
        assert harness.orders.get_by_id(order.id).status == OrderStatus.CREATED

    @pytest.mark.asyncio
    async def test_unknown_intent(self, harness):
        result = await harness.bridge.confirm_intent("pi_missing")
        assert result.error == ErrorKind.NOT_FOUND

    @pytest.mark.asyncio
    async def test_gateway_error_passes_through(self, harness):
        harness.seed_order()
        await harness.bridge.create_intent("AB12")
        harness.gateway.errors["retrieve_intent"] = PaymentGatewayError(503, "Stripe is down")

        result = await harness.bridge.confirm_intent("pi_1")

        assert result.error == ErrorKind.UPSTREAM
        assert result.status_code == 503

    @pytest.mark.asyncio
    async def test_cancelled_order_cannot_be_paid(self, harness):
        order = harness.seed_order()
        intent_id = await harness.pay()
        harness.orders.transition(order.id, (OrderStatus.CREATED,), OrderStatus.CANCELLED, "user-1")

        result = await harness.bridge.confirm_intent(intent_id)

        assert result.error == ErrorKind.INVALID_STATE
        assert harness.orders.get_by_id(order.id).status == OrderStatus.CANCELLED


class TestWebhook:
    @staticmethod
    def event(event_type: str, intent_id: str, payment_by: str = "user-1") -> bytes:
        return json.dumps({
            "type": event_type,
            "data": {"object": {"id": intent_id, "metadata": {"paymentBy": payment_by}}},
        }).encode()

    @pytest.mark.asyncio
    async def test_succeeded_event_marks_order_paid(self, harness):
        order = harness.seed_order()
        intent_id = await harness.pay()
        payload = self.event("payment_intent.succeeded", intent_id)

        result = await harness.bridge.handle_webhook(payload, signed(payload))

        assert result.success
        assert harness.orders.get_by_id(order.id).status == OrderStatus.PAID

    @pytest.mark.asyncio
    async def test_replayed_event_is_acknowledged(self, harness):
        harness.seed_order()
        intent_id = await harness.pay()
        payload = self.event("payment_intent.succeeded", intent_id)

        await harness.bridge.handle_webhook(payload, signed(payload))
        result = await harness.bridge.handle_webhook(payload, signed(payload))

        assert result.success
        assert harness.events.names() == [event_names.PAYMENT]

    @pytest.mark.asyncio
    async def test_bad_signature(self, harness):
        payload = self.event("payment_intent.succeeded", "pi_1")

        result = await harness.bridge.handle_webhook(payload, signed(payload, secret="whsec_other"))

        assert result.error == ErrorKind.VALIDATION
        assert result.message.startswith("Webhook Error:")

    @pytest.mark.asyncio
    async def test_missing_signature(self, harness):
        result = await harness.bridge.handle_webhook(b"{}", None)
        assert result.error == ErrorKind.VALIDATION

    @pytest.mark.asyncio
    async def test_other_events_are_ignored(self, harness):
        payload = self.event("charge.refunded", "pi_1")

        result = await harness.bridge.handle_webhook(payload, signed(payload))

        assert result.success
        assert harness.gateway.calls == []

    @pytest.mark.asyncio
    async def test_no_secret_configured(self, harness):
        harness.bridge.webhook_secret = None
        result = await harness.bridge.handle_webhook(b"{}", "t=1,v1=abc")
        assert result.error == ErrorKind.INTERNAL
