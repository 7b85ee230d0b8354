"""
Bridge between orders and the payment gateway.

A payer (signed in or a guest holding the order code) asks for a payment
intent, pays on the client with its secret, then confirms. Only the most
recent intent of an order can confirm it: requesting a new intent cancels
the pending one at the gateway first.
"""
from typing import Optional
from sqlalchemy.exc import SQLAlchemyError
from opentelemetry import trace
import json
import logging

from pharmacy_service.models.order import OrderStatus, PaymentStatus
from pharmacy_service.models.records import OrderRecord
from pharmacy_service.models.schemas import (
    CodeOrderItem,
    CreateIntentResponse,
    OrderByCodeResponse,
    PaymentConfirmation,
    PersonDetails,
)
from pharmacy_service.services import events
from pharmacy_service.services.auth import GUEST_ACTOR
from pharmacy_service.services.notifications import ORDER_CODE_LENGTH, NotificationDispatcher
from pharmacy_service.services.order_repository import OrderRepository
from pharmacy_service.services.payment_gateway import (
    INTENT_SUCCEEDED,
    PaymentGateway,
    PaymentGatewayError,
    WebhookSignatureError,
    release_intent,
    verify_webhook_signature,
)
from pharmacy_service.services.results import ErrorKind, OperationResult

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


class PaymentBridge:
    """Payment intents and confirmation for orders"""

    def __init__(
        self,
        orders: OrderRepository,
        gateway: PaymentGateway,
        notifier: NotificationDispatcher,
        broadcaster: events.EventBroadcaster,
        webhook_secret: Optional[str] = None,
        currency: str = "usd",
    ):
        self.orders = orders
        self.gateway = gateway
        self.notifier = notifier
        self.broadcaster = broadcaster
        self.webhook_secret = webhook_secret
        self.currency = currency

    async def get_order_by_code(self, code: Optional[str]) -> OperationResult:
        """Order summary shown on the pay-by-link page"""
        with tracer.start_as_current_span("payment_bridge.get_order_by_code") as span:
            if not code or len(code) != ORDER_CODE_LENGTH:
                return OperationResult.fail(ErrorKind.VALIDATION, "Order code must be 4 characters")

            span.set_attribute("order.code", code)
            try:
                order = self.orders.get_by_code(code)
            except SQLAlchemyError as e:
                logger.error(f"Order lookup by code failed: {e}", exc_info=True)
                return OperationResult.fail(ErrorKind.INTERNAL, "Something went wrong!")

            if order is None:
                return OperationResult.fail(ErrorKind.NOT_FOUND, "Order not found")

            items = [
                CodeOrderItem(
                    product_id=item.product_id,
                    name=item.product_name,
                    medicine_code=item.medicine_code,
                    product_price=item.price,
                    quantity=item.quantity,
                    total_sub_price=item.subtotal,
                )
                for item in order.items
            ]

            placed_by = None
            if order.user:
                placed_by = PersonDetails(
                    name=order.user.name, email=order.user.email, contact=order.user.phone
                )
            patient = None
            if order.patient:
                patient = PersonDetails(
                    name=order.patient.name,
                    email=order.patient.email,
                    contact=order.patient.phone,
                    birth_date=order.patient.birth_date,
                )

            return OperationResult.ok(OrderByCodeResponse(
                order_id=order.id,
                code=order.code,
                status=order.status,
                prescription_url=order.prescription_url,
                items=items,
                total_sub_amount=round(sum(item.total_sub_price for item in items), 2),
                delivery_price=order.delivery_price,
                total_amount=order.total_price,
                is_paid=bool(order.payment and order.payment.status == PaymentStatus.PAID),
                order_placed_by=placed_by,
                patient_details=patient,
            ))

    async def create_intent(
        self, order_code: str, payer_id: str = GUEST_ACTOR, payer_name: Optional[str] = None
    ) -> OperationResult:
        with tracer.start_as_current_span("payment_bridge.create_intent") as span:
            span.set_attribute("order.code", order_code)
            try:
                order = self.orders.get_by_code(order_code)
            except SQLAlchemyError as e:
                logger.error(f"Order lookup by code failed: {e}", exc_info=True)
                return OperationResult.fail(ErrorKind.INTERNAL, "Failed to create payment intent")

            if order is None:
                return OperationResult.fail(ErrorKind.NOT_FOUND, "Invalid order code.")
            if order.status == OrderStatus.PAID:
                return OperationResult.fail(ErrorKind.INVALID_STATE, "This order is already paid.")
            if order.status != OrderStatus.CREATED:
                return OperationResult.fail(
                    ErrorKind.INVALID_STATE,
                    f"Order cannot be paid (current status: {order.status.value})",
                )

            previous = order.payment
            try:
                if previous and previous.status == PaymentStatus.PENDING and previous.payment_intent_id:
                    await release_intent(self.gateway, previous.payment_intent_id)
                    # Recorded at once so a failed retry never cancels it twice
                    self.orders.set_payment_status(
                        order.id, previous.payment_intent_id, PaymentStatus.CANCELLED
                    )
                    logger.info(f"Superseded payment intent {previous.payment_intent_id} for order {order.id}")

                amount_cents = int(round(order.total_price * 100))
                intent = await self.gateway.create_intent(
                    amount_cents,
                    self.currency,
                    {"orderId": order.id, "orderCode": order.code, "paymentBy": payer_id},
                )
            except PaymentGatewayError as e:
                return OperationResult.fail(ErrorKind.UPSTREAM, e.message, status_code=e.status_code)
            except SQLAlchemyError as e:
                logger.error(f"Recording superseded intent for order {order.id} failed: {e}", exc_info=True)
                return OperationResult.fail(ErrorKind.INTERNAL, "Failed to create payment intent")

            span.set_attribute("payment.intent_id", intent.id)
            try:
                self.orders.save_payment_intent(
                    order.id,
                    intent.id,
                    intent.client_secret,
                    order.total_price,
                    payer_id=payer_id,
                    payer_name=payer_name or "Guest",
                )
            except SQLAlchemyError as e:
                logger.error(f"Storing payment intent {intent.id} failed: {e}", exc_info=True)
                return OperationResult.fail(ErrorKind.INTERNAL, "Failed to create payment intent")

            logger.info(f"Payment intent {intent.id} created for order {order.id}")
            return OperationResult.ok(
                CreateIntentResponse(client_secret=intent.client_secret, amount=order.total_price)
            )

    async def confirm_intent(
        self, intent_id: str, payer_id: str = GUEST_ACTOR, payer_name: Optional[str] = None
    ) -> OperationResult:
        """Mark the order paid once the gateway reports the intent succeeded.

        Confirming the same intent twice returns the same payload.
        """
        with tracer.start_as_current_span("payment_bridge.confirm_intent") as span:
            span.set_attribute("payment.intent_id", intent_id)
            try:
                order = self.orders.get_by_payment_intent(intent_id)
            except SQLAlchemyError as e:
                logger.error(f"Order lookup by intent failed: {e}", exc_info=True)
                return OperationResult.fail(ErrorKind.INTERNAL, "Failed to confirm payment")

            if order is None:
                return await self._unknown_intent(intent_id)

            if self._paid_through(order, intent_id):
                return OperationResult.ok(self._confirmation(order))

            if order.status != OrderStatus.CREATED:
                return OperationResult.fail(
                    ErrorKind.INVALID_STATE,
                    f"Order cannot be paid (current status: {order.status.value})",
                )

            try:
                intent = await self.gateway.retrieve_intent(intent_id)
            except PaymentGatewayError as e:
                return OperationResult.fail(ErrorKind.UPSTREAM, e.message, status_code=e.status_code)

            if intent.status != INTENT_SUCCEEDED:
                return OperationResult.fail(
                    ErrorKind.INVALID_STATE, f"Payment not completed (status: {intent.status})"
                )

            try:
                updated = self.orders.transition(
                    order.id,
                    (OrderStatus.CREATED,),
                    OrderStatus.PAID,
                    actor_id=payer_id,
                    comment="Payment confirmed",
                    payment_status=PaymentStatus.PAID,
                    payer_name=payer_name,
                )
                if updated is None:
                    # Lost a race with another confirmation of the same intent
                    current = self.orders.get_by_payment_intent(intent_id)
                    if current and self._paid_through(current, intent_id):
                        return OperationResult.ok(self._confirmation(current))
                    return OperationResult.fail(ErrorKind.INVALID_STATE, "Order cannot be paid")
            except SQLAlchemyError as e:
                logger.error(f"Marking order {order.id} paid failed: {e}", exc_info=True)
                return OperationResult.fail(ErrorKind.INTERNAL, "Failed to confirm payment")

            logger.info(f"Order {order.id} paid through {intent_id} by {payer_id}")
            await self.broadcaster.publish(
                events.PAYMENT,
                {"orderId": updated.id, "orderCode": updated.code, "status": updated.status.value},
            )
            await self.notifier.order_paid(updated)
            return OperationResult.ok(self._confirmation(updated))

    async def _unknown_intent(self, intent_id: str) -> OperationResult:
        """Tell a superseded intent apart from one we never issued"""
        try:
            intent = await self.gateway.retrieve_intent(intent_id)
        except PaymentGatewayError as e:
            logger.info(f"Intent {intent_id} unknown to the gateway: {e.message}")
            return OperationResult.fail(ErrorKind.NOT_FOUND, "Order not found for this payment.")

        order_id = intent.metadata.get("orderId")
        if order_id and self.orders.get_by_id(order_id) is not None:
            logger.warning(f"Intent {intent_id} was superseded for order {order_id}")
            return OperationResult.fail(
                ErrorKind.INVALID_STATE, "This payment was replaced by a newer payment request."
            )
        return OperationResult.fail(ErrorKind.NOT_FOUND, "Order not found for this payment.")

    @staticmethod
    def _paid_through(order: OrderRecord, intent_id: str) -> bool:
        payment = order.payment
        return bool(
            payment
            and payment.payment_intent_id == intent_id
            and payment.status == PaymentStatus.PAID
        )

    @staticmethod
    def _confirmation(order: OrderRecord) -> PaymentConfirmation:
        return PaymentConfirmation(order_id=order.id, order_code=order.code, status=order.status)

    async def handle_webhook(self, payload: bytes, signature: Optional[str]) -> OperationResult:
        with tracer.start_as_current_span("payment_bridge.handle_webhook") as span:
            if not self.webhook_secret:
                logger.error("Webhook received but no webhook secret is configured")
                return OperationResult.fail(ErrorKind.INTERNAL, "Webhook secret not configured")

            try:
                verify_webhook_signature(payload, signature, self.webhook_secret)
                event = json.loads(payload)
            except WebhookSignatureError as e:
                logger.warning(f"Webhook signature verification failed: {e}")
                return OperationResult.fail(ErrorKind.VALIDATION, f"Webhook Error: {e}")
            except ValueError:
                return OperationResult.fail(ErrorKind.VALIDATION, "Webhook Error: invalid payload")

            event_type = event.get("type")
            span.set_attribute("webhook.event_type", event_type or "")
            intent = (event.get("data") or {}).get("object") or {}

            if event_type == "payment_intent.succeeded":
                payer_id = (intent.get("metadata") or {}).get("paymentBy") or GUEST_ACTOR
                result = await self.confirm_intent(intent.get("id", ""), payer_id)
                if not result.success:
                    if result.error in (ErrorKind.UPSTREAM, ErrorKind.INTERNAL):
                        return result
                    logger.warning(f"Webhook confirmation of {intent.get('id')} skipped: {result.message}")
                return OperationResult.ok(message="received")

            if event_type == "payment_intent.payment_failed":
                logger.warning(f"Payment failed for intent {intent.get('id')}")
            else:
                logger.info(f"Ignoring webhook event {event_type}")
            return OperationResult.ok(message="received")
