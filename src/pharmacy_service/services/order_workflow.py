"""
Order business logic: checkout and the order status workflow

    CREATED --pay--> PAID --fulfill--> FULFILLED
                      |---refund--> REFUNDED
                      |---reject--> REJECTED
    CREATED / PAID --cancel--> CANCELLED

Every operation takes the caller's AuthContext and returns an
OperationResult. Role checks happen before anything is read, and every
status change is a conditional update so that two concurrent staff
actions on the same order cannot both succeed.
"""
from dataclasses import dataclass
from typing import Dict, List, Optional
from pydantic import TypeAdapter, ValidationError
from sqlalchemy.exc import SQLAlchemyError
from opentelemetry import trace
import json
import logging
import secrets
import string

from pharmacy_service.config import settings
from pharmacy_service.models.order import OrderStatus, PaymentStatus
from pharmacy_service.models.product import Availability
from pharmacy_service.models.records import NewOrder, OrderItemRecord, OrderRecord
from pharmacy_service.models.schemas import OrderItemInput, OrderPlacedResponse
from pharmacy_service.models.user import Role
from pharmacy_service.services import events
from pharmacy_service.services.auth import AuthContext
from pharmacy_service.services.notifications import NotificationDispatcher
from pharmacy_service.services.order_repository import CatalogRepository, OrderRepository
from pharmacy_service.services.payment_gateway import PaymentGateway, PaymentGatewayError, release_intent
from pharmacy_service.services.results import ErrorKind, OperationResult, field_errors
from pharmacy_service.services.storage import ObjectStorage, StorageError

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

CUSTOMER_ROLES = (Role.USER, Role.DOCTOR)
STAFF_ROLES = (Role.ADMIN, Role.PHARMACY_STAFF)

CODE_ALPHABET = string.ascii_uppercase + string.digits
CODE_LENGTH = 4
CODE_ATTEMPTS = 20

# Allowed source states for each transition
TRANSITIONS: Dict[OrderStatus, tuple] = {
    OrderStatus.PAID: (OrderStatus.CREATED,),
    OrderStatus.FULFILLED: (OrderStatus.PAID,),
    OrderStatus.REFUNDED: (OrderStatus.PAID,),
    OrderStatus.REJECTED: (OrderStatus.PAID,),
    OrderStatus.CANCELLED: (OrderStatus.CREATED, OrderStatus.PAID),
}

_items_adapter = TypeAdapter(List[OrderItemInput])


@dataclass
class PrescriptionFile:
    content: bytes
    content_type: Optional[str] = None
    filename: Optional[str] = None


@dataclass
class OrderDraft:
    """Checkout form as submitted; items is the raw JSON list"""
    delivery_address_id: Optional[str]
    items: Optional[str]
    patient_id: Optional[str] = None
    prescription: Optional[PrescriptionFile] = None


def delivery_price(province: Optional[str], total_weight: float) -> float:
    """Flat rate by province plus a surcharge per pound above the free weight"""
    if (province or "").strip().lower() == "la habana":
        price = settings.delivery_base_price_havana
    else:
        price = settings.delivery_base_price_other

    extra_weight = max(0.0, total_weight - settings.delivery_free_weight_lbs)
    return round(price + extra_weight * settings.delivery_price_per_extra_lb, 2)


def generate_order_code() -> str:
    return "".join(secrets.choice(CODE_ALPHABET) for _ in range(CODE_LENGTH))


def parse_status_filter(status: Optional[str]) -> OperationResult:
    """Turn a ?status= value into an OrderStatus; ALL or empty means no filter"""
    if not status or status.upper() == "ALL":
        return OperationResult.ok(None)
    try:
        return OperationResult.ok(OrderStatus(status.upper()))
    except ValueError:
        return OperationResult.fail(ErrorKind.VALIDATION, f"Unknown order status: {status}")


class OrderWorkflow:
    """Order workflow over the repository, gateway and notification seams"""

    def __init__(
        self,
        orders: OrderRepository,
        catalog: CatalogRepository,
        gateway: PaymentGateway,
        storage: ObjectStorage,
        notifier: NotificationDispatcher,
        broadcaster: events.EventBroadcaster,
    ):
        self.orders = orders
        self.catalog = catalog
        self.gateway = gateway
        self.storage = storage
        self.notifier = notifier
        self.broadcaster = broadcaster

    @staticmethod
    def _forbidden() -> OperationResult:
        return OperationResult.fail(ErrorKind.FORBIDDEN, "Unauthorized")

    @staticmethod
    def _storage_failure(operation: str, error: Exception) -> OperationResult:
        logger.error(f"{operation} failed: {error}", exc_info=True)
        return OperationResult.fail(ErrorKind.INTERNAL, f"Failed to {operation}")

    # Checkout

    async def create_order(self, ctx: Optional[AuthContext], draft: OrderDraft) -> OperationResult:
        with tracer.start_as_current_span("order_workflow.create_order") as span:
            if ctx is None or not ctx.has_role(CUSTOMER_ROLES):
                return self._forbidden()

            span.set_attribute("user.id", ctx.user_id)

            if not draft.delivery_address_id or not draft.items:
                return OperationResult.fail(ErrorKind.VALIDATION, "Missing delivery address or items")

            try:
                items = _items_adapter.validate_python(json.loads(draft.items))
            except json.JSONDecodeError:
                return OperationResult.fail(ErrorKind.VALIDATION, "Items must be a JSON list")
            except ValidationError as e:
                return OperationResult.fail(
                    ErrorKind.VALIDATION, "Invalid order items", details=field_errors(e)
                )

            if not items:
                return OperationResult.fail(ErrorKind.VALIDATION, "Order must contain at least one item")

            span.set_attribute("items.count", len(items))

            try:
                return await self._place(ctx, draft, items, span)
            except SQLAlchemyError as e:
                return self._storage_failure("create order", e)

    async def _place(self, ctx: AuthContext, draft: OrderDraft, items, span) -> OperationResult:
        patient = None
        if ctx.role == Role.DOCTOR:
            if not draft.patient_id:
                return OperationResult.fail(ErrorKind.VALIDATION, "Patient is required for doctor orders")
            patient = self.catalog.get_patient(draft.patient_id)
            if patient is None or patient.doctor_id != ctx.user_id:
                return OperationResult.fail(ErrorKind.VALIDATION, "Patient not found")

        address = self.catalog.get_address(draft.delivery_address_id)
        owners = {ctx.user_id, patient.id if patient else None}
        if address is None or not ({address.user_id, address.patient_id} & (owners - {None})):
            return OperationResult.fail(ErrorKind.VALIDATION, "Delivery address not found")

        products = {p.id: p for p in self.catalog.get_products(item.product_id for item in items)}
        missing = sorted({item.product_id for item in items} - set(products))
        if missing:
            return OperationResult.fail(
                ErrorKind.VALIDATION, f"Products not found: {', '.join(missing)}"
            )

        lines = []
        product_cost = 0.0
        total_weight = 0.0
        needs_prescription = False
        for item in items:
            product = products[item.product_id]
            if product.availability == Availability.OUT_OF_STOCK:
                return OperationResult.fail(ErrorKind.VALIDATION, f"{product.name} is out of stock")

            subtotal = product.price * item.quantity
            product_cost += subtotal
            total_weight += product.weight * item.quantity
            needs_prescription = needs_prescription or product.requires_prescription
            lines.append(OrderItemRecord(
                product_id=product.id,
                product_name=product.name,
                medicine_code=product.medicine_code,
                quantity=item.quantity,
                price=product.price,
                subtotal=round(subtotal, 2),
            ))

        product_cost = round(product_cost, 2)
        total_weight = round(total_weight, 2)
        delivery = delivery_price(address.province, total_weight)
        total = round(product_cost + delivery, 2)
        span.set_attribute("order.total_price", total)

        prescription_url = None
        if needs_prescription:
            if draft.prescription is None or not draft.prescription.content:
                return OperationResult.fail(
                    ErrorKind.VALIDATION, "A prescription is required for one or more products"
                )
            try:
                prescription_url = await self.storage.upload(
                    "prescriptions",
                    draft.prescription.content,
                    draft.prescription.content_type,
                )
            except StorageError as e:
                logger.error(f"Prescription upload failed: {e}")
                return OperationResult.fail(ErrorKind.UPSTREAM, "Failed to upload prescription")

        code = self._unique_code()
        if code is None:
            return OperationResult.fail(ErrorKind.INTERNAL, "Could not allocate an order code")

        order = self.orders.create(NewOrder(
            code=code,
            user_id=ctx.user_id,
            patient_id=patient.id if patient else None,
            delivery_address_id=address.id,
            product_cost=product_cost,
            delivery_price=delivery,
            total_weight=total_weight,
            total_price=total,
            prescription_url=prescription_url,
            items=lines,
            placed_by=ctx.user_id,
        ))
        span.set_attribute("order.id", order.id)
        logger.info(f"Order {order.id} placed by {ctx.user_id} with code {order.code}")

        await self.broadcaster.publish(events.NEW_ORDER, order)
        await self.notifier.order_placed(order)

        return OperationResult.ok(OrderPlacedResponse(
            order_id=order.id,
            order_code=order.code,
            date=order.created_at,
            total_product_cost=order.product_cost,
            delivery_cost=order.delivery_price,
            total_weight=order.total_weight,
            total_price=order.total_price,
        ))

    def _unique_code(self) -> Optional[str]:
        for _ in range(CODE_ATTEMPTS):
            code = generate_order_code()
            if not self.orders.code_exists(code):
                return code
            logger.info(f"Order code {code} already taken, retrying")
        return None

    # Reads

    async def get_order(self, ctx: Optional[AuthContext], order_id: str) -> OperationResult:
        with tracer.start_as_current_span("order_workflow.get_order") as span:
            span.set_attribute("order.id", order_id)
            if ctx is None:
                return self._forbidden()
            try:
                order = self.orders.get_by_id(order_id)
            except SQLAlchemyError as e:
                return self._storage_failure("fetch order", e)
            if order is None:
                return OperationResult.fail(ErrorKind.NOT_FOUND, "Order not found")
            return OperationResult.ok(order)

    async def list_orders(self, ctx: Optional[AuthContext], status: Optional[str] = "ALL") -> OperationResult:
        """All orders, newest first (staff only)"""
        with tracer.start_as_current_span("order_workflow.list_orders"):
            if ctx is None or not ctx.has_role(STAFF_ROLES):
                return self._forbidden()
            parsed = parse_status_filter(status)
            if not parsed.success:
                return parsed
            try:
                return OperationResult.ok(self.orders.list_orders(status=parsed.data))
            except SQLAlchemyError as e:
                return self._storage_failure("fetch orders", e)

    async def list_paid_orders(self, ctx: Optional[AuthContext]) -> OperationResult:
        return await self.list_orders(ctx, OrderStatus.PAID.value)

    async def list_user_orders(self, ctx: Optional[AuthContext], status: Optional[str] = "ALL") -> OperationResult:
        """The caller's own orders"""
        with tracer.start_as_current_span("order_workflow.list_user_orders"):
            if ctx is None or not ctx.has_role(CUSTOMER_ROLES):
                return self._forbidden()
            parsed = parse_status_filter(status)
            if not parsed.success:
                return parsed
            try:
                return OperationResult.ok(
                    self.orders.list_orders(status=parsed.data, user_id=ctx.user_id)
                )
            except SQLAlchemyError as e:
                return self._storage_failure("fetch orders", e)

    # Staff actions

    async def fulfill(self, ctx: Optional[AuthContext], order_id: str) -> OperationResult:
        return await self._staff_action(ctx, order_id, OrderStatus.FULFILLED, None)

    async def refund(self, ctx: Optional[AuthContext], order_id: str, comment: Optional[str]) -> OperationResult:
        return await self._staff_action(ctx, order_id, OrderStatus.REFUNDED, comment, comment_required=True)

    async def reject(self, ctx: Optional[AuthContext], order_id: str, comment: Optional[str]) -> OperationResult:
        return await self._staff_action(ctx, order_id, OrderStatus.REJECTED, comment, comment_required=True)

    async def _staff_action(
        self,
        ctx: Optional[AuthContext],
        order_id: str,
        target: OrderStatus,
        comment: Optional[str],
        comment_required: bool = False,
    ) -> OperationResult:
        action = target.value.lower()
        with tracer.start_as_current_span(f"order_workflow.{action}") as span:
            span.set_attribute("order.id", order_id)
            if ctx is None or not ctx.has_role(STAFF_ROLES):
                return self._forbidden()

            comment = (comment or "").strip() or None
            if comment_required and not comment:
                return OperationResult.fail(ErrorKind.VALIDATION, "Comment is required")

            try:
                order = self.orders.get_by_id(order_id)
                if order is None:
                    return OperationResult.fail(ErrorKind.NOT_FOUND, "Order not found")

                sources = TRANSITIONS[target]
                if order.status not in sources:
                    return self._invalid_state(order, target)

                payment_status = None
                if target == OrderStatus.REFUNDED:
                    payment = order.payment
                    if payment and payment.status == PaymentStatus.PAID and payment.payment_intent_id:
                        try:
                            await self.gateway.create_refund(payment.payment_intent_id)
                        except PaymentGatewayError as e:
                            return OperationResult.fail(ErrorKind.UPSTREAM, e.message, status_code=e.status_code)
                        payment_status = PaymentStatus.REFUNDED

                updated = self.orders.transition(
                    order_id,
                    sources,
                    target,
                    actor_id=ctx.user_id,
                    comment=comment,
                    staff_action=True,
                    payment_status=payment_status,
                )
            except SQLAlchemyError as e:
                return self._storage_failure(f"{action} order", e)

            if updated is None:
                if payment_status is not None:
                    logger.error(f"Order {order_id} was refunded at the gateway but changed state concurrently")
                current = self.orders.get_by_id(order_id) or order
                return self._invalid_state(current, target)

            logger.info(f"Order {order_id} {action} by {ctx.user_id}")
            await self._announce(updated, comment)
            return OperationResult.ok(updated)

    # Customer actions

    async def cancel(self, ctx: Optional[AuthContext], order_id: str) -> OperationResult:
        with tracer.start_as_current_span("order_workflow.cancel") as span:
            span.set_attribute("order.id", order_id)
            if ctx is None or not ctx.has_role(CUSTOMER_ROLES):
                return self._forbidden()

            try:
                order = self.orders.get_by_id(order_id)
                if order is None:
                    return OperationResult.fail(ErrorKind.NOT_FOUND, "Order not found")
                if order.user_id != ctx.user_id:
                    return OperationResult.fail(ErrorKind.FORBIDDEN, "You can only cancel your own orders")

                sources = TRANSITIONS[OrderStatus.CANCELLED]
                if order.status not in sources:
                    return self._invalid_state(order, OrderStatus.CANCELLED)

                # An open intent is cancelled and a captured payment refunded
                # before the order moves, so no money is left behind
                payment_status = None
                payment = order.payment
                if payment and payment.payment_intent_id:
                    try:
                        if payment.status == PaymentStatus.PENDING:
                            await release_intent(self.gateway, payment.payment_intent_id)
                            payment_status = PaymentStatus.CANCELLED
                        elif payment.status == PaymentStatus.PAID:
                            await self.gateway.create_refund(payment.payment_intent_id)
                            payment_status = PaymentStatus.REFUNDED
                    except PaymentGatewayError as e:
                        return OperationResult.fail(ErrorKind.UPSTREAM, e.message, status_code=e.status_code)

                updated = self.orders.transition(
                    order_id,
                    sources,
                    OrderStatus.CANCELLED,
                    actor_id=ctx.user_id,
                    comment="Cancelled by customer",
                    payment_status=payment_status,
                )
            except SQLAlchemyError as e:
                return self._storage_failure("cancel order", e)

            if updated is None:
                if payment_status == PaymentStatus.REFUNDED:
                    logger.error(f"Order {order_id} was refunded at the gateway but changed state concurrently")
                return self._invalid_state(self.orders.get_by_id(order_id) or order, OrderStatus.CANCELLED)

            logger.info(f"Order {order_id} cancelled by {ctx.user_id}")
            await self._announce(updated, None)
            return OperationResult.ok(updated, message="Order cancelled successfully")

    @staticmethod
    def _invalid_state(order: OrderRecord, target: OrderStatus) -> OperationResult:
        allowed = " or ".join(s.value for s in TRANSITIONS[target])
        logger.warning(f"Order {order.id} is {order.status.value}, cannot move to {target.value}")
        return OperationResult.fail(
            ErrorKind.INVALID_STATE,
            f"Order must be {allowed} to be {target.value.lower()} (current status: {order.status.value})",
        )

    async def _announce(self, order: OrderRecord, comment: Optional[str]):
        await self.broadcaster.publish(
            events.ORDER_STATUS_UPDATE,
            {"orderId": order.id, "orderCode": order.code, "status": order.status.value},
        )
        await self.notifier.order_status_changed(order, comment)
