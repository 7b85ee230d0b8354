"""In-memory doubles for the repositories, gateway, senders, storage and sockets"""
from datetime import datetime
from typing import Dict, Iterable, List, Optional
import uuid

from pharmacy_service.models.order import OrderStatus, PaymentStatus
from pharmacy_service.models.records import (
    AddressRecord,
    ContactRecord,
    NewOrder,
    OrderRecord,
    PatientRecord,
    PaymentRecord,
    ProductRecord,
    StatusChangeRecord,
)
from pharmacy_service.services.notifications import DeliveryError
from pharmacy_service.services.payment_gateway import PaymentGatewayError, PaymentIntent, Refund
from pharmacy_service.services.storage import StorageError


class InMemoryOrderRepository:
    def __init__(self, users: Optional[Dict[str, ContactRecord]] = None):
        self.orders: Dict[str, OrderRecord] = {}
        self.users = users or {}
        self.patients: Dict[str, PatientRecord] = {}
        self.transition_calls = 0

    def get_by_id(self, order_id: str) -> Optional[OrderRecord]:
        return self.orders.get(order_id)

    def get_by_code(self, code: str) -> Optional[OrderRecord]:
        return next((o for o in self.orders.values() if o.code == code), None)

    def get_by_payment_intent(self, intent_id: str) -> Optional[OrderRecord]:
        return next(
            (o for o in self.orders.values() if o.payment and o.payment.payment_intent_id == intent_id),
            None,
        )

    def code_exists(self, code: str) -> bool:
        return self.get_by_code(code) is not None

    def list_orders(self, status=None, user_id=None) -> List[OrderRecord]:
        orders = [
            o for o in self.orders.values()
            if (status is None or o.status == status) and (user_id is None or o.user_id == user_id)
        ]
        return sorted(orders, key=lambda o: o.created_at, reverse=True)

    def create(self, new_order: NewOrder) -> OrderRecord:
        now = datetime.utcnow()
        order = OrderRecord(
            id=str(uuid.uuid4()),
            code=new_order.code,
            user_id=new_order.user_id,
            patient_id=new_order.patient_id,
            delivery_address_id=new_order.delivery_address_id,
            status=OrderStatus.CREATED,
            product_cost=new_order.product_cost,
            delivery_price=new_order.delivery_price,
            total_weight=new_order.total_weight,
            total_price=new_order.total_price,
            prescription_url=new_order.prescription_url,
            created_at=now,
            items=new_order.items,
            status_changes=[StatusChangeRecord(
                action=OrderStatus.CREATED.value,
                comment="Order placed",
                changed_by=new_order.placed_by,
                action_date=now,
            )],
            user=self.users.get(new_order.user_id),
            patient=self.patients.get(new_order.patient_id),
        )
        self.orders[order.id] = order
        return order

    def add(self, order: OrderRecord) -> OrderRecord:
        self.orders[order.id] = order
        return order

    def transition(
        self,
        order_id,
        sources: Iterable[OrderStatus],
        target,
        actor_id,
        comment=None,
        staff_action=False,
        payment_status=None,
        payer_name=None,
    ) -> Optional[OrderRecord]:
        self.transition_calls += 1
        order = self.orders.get(order_id)
        if order is None or order.status not in tuple(sources):
            return None

        update = {
            "status": target,
            "updated_at": datetime.utcnow(),
            "status_changes": order.status_changes + [
                StatusChangeRecord(action=target.value, comment=comment, changed_by=actor_id)
            ],
        }
        if staff_action:
            update["staff_comment"] = comment
            update["staff_actor_id"] = actor_id
        if payment_status is not None and order.payment:
            payment_update = {"status": payment_status}
            if payment_status == PaymentStatus.PAID:
                payment_update["payer_id"] = actor_id
                if payer_name:
                    payment_update["payer_name"] = payer_name
            update["payment"] = order.payment.model_copy(update=payment_update)

        order = order.model_copy(update=update)
        self.orders[order_id] = order
        return order

    def save_payment_intent(
        self, order_id, intent_id, client_secret, amount, payer_id=None, payer_name=None
    ) -> OrderRecord:
        order = self.orders[order_id].model_copy(update={"payment": PaymentRecord(
            payment_intent_id=intent_id,
            client_secret=client_secret,
            status=PaymentStatus.PENDING,
            amount=amount,
            payer_id=payer_id,
            payer_name=payer_name,
        )})
        self.orders[order_id] = order
        return order

    def set_payment_status(self, order_id, intent_id, status) -> bool:
        order = self.orders.get(order_id)
        if order is None or order.payment is None or order.payment.payment_intent_id != intent_id:
            return False
        payment = order.payment.model_copy(update={"status": status})
        self.orders[order_id] = order.model_copy(update={"payment": payment})
        return True


class InMemoryCatalogRepository:
    def __init__(self):
        self.products: Dict[str, ProductRecord] = {}
        self.addresses: Dict[str, AddressRecord] = {}
        self.patients: Dict[str, PatientRecord] = {}

    def get_products(self, product_ids) -> List[ProductRecord]:
        return [
            self.products[pid] for pid in set(product_ids)
            if pid in self.products and self.products[pid].deleted_at is None
        ]

    def get_address(self, address_id: str) -> Optional[AddressRecord]:
        return self.addresses.get(address_id)

    def get_patient(self, patient_id: str) -> Optional[PatientRecord]:
        return self.patients.get(patient_id)


class FakeGateway:
    """Payment gateway double; set `errors[method]` to make a call fail"""

    def __init__(self):
        self.intents: Dict[str, PaymentIntent] = {}
        self.refunds: List[str] = []
        self.cancelled: List[str] = []
        self.errors: Dict[str, PaymentGatewayError] = {}
        self.calls: List[str] = []

    def _maybe_fail(self, method: str):
        self.calls.append(method)
        if method in self.errors:
            raise self.errors[method]

    async def create_intent(self, amount, currency, metadata) -> PaymentIntent:
        self._maybe_fail("create_intent")
        intent_id = f"pi_{len(self.intents) + 1}"
        intent = PaymentIntent(
            id=intent_id,
            status="requires_payment_method",
            amount=amount,
            currency=currency,
            client_secret=f"{intent_id}_secret",
            metadata=dict(metadata),
        )
        self.intents[intent_id] = intent
        return intent

    async def retrieve_intent(self, intent_id) -> PaymentIntent:
        self._maybe_fail("retrieve_intent")
        if intent_id not in self.intents:
            raise PaymentGatewayError(404, f"No such payment_intent: '{intent_id}'")
        return self.intents[intent_id]

    async def cancel_intent(self, intent_id) -> PaymentIntent:
        self._maybe_fail("cancel_intent")
        status = self.intents[intent_id].status
        if status in ("canceled", "succeeded"):
            raise PaymentGatewayError(
                400, f"You cannot cancel this PaymentIntent because it has a status of {status}."
            )
        self.cancelled.append(intent_id)
        self.intents[intent_id].status = "canceled"
        return self.intents[intent_id]

    async def create_refund(self, intent_id) -> Refund:
        self._maybe_fail("create_refund")
        self.refunds.append(intent_id)
        return Refund(id=f"re_{len(self.refunds)}", status="succeeded", amount=self.intents[intent_id].amount)

    def succeed(self, intent_id: str):
        self.intents[intent_id].status = "succeeded"


class FakeEmailSender:
    def __init__(self, fail: bool = False, configured: bool = True):
        self.sent: List[dict] = []
        self.fail = fail
        self.configured = configured

    async def send_email(self, to, subject, html) -> bool:
        if self.fail:
            raise DeliveryError("SES rejected the message")
        if not self.configured:
            return False
        self.sent.append({"to": to, "subject": subject, "html": html})
        return True


class FakeSmsSender:
    def __init__(self, fail: bool = False):
        self.sent: List[dict] = []
        self.fail = fail

    async def send_sms(self, phone, message) -> bool:
        if self.fail:
            raise DeliveryError("SNS rejected the message")
        self.sent.append({"phone": phone, "message": message})
        return True


class FakeStorage:
    def __init__(self, fail: bool = False):
        self.uploads: List[dict] = []
        self.fail = fail

    async def upload(self, folder, data, content_type=None) -> str:
        if self.fail:
            raise StorageError("bucket unavailable")
        self.uploads.append({"folder": folder, "data": data, "content_type": content_type})
        return f"https://files.test/{folder}/{len(self.uploads)}"


class FakeEvents:
    def __init__(self):
        self.published: List[tuple] = []

    async def publish(self, event, data):
        self.published.append((event, data))

    def names(self) -> List[str]:
        return [event for event, _ in self.published]
