"""
Order and catalog data access.

The order workflow and payment bridge depend on the two Protocols below;
the SQL implementations are wired in by the route layer and the tests use
in-memory doubles.
"""
from sqlalchemy import update
from sqlalchemy.orm import Session
from typing import Iterable, List, Optional, Protocol
from opentelemetry import trace
import logging

from pharmacy_service.models.order import (
    Order,
    OrderItem,
    OrderStatus,
    OrderStatusChange,
    Payment,
    PaymentStatus,
)
from pharmacy_service.models.product import Product
from pharmacy_service.models.records import (
    AddressRecord,
    NewOrder,
    OrderRecord,
    PatientRecord,
    ProductRecord,
)
from pharmacy_service.models.user import DeliveryAddress, Patient

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


class OrderRepository(Protocol):
    def get_by_id(self, order_id: str) -> Optional[OrderRecord]: ...

    def get_by_code(self, code: str) -> Optional[OrderRecord]: ...

    def get_by_payment_intent(self, intent_id: str) -> Optional[OrderRecord]: ...

    def code_exists(self, code: str) -> bool: ...

    def list_orders(
        self,
        status: Optional[OrderStatus] = None,
        user_id: Optional[str] = None,
    ) -> List[OrderRecord]: ...

    def create(self, new_order: NewOrder) -> OrderRecord: ...

    def transition(
        self,
        order_id: str,
        sources: Iterable[OrderStatus],
        target: OrderStatus,
        actor_id: str,
        comment: Optional[str] = None,
        staff_action: bool = False,
        payment_status: Optional[PaymentStatus] = None,
        payer_name: Optional[str] = None,
    ) -> Optional[OrderRecord]:
        """Move the order to target only if it is currently in sources.

        Returns None when the order was not in an allowed source state.
        """
        ...

    def save_payment_intent(
        self,
        order_id: str,
        intent_id: str,
        client_secret: str,
        amount: float,
        payer_id: Optional[str] = None,
        payer_name: Optional[str] = None,
    ) -> OrderRecord: ...

    def set_payment_status(self, order_id: str, intent_id: str, status: PaymentStatus) -> bool:
        """Update the payment only while it still holds intent_id"""
        ...


class CatalogRepository(Protocol):
    def get_products(self, product_ids: Iterable[str]) -> List[ProductRecord]: ...

    def get_address(self, address_id: str) -> Optional[AddressRecord]: ...

    def get_patient(self, patient_id: str) -> Optional[PatientRecord]: ...


class SqlOrderRepository:
    """OrderRepository over a SQLAlchemy session"""

    def __init__(self, db: Session):
        self.db = db

    def _record(self, order: Optional[Order]) -> Optional[OrderRecord]:
        if order is None:
            return None
        return OrderRecord.model_validate(order)

    def get_by_id(self, order_id: str) -> Optional[OrderRecord]:
        return self._record(self.db.query(Order).filter(Order.id == order_id).first())

    def get_by_code(self, code: str) -> Optional[OrderRecord]:
        return self._record(self.db.query(Order).filter(Order.code == code).first())

    def get_by_payment_intent(self, intent_id: str) -> Optional[OrderRecord]:
        order = (
            self.db.query(Order)
            .join(Payment, Payment.order_id == Order.id)
            .filter(Payment.payment_intent_id == intent_id)
            .first()
        )
        return self._record(order)

    def code_exists(self, code: str) -> bool:
        return self.db.query(Order.id).filter(Order.code == code).first() is not None

    def list_orders(
        self,
        status: Optional[OrderStatus] = None,
        user_id: Optional[str] = None,
    ) -> List[OrderRecord]:
        with tracer.start_as_current_span("order_repository.list_orders") as span:
            query = self.db.query(Order)

            if status:
                query = query.filter(Order.status == status)
                span.set_attribute("filter.status", status.value)

            if user_id:
                query = query.filter(Order.user_id == user_id)
                span.set_attribute("filter.user_id", user_id)

            orders = query.order_by(Order.created_at.desc(), Order.id).all()
            span.set_attribute("orders.returned", len(orders))
            return [OrderRecord.model_validate(order) for order in orders]

    def create(self, new_order: NewOrder) -> OrderRecord:
        order = Order(
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
        )
        order.items = [OrderItem(**item.model_dump()) for item in new_order.items]
        order.status_changes = [
            OrderStatusChange(
                changed_by=new_order.placed_by,
                action=OrderStatus.CREATED.value,
                comment="Order placed",
            )
        ]

        self.db.add(order)
        try:
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        logger.info(f"Order {order.id} ({order.code}) stored with {len(new_order.items)} items")
        return self.get_by_id(order.id)

    def transition(
        self,
        order_id: str,
        sources: Iterable[OrderStatus],
        target: OrderStatus,
        actor_id: str,
        comment: Optional[str] = None,
        staff_action: bool = False,
        payment_status: Optional[PaymentStatus] = None,
        payer_name: Optional[str] = None,
    ) -> Optional[OrderRecord]:
        sources = list(sources)
        values = {"status": target}
        if staff_action:
            values["staff_comment"] = comment
            values["staff_actor_id"] = actor_id

        try:
            result = self.db.execute(
                update(Order)
                .where(Order.id == order_id, Order.status.in_(sources))
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                self.db.rollback()
                logger.warning(f"Order {order_id} was not in {[s.value for s in sources]}, not moved to {target.value}")
                return None

            self.db.add(OrderStatusChange(
                order_id=order_id,
                changed_by=actor_id,
                action=target.value,
                comment=comment,
            ))

            if payment_status is not None:
                payment = self.db.query(Payment).filter(Payment.order_id == order_id).first()
                if payment:
                    payment.status = payment_status
                    if payment_status == PaymentStatus.PAID:
                        payment.payer_id = actor_id
                        if payer_name:
                            payment.payer_name = payer_name

            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        # Bulk UPDATE bypasses the identity map
        self.db.expire_all()
        return self.get_by_id(order_id)

    def save_payment_intent(
        self,
        order_id: str,
        intent_id: str,
        client_secret: str,
        amount: float,
        payer_id: Optional[str] = None,
        payer_name: Optional[str] = None,
    ) -> OrderRecord:
        payment = self.db.query(Payment).filter(Payment.order_id == order_id).first()
        if payment is None:
            payment = Payment(order_id=order_id)
            self.db.add(payment)

        payment.payment_intent_id = intent_id
        payment.client_secret = client_secret
        payment.amount = amount
        payment.status = PaymentStatus.PENDING
        payment.payer_id = payer_id
        payment.payer_name = payer_name

        try:
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        self.db.expire_all()
        return self.get_by_id(order_id)

    def set_payment_status(self, order_id: str, intent_id: str, status: PaymentStatus) -> bool:
        try:
            result = self.db.execute(
                update(Payment)
                .where(Payment.order_id == order_id, Payment.payment_intent_id == intent_id)
                .values(status=status)
                .execution_options(synchronize_session=False)
            )
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        self.db.expire_all()
        return result.rowcount == 1


class SqlCatalogRepository:
    """CatalogRepository over a SQLAlchemy session"""

    def __init__(self, db: Session):
        self.db = db

    def get_products(self, product_ids: Iterable[str]) -> List[ProductRecord]:
        ids = list(set(product_ids))
        if not ids:
            return []
        products = (
            self.db.query(Product)
            .filter(Product.id.in_(ids), Product.deleted_at.is_(None))
            .all()
        )
        return [ProductRecord.model_validate(product) for product in products]

    def get_address(self, address_id: str) -> Optional[AddressRecord]:
        address = self.db.query(DeliveryAddress).filter(DeliveryAddress.id == address_id).first()
        return AddressRecord.model_validate(address) if address else None

    def get_patient(self, patient_id: str) -> Optional[PatientRecord]:
        patient = self.db.query(Patient).filter(Patient.id == patient_id).first()
        return PatientRecord.model_validate(patient) if patient else None
