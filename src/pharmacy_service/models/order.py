"""
Order database models
"""
from sqlalchemy import Column, Integer, String, Float, DateTime, Text, Enum as SQLEnum, ForeignKey
from sqlalchemy.sql import func
from sqlalchemy.orm import relationship
from pharmacy_service.db.database import Base
from pharmacy_service.models.user import new_id
import enum


class OrderStatus(str, enum.Enum):
    """Order status enum"""
    CREATED = "CREATED"
    PAID = "PAID"
    FULFILLED = "FULFILLED"
    REFUNDED = "REFUNDED"
    REJECTED = "REJECTED"
    CANCELLED = "CANCELLED"


class PaymentStatus(str, enum.Enum):
    PENDING = "PENDING"
    PAID = "PAID"
    REFUNDED = "REFUNDED"
    CANCELLED = "CANCELLED"


class Order(Base):
    """Order model"""
    __tablename__ = "orders"

    id = Column(String(36), primary_key=True, default=new_id)
    code = Column(String(4), unique=True, nullable=False, index=True)
    user_id = Column(String(36), ForeignKey("users.id"), index=True)
    patient_id = Column(String(36), ForeignKey("patients.id"), index=True)
    delivery_address_id = Column(String(36), ForeignKey("delivery_addresses.id"))
    status = Column(SQLEnum(OrderStatus), default=OrderStatus.CREATED, nullable=False, index=True)

    product_cost = Column(Float, nullable=False)
    delivery_price = Column(Float, nullable=False)
    total_weight = Column(Float, nullable=False, default=0.0)
    total_price = Column(Float, nullable=False)
    prescription_url = Column(String(1024))

    # Last staff action (fulfill / refund / reject)
    staff_comment = Column(Text)
    staff_actor_id = Column(String(36))

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    items = relationship("OrderItem", back_populates="order", cascade="all, delete-orphan")
    status_changes = relationship(
        "OrderStatusChange",
        back_populates="order",
        cascade="all, delete-orphan",
        order_by="OrderStatusChange.id",
    )
    payment = relationship("Payment", back_populates="order", uselist=False, cascade="all, delete-orphan")
    user = relationship("User")
    patient = relationship("Patient")
    delivery_address = relationship("DeliveryAddress")

    def __repr__(self):
        return f"<Order(id={self.id}, code={self.code}, status={self.status}, total={self.total_price})>"


class OrderItem(Base):
    """Order line, a snapshot of the product at checkout"""
    __tablename__ = "order_items"

    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(String(36), ForeignKey("orders.id"), nullable=False, index=True)
    product_id = Column(String(36), nullable=False, index=True)
    product_name = Column(String(255), nullable=False)
    medicine_code = Column(String(100))
    quantity = Column(Integer, nullable=False)
    price = Column(Float, nullable=False)
    subtotal = Column(Float, nullable=False)

    order = relationship("Order", back_populates="items")

    def __repr__(self):
        return f"<OrderItem(id={self.id}, product_id={self.product_id}, qty={self.quantity})>"


class OrderStatusChange(Base):
    """Audit row written for every status transition"""
    __tablename__ = "order_status_changes"

    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(String(36), ForeignKey("orders.id"), nullable=False, index=True)
    # User id of the actor, or "guest" for unauthenticated payers
    changed_by = Column(String(36))
    action = Column(String(32), nullable=False)
    comment = Column(Text)
    action_date = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    order = relationship("Order", back_populates="status_changes")


class Payment(Base):
    """Gateway payment correlated with exactly one order"""
    __tablename__ = "payments"

    id = Column(String(36), primary_key=True, default=new_id)
    order_id = Column(String(36), ForeignKey("orders.id"), unique=True, nullable=False)
    payment_intent_id = Column(String(255), unique=True, index=True)
    client_secret = Column(String(255))
    status = Column(SQLEnum(PaymentStatus), default=PaymentStatus.PENDING, nullable=False)
    amount = Column(Float, nullable=False)
    payment_method = Column(String(32), nullable=False, default="STRIPE")
    payer_id = Column(String(36))
    payer_name = Column(String(255))

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    order = relationship("Order", back_populates="payment")
