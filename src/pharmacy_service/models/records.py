"""
Plain records passed between repositories, services and routes.

Repositories convert ORM rows into these structs so the order workflow and
payment bridge never touch a SQLAlchemy session directly. Records serialize
with camelCase keys and are used as response models by the route layer.
"""
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
from typing import List, Optional
from datetime import datetime

from pharmacy_service.models.order import OrderStatus, PaymentStatus
from pharmacy_service.models.product import Availability
from pharmacy_service.models.user import Role


class CamelModel(BaseModel):
    """Base for every API-facing model: camelCase on the wire"""
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        from_attributes=True,
    )


class ContactRecord(CamelModel):
    id: Optional[str] = None
    name: str
    email: Optional[str] = None
    phone: Optional[str] = None
    role: Optional[Role] = None


class PatientRecord(ContactRecord):
    doctor_id: str
    birth_date: Optional[str] = None


class AddressRecord(CamelModel):
    id: str
    user_id: Optional[str] = None
    patient_id: Optional[str] = None
    address_line: str
    town: str
    municipality: str
    province: str
    country: str = "Cuba"
    manual_instructions: Optional[str] = None


class ProductRecord(CamelModel):
    id: str
    name: str
    price: float
    weight: float = 0.0
    medicine_code: str
    availability: Availability = Availability.IN_STOCK
    requires_prescription: bool = False
    image_url: Optional[str] = None
    deleted_at: Optional[datetime] = None


class OrderItemRecord(CamelModel):
    product_id: str
    product_name: str
    medicine_code: Optional[str] = None
    quantity: int
    price: float
    subtotal: float


class StatusChangeRecord(CamelModel):
    action: str
    comment: Optional[str] = None
    changed_by: Optional[str] = None
    action_date: Optional[datetime] = None


class PaymentRecord(CamelModel):
    payment_intent_id: Optional[str] = None
    client_secret: Optional[str] = Field(None, exclude=True)
    status: PaymentStatus
    amount: float
    payment_method: str = "STRIPE"
    payer_id: Optional[str] = None
    payer_name: Optional[str] = None


class OrderRecord(CamelModel):
    """An order with everything the workflow needs to guard and notify"""
    id: str
    code: str
    user_id: Optional[str] = None
    patient_id: Optional[str] = None
    delivery_address_id: Optional[str] = None
    status: OrderStatus
    product_cost: float
    delivery_price: float
    total_weight: float = 0.0
    total_price: float
    prescription_url: Optional[str] = None
    staff_comment: Optional[str] = None
    staff_actor_id: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    items: List[OrderItemRecord] = []
    status_changes: List[StatusChangeRecord] = []
    payment: Optional[PaymentRecord] = None
    user: Optional[ContactRecord] = None
    patient: Optional[PatientRecord] = None
    delivery_address: Optional[AddressRecord] = None

    def notify_target(self) -> Optional[ContactRecord]:
        """The person an order update is addressed to: patient first"""
        return self.patient or self.user


class NewOrder(CamelModel):
    """Everything needed to persist a freshly placed order"""
    code: str
    user_id: Optional[str] = None
    patient_id: Optional[str] = None
    delivery_address_id: str
    product_cost: float
    delivery_price: float
    total_weight: float
    total_price: float
    prescription_url: Optional[str] = None
    items: List[OrderItemRecord]
    placed_by: Optional[str] = None
