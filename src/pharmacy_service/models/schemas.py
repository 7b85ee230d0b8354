# src/pharmacy_service/models/schemas.py
"""
Pydantic schemas for request/response validation
"""
from pydantic import AliasChoices, BaseModel, EmailStr, Field
from typing import List, Optional
from datetime import datetime

from pharmacy_service.models.order import OrderStatus
from pharmacy_service.models.product import Availability
from pharmacy_service.models.records import AddressRecord, CamelModel, OrderRecord
from pharmacy_service.models.user import Role


# Orders

class OrderItemInput(CamelModel):
    """One cart line; accepts productId/quantity or the short id/qty keys"""
    product_id: str = Field(
        ...,
        min_length=1,
        validation_alias=AliasChoices("productId", "product_id", "id"),
    )
    quantity: int = Field(
        ...,
        gt=0,
        validation_alias=AliasChoices("quantity", "qty"),
    )


class StaffActionRequest(CamelModel):
    """Body of refund / reject"""
    comment: Optional[str] = Field(None, max_length=2000)


class OrderPlacedResponse(CamelModel):
    order_id: str
    message: str = "Order placed successfully"
    order_code: str
    date: Optional[datetime] = None
    total_product_cost: float
    delivery_cost: float
    total_weight: float
    total_price: float


class OrderListResponse(CamelModel):
    success: bool = True
    total: int
    data: List[OrderRecord]


class OrderDetailResponse(CamelModel):
    success: bool = True
    data: OrderRecord


class MessageResponse(CamelModel):
    message: str


# Payments

class CreateIntentRequest(CamelModel):
    order_code: str = Field(..., min_length=1)


class CreateIntentResponse(CamelModel):
    client_secret: str
    amount: float


class ConfirmIntentRequest(CamelModel):
    payment_intent_id: str = Field(..., min_length=1)


class PaymentConfirmation(CamelModel):
    message: str = "Order marked as paid successfully."
    order_id: str
    order_code: str
    status: OrderStatus


class CodeOrderItem(CamelModel):
    product_id: str
    name: str
    medicine_code: Optional[str] = None
    product_price: float
    quantity: int
    total_sub_price: float


class PersonDetails(CamelModel):
    name: str
    email: Optional[str] = None
    contact: Optional[str] = None
    birth_date: Optional[str] = None


class OrderByCodeResponse(CamelModel):
    order_id: str
    code: str
    status: OrderStatus
    prescription_url: Optional[str] = None
    items: List[CodeOrderItem]
    total_sub_amount: float
    delivery_price: Optional[float] = None
    total_amount: float
    is_paid: bool
    order_placed_by: Optional[PersonDetails] = None
    patient_details: Optional[PersonDetails] = None


class PaymentLinkEmailRequest(CamelModel):
    email: EmailStr
    code: str = Field(..., min_length=1)


class PaymentLinkSmsRequest(CamelModel):
    phone: str = Field(..., min_length=1)
    code: str = Field(..., min_length=1)


class DeliveryResponse(CamelModel):
    success: bool = True
    message: str


# Users

class UserCreate(CamelModel):
    """Registration form after parsing"""
    name: str = Field(..., min_length=3)
    email: EmailStr
    password: str = Field(..., min_length=6, max_length=72)
    contact_no: str = Field(..., min_length=10)
    role: Role = Role.USER


class UserInfoUpdate(CamelModel):
    name: str = Field(..., min_length=1)
    contact_no: str = Field(..., min_length=10)
    role: Optional[Role] = None


class LoginRequest(CamelModel):
    email: EmailStr
    password: str = Field(..., min_length=1)


class ForgotPasswordRequest(CamelModel):
    email: EmailStr


class VerifyOtpRequest(CamelModel):
    email: EmailStr
    otp: str = Field(..., min_length=4, max_length=4)


class ResetPasswordRequest(CamelModel):
    email: EmailStr
    new_password: str = Field(..., min_length=6, max_length=72)


class UserResponse(CamelModel):
    id: str
    name: str
    email: str
    phone: Optional[str] = None
    role: Role
    email_verified: Optional[datetime] = None
    created_at: Optional[datetime] = None
    delivery_address: Optional[AddressRecord] = None


class SessionResponse(CamelModel):
    message: str = "Login successful!"
    access_token: str
    token_type: str = "bearer"
    user: UserResponse


class AddressInput(CamelModel):
    address_line: str = Field(..., min_length=5)
    town: str = Field(..., min_length=2)
    municipality: str = Field(..., min_length=2)
    province: str = Field(..., min_length=2)
    country: str = "Cuba"
    manual_instructions: Optional[str] = None


class AddressResponse(CamelModel):
    success: bool = True
    address: AddressRecord


class ProfileResponse(CamelModel):
    success: bool = True
    user: UserResponse


# Patients

class PatientCreate(CamelModel):
    name: str = Field(..., min_length=2)
    email: Optional[EmailStr] = None
    phone: Optional[str] = None
    birth_date: Optional[str] = None
    address: AddressInput


class PatientResponse(CamelModel):
    id: str
    name: str
    email: Optional[str] = None
    phone: Optional[str] = None
    birth_date: Optional[str] = None
    created_at: Optional[datetime] = None
    address: Optional[AddressRecord] = None


class PatientListResponse(CamelModel):
    success: bool = True
    patients: List[PatientResponse]


# Catalog

class CategoryInput(CamelModel):
    name: str = Field(..., min_length=3)
    parent_id: Optional[str] = None


class CategoryResponse(CamelModel):
    id: str
    name: str
    parent_id: Optional[str] = None
    image_url: Optional[str] = None
    children: List["CategoryResponse"] = []


CategoryResponse.model_rebuild()


class CategoryListResponse(CamelModel):
    success: bool = True
    categories: List[CategoryResponse]


class ProductInput(CamelModel):
    """Product fields shared by create and update"""
    name: str = Field(..., min_length=3)
    description: Optional[str] = None
    details: Optional[str] = None
    price: int = Field(..., ge=1, description="Price in whole dollars")
    weight: float = Field(..., ge=0.01, description="Weight in lbs")
    medicine_code: str = Field(..., min_length=1)
    availability: Availability = Availability.IN_STOCK
    requires_prescription: bool = False
    category_id: Optional[str] = None
    sub_category: Optional[str] = None
    image_url: Optional[str] = None


class ProductUpdate(CamelModel):
    """Partial product update; unset fields are left alone"""
    name: Optional[str] = Field(None, min_length=3)
    description: Optional[str] = None
    details: Optional[str] = None
    price: Optional[int] = Field(None, ge=1)
    weight: Optional[float] = Field(None, ge=0.01)
    medicine_code: Optional[str] = Field(None, min_length=1)
    availability: Optional[Availability] = None
    requires_prescription: Optional[bool] = None
    category_id: Optional[str] = None
    sub_category: Optional[str] = None
    image_url: Optional[str] = None


class ProductResponse(CamelModel):
    id: str
    name: str
    description: Optional[str] = None
    details: Optional[str] = None
    price: float
    weight: float
    medicine_code: str
    availability: Availability
    requires_prescription: bool
    image_url: Optional[str] = None
    category_id: Optional[str] = None
    pharmacy_staff_id: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class ProductListResponse(CamelModel):
    success: bool = True
    products: List[ProductResponse]


class ProductFilter(CamelModel):
    category_id: Optional[str] = None
    min_price: Optional[float] = Field(None, ge=0)
    max_price: Optional[float] = Field(None, ge=0)
    availability: Optional[Availability] = None
    staff_id: Optional[str] = None


# Bulk catalog import

class ProductSheetRow(BaseModel):
    """One spreadsheet row; categories are given by name"""
    name: str = Field(..., min_length=3)
    description: Optional[str] = None
    details: Optional[str] = None
    price: int = Field(..., ge=1)
    weight: float = Field(..., ge=0.01)
    medicine_code: str = Field(..., min_length=1)
    category: str = Field(..., min_length=3)
    sub_category: str = Field(..., min_length=3)
    availability: Availability = Availability.IN_STOCK
    requires_prescription: bool = False


class SkippedProduct(CamelModel):
    row: int
    name: str
    medicine_code: str
    reason: str


class RowError(CamelModel):
    row: int
    product_name: Optional[str] = None
    error: str


class BulkUploadCounts(CamelModel):
    created: int = 0
    reactivated: int = 0
    skipped: int = 0
    errors: int = 0


class BulkUploadProducts(CamelModel):
    created: List[ProductResponse] = []
    reactivated: List[ProductResponse] = []


class BulkUploadResponse(CamelModel):
    success: bool = True
    message: str
    details: BulkUploadCounts
    products: BulkUploadProducts
    skipped_products: List[SkippedProduct] = []
    errors: List[RowError] = []


class BulkImageResponse(CamelModel):
    success: bool = True
    message: str
    updated: int = 0
    failed: int = 0
    total_files: int = 0
    errors: List[str] = []


class HealthResponse(CamelModel):
    """Health check response"""
    status: str
    service: str
    version: str
    timestamp: datetime
