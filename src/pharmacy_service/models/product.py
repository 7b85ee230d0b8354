"""
Catalog database models
"""
from sqlalchemy import Column, String, Float, Boolean, DateTime, Text, Enum as SQLEnum, ForeignKey
from sqlalchemy.sql import func
from sqlalchemy.orm import relationship
from pharmacy_service.db.database import Base
from pharmacy_service.models.user import new_id
import enum


class Availability(str, enum.Enum):
    IN_STOCK = "IN_STOCK"
    OUT_OF_STOCK = "OUT_OF_STOCK"


class Category(Base):
    """Product category (up to three levels deep)"""
    __tablename__ = "categories"

    id = Column(String(36), primary_key=True, default=new_id)
    name = Column(String(255), nullable=False)
    parent_id = Column(String(36), ForeignKey("categories.id"), index=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    parent = relationship("Category", remote_side=[id], back_populates="children")
    children = relationship("Category", back_populates="parent")
    products = relationship("Product", back_populates="category")

    def __repr__(self):
        return f"<Category(id={self.id}, name={self.name})>"


class Product(Base):
    """Product model"""
    __tablename__ = "products"

    id = Column(String(36), primary_key=True, default=new_id)
    name = Column(String(255), nullable=False)
    description = Column(Text)
    details = Column(Text)
    price = Column(Float, nullable=False)
    weight = Column(Float, nullable=False, default=0.0)
    medicine_code = Column(String(100), nullable=False, index=True)
    availability = Column(SQLEnum(Availability), default=Availability.IN_STOCK, nullable=False)
    requires_prescription = Column(Boolean, default=False, nullable=False)
    image_url = Column(String(1024))
    category_id = Column(String(36), ForeignKey("categories.id"), index=True)
    pharmacy_staff_id = Column(String(36), ForeignKey("users.id"))
    deleted_at = Column(DateTime)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    category = relationship("Category", back_populates="products")

    def __repr__(self):
        return f"<Product(id={self.id}, code={self.medicine_code}, price={self.price})>"
