"""
User, patient and address database models
"""
from sqlalchemy import Column, String, Boolean, DateTime, Text, Enum as SQLEnum, ForeignKey
from sqlalchemy.sql import func
from sqlalchemy.orm import relationship
from pharmacy_service.db.database import Base
import enum
import uuid


def new_id() -> str:
    return str(uuid.uuid4())


class Role(str, enum.Enum):
    """Account role; decides which routes a session can reach"""
    USER = "USER"
    DOCTOR = "DOCTOR"
    PHARMACY_STAFF = "PHARMACY_STAFF"
    ADMIN = "ADMIN"


class User(Base):
    """User account"""
    __tablename__ = "users"

    id = Column(String(36), primary_key=True, default=new_id)
    name = Column(String(255), nullable=False)
    email = Column(String(255), unique=True, nullable=False, index=True)
    phone = Column(String(32))
    role = Column(SQLEnum(Role), default=Role.USER, nullable=False)
    hashed_password = Column(String(255), nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    email_verified = Column(DateTime)

    # Password reset OTP (bcrypt hash), expiry and whether it was verified
    reset_password_token = Column(String(255))
    reset_password_expires = Column(DateTime)
    reset_password_verified = Column(Boolean, default=False, nullable=False)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    delivery_address = relationship(
        "DeliveryAddress",
        back_populates="user",
        uselist=False,
        foreign_keys="DeliveryAddress.user_id",
    )
    patients = relationship("Patient", back_populates="doctor")

    def __repr__(self):
        return f"<User(id={self.id}, email={self.email}, role={self.role})>"


class VerificationToken(Base):
    """Single-use email verification token"""
    __tablename__ = "verification_tokens"

    id = Column(String(36), primary_key=True, default=new_id)
    email = Column(String(255), nullable=False, index=True)
    token = Column(String(64), unique=True, nullable=False)
    expires = Column(DateTime, nullable=False)


class Patient(Base):
    """Patient registered by a doctor"""
    __tablename__ = "patients"

    id = Column(String(36), primary_key=True, default=new_id)
    doctor_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    email = Column(String(255))
    phone = Column(String(32))
    birth_date = Column(String(32))

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    doctor = relationship("User", back_populates="patients")
    delivery_address = relationship(
        "DeliveryAddress",
        back_populates="patient",
        uselist=False,
        foreign_keys="DeliveryAddress.patient_id",
    )


class DeliveryAddress(Base):
    """Delivery address owned by exactly one user or one patient"""
    __tablename__ = "delivery_addresses"

    id = Column(String(36), primary_key=True, default=new_id)
    user_id = Column(String(36), ForeignKey("users.id"), unique=True)
    patient_id = Column(String(36), ForeignKey("patients.id"), unique=True)
    address_line = Column(String(500), nullable=False)
    town = Column(String(255), nullable=False)
    municipality = Column(String(255), nullable=False)
    province = Column(String(255), nullable=False)
    country = Column(String(255), nullable=False, default="Cuba")
    manual_instructions = Column(Text)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    user = relationship("User", back_populates="delivery_address", foreign_keys=[user_id])
    patient = relationship("Patient", back_populates="delivery_address", foreign_keys=[patient_id])
