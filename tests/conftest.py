"""Shared fixtures: in-memory SQLite, fake outbound clients and seeded data"""
import os

os.environ.setdefault("OTEL_ENABLED", "false")
os.environ.setdefault("LOG_FORMAT", "text")
os.environ.setdefault("BCRYPT_ROUNDS", "4")
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test")

from datetime import datetime

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.pool import StaticPool

from fakes import FakeEmailSender, FakeEvents, FakeGateway, FakeSmsSender, FakeStorage
from pharmacy_service.api import deps
from pharmacy_service.db import database
from pharmacy_service.models.product import Availability, Category, Product
from pharmacy_service.models.user import DeliveryAddress, Patient, Role, User
from pharmacy_service.services.auth import AuthContext, create_access_token, hash_password

PASSWORD = "secret123"


@pytest.fixture
def db_engine():
    engine = database.init_database("sqlite://", poolclass=StaticPool)
    database.create_tables()
    yield engine
    database.Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def db_session(db_engine):
    session = database.SessionLocal()
    yield session
    session.close()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def email_sender():
    return FakeEmailSender()


@pytest.fixture
def sms_sender():
    return FakeSmsSender()


@pytest.fixture
def storage():
    return FakeStorage()


@pytest.fixture
def events():
    return FakeEvents()


@pytest.fixture
def client(db_engine, gateway, email_sender, sms_sender, storage, events):
    from pharmacy_service.main import app

    app.dependency_overrides[deps.get_payment_gateway] = lambda: gateway
    app.dependency_overrides[deps.get_email_sender] = lambda: email_sender
    app.dependency_overrides[deps.get_sms_sender] = lambda: sms_sender
    app.dependency_overrides[deps.get_object_storage] = lambda: storage
    app.dependency_overrides[deps.get_broadcaster] = lambda: events

    yield TestClient(app)

    app.dependency_overrides.clear()


@pytest.fixture
def auth_headers():
    def _headers(user: User) -> dict:
        ctx = AuthContext(user_id=user.id, role=user.role, email=user.email, name=user.name, phone=user.phone)
        return {"Authorization": f"Bearer {create_access_token(ctx)}"}

    return _headers


@pytest.fixture
def make_user(db_session):
    counter = {"n": 0}

    def _make(role: Role = Role.USER, verified: bool = True, phone: str = "+13055550100", **fields) -> User:
        counter["n"] += 1
        user = User(
            name=fields.pop("name", f"{role.value.title()} {counter['n']}"),
            email=fields.pop("email", f"{role.value.lower()}{counter['n']}@example.com"),
            phone=phone,
            role=role,
            hashed_password=hash_password(fields.pop("password", PASSWORD)),
            email_verified=datetime.utcnow() if verified else None,
            **fields,
        )
        db_session.add(user)
        db_session.commit()
        db_session.refresh(user)
        return user

    return _make


@pytest.fixture
def make_address(db_session):
    def _make(user: User = None, patient: Patient = None, province: str = "La Habana") -> DeliveryAddress:
        address = DeliveryAddress(
            user_id=user.id if user else None,
            patient_id=patient.id if patient else None,
            address_line="Calle 23 #456",
            town="Vedado",
            municipality="Plaza",
            province=province,
        )
        db_session.add(address)
        db_session.commit()
        db_session.refresh(address)
        return address

    return _make


@pytest.fixture
def make_patient(db_session):
    def _make(doctor: User, name: str = "Ana Perez", email: str = "ana@example.com") -> Patient:
        patient = Patient(doctor_id=doctor.id, name=name, email=email, phone="+5355550000")
        db_session.add(patient)
        db_session.commit()
        db_session.refresh(patient)
        return patient

    return _make


@pytest.fixture
def make_category(db_session):
    def _make(name: str = "Analgesics", parent: Category = None) -> Category:
        category = Category(name=name, parent_id=parent.id if parent else None)
        db_session.add(category)
        db_session.commit()
        db_session.refresh(category)
        return category

    return _make


@pytest.fixture
def make_product(db_session):
    counter = {"n": 0}

    def _make(
        price: float = 10,
        weight: float = 1.0,
        requires_prescription: bool = False,
        availability: Availability = Availability.IN_STOCK,
        **fields,
    ) -> Product:
        counter["n"] += 1
        product = Product(
            name=fields.pop("name", f"Product {counter['n']}"),
            price=price,
            weight=weight,
            medicine_code=fields.pop("medicine_code", f"MED-{counter['n']:03d}"),
            availability=availability,
            requires_prescription=requires_prescription,
            **fields,
        )
        db_session.add(product)
        db_session.commit()
        db_session.refresh(product)
        return product

    return _make
