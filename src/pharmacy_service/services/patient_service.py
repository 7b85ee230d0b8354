"""Patients managed by doctors"""
from sqlalchemy.orm import Session
from typing import Optional
from opentelemetry import trace
import logging

from pharmacy_service.models.records import AddressRecord
from pharmacy_service.models.schemas import AddressInput, PatientCreate, PatientResponse
from pharmacy_service.models.user import DeliveryAddress, Patient, Role
from pharmacy_service.services.auth import AuthContext
from pharmacy_service.services.results import ErrorKind, OperationResult

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


def _patient_response(patient: Patient) -> PatientResponse:
    return PatientResponse(
        id=patient.id,
        name=patient.name,
        email=patient.email,
        phone=patient.phone,
        birth_date=patient.birth_date,
        created_at=patient.created_at,
        address=AddressRecord.model_validate(patient.delivery_address) if patient.delivery_address else None,
    )


class PatientService:
    """A doctor only ever sees their own patients"""

    def __init__(self, db: Session):
        self.db = db

    @staticmethod
    def _doctor_only(ctx: Optional[AuthContext]) -> Optional[OperationResult]:
        if ctx is None or ctx.role != Role.DOCTOR:
            return OperationResult.fail(ErrorKind.FORBIDDEN, "Only doctors can access this resource.")
        return None

    def _own_patient(self, ctx: AuthContext, patient_id: str) -> Optional[Patient]:
        return (
            self.db.query(Patient)
            .filter(Patient.id == patient_id, Patient.doctor_id == ctx.user_id)
            .first()
        )

    def add_patient(self, ctx: Optional[AuthContext], data: PatientCreate) -> OperationResult:
        with tracer.start_as_current_span("patient_service.add_patient") as span:
            denied = self._doctor_only(ctx)
            if denied:
                return denied

            patient = Patient(
                doctor_id=ctx.user_id,
                name=data.name,
                email=data.email,
                phone=data.phone,
                birth_date=data.birth_date,
            )
            patient.delivery_address = DeliveryAddress(**data.address.model_dump())
            self.db.add(patient)
            try:
                self.db.commit()
            except Exception:
                self.db.rollback()
                raise
            self.db.refresh(patient)

            span.set_attribute("patient.id", patient.id)
            logger.info(f"Doctor {ctx.user_id} added patient {patient.id}")
            return OperationResult.ok(_patient_response(patient))

    def list_patients(self, ctx: Optional[AuthContext]) -> OperationResult:
        denied = self._doctor_only(ctx)
        if denied:
            return denied

        patients = (
            self.db.query(Patient)
            .filter(Patient.doctor_id == ctx.user_id)
            .order_by(Patient.created_at.desc())
            .all()
        )
        return OperationResult.ok([_patient_response(p) for p in patients])

    def get_patient(self, ctx: Optional[AuthContext], patient_id: str) -> OperationResult:
        denied = self._doctor_only(ctx)
        if denied:
            return denied

        patient = self._own_patient(ctx, patient_id)
        if not patient:
            return OperationResult.fail(ErrorKind.NOT_FOUND, "Patient not found or unauthorized.")
        return OperationResult.ok(_patient_response(patient))

    def update_patient_address(
        self, ctx: Optional[AuthContext], patient_id: str, data: AddressInput
    ) -> OperationResult:
        denied = self._doctor_only(ctx)
        if denied:
            return denied

        patient = self._own_patient(ctx, patient_id)
        if not patient:
            return OperationResult.fail(ErrorKind.NOT_FOUND, "Patient not found or unauthorized!")

        address = patient.delivery_address
        if address is None:
            address = DeliveryAddress(patient_id=patient.id)
            self.db.add(address)
        for field, value in data.model_dump().items():
            setattr(address, field, value)

        try:
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        self.db.refresh(address)
        return OperationResult.ok(AddressRecord.model_validate(address))
