"""FastAPI routes for a doctor's patients"""
from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session
from typing import Optional

from pharmacy_service.api.deps import get_current_user, raise_for_result
from pharmacy_service.db.database import get_db
from pharmacy_service.models.schemas import (
    AddressInput,
    AddressResponse,
    PatientCreate,
    PatientListResponse,
    PatientResponse,
)
from pharmacy_service.services.auth import AuthContext
from pharmacy_service.services.patient_service import PatientService

router = APIRouter(prefix="/doctor", tags=["doctors"])


@router.post("/patient", response_model=PatientResponse)
def add_patient(
    patient: PatientCreate,
    ctx: Optional[AuthContext] = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """Register a patient together with their delivery address"""
    result = PatientService(db).add_patient(ctx, patient)
    raise_for_result(result)
    return result.data


@router.get("/patient", response_model=PatientListResponse)
def list_patients(
    ctx: Optional[AuthContext] = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    result = PatientService(db).list_patients(ctx)
    raise_for_result(result)
    return PatientListResponse(patients=result.data)


@router.get("/patient/{patient_id}", response_model=PatientResponse)
def get_patient(
    patient_id: str,
    ctx: Optional[AuthContext] = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    result = PatientService(db).get_patient(ctx, patient_id)
    raise_for_result(result)
    return result.data


@router.put("/patient/{patient_id}", response_model=AddressResponse)
def update_patient_address(
    patient_id: str,
    address: AddressInput,
    ctx: Optional[AuthContext] = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    result = PatientService(db).update_patient_address(ctx, patient_id, address)
    raise_for_result(result)
    return AddressResponse(address=result.data)
