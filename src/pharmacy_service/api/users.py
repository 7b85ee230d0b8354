"""FastAPI routes for accounts, sessions and the user's address"""
from fastapi import APIRouter, Body, Depends, Form, Query, status
from typing import Optional
import logging

from pharmacy_service.api.deps import get_current_user, get_user_service, raise_for_result
from pharmacy_service.models.schemas import (
    AddressInput,
    AddressResponse,
    ForgotPasswordRequest,
    MessageResponse,
    ProfileResponse,
    SessionResponse,
    VerifyOtpRequest,
)
from pharmacy_service.services.auth import AuthContext
from pharmacy_service.services.user_service import UserService

logger = logging.getLogger(__name__)

router = APIRouter(tags=["users"])


def _form(**fields) -> dict:
    return {key: value for key, value in fields.items() if value is not None}


@router.post("/register", response_model=MessageResponse, status_code=status.HTTP_201_CREATED)
async def register_user(
    name: Optional[str] = Form(None),
    email: Optional[str] = Form(None),
    password: Optional[str] = Form(None),
    contact_no: Optional[str] = Form(None, alias="contactNo"),
    role: Optional[str] = Form(None),
    recaptcha_token: Optional[str] = Form(None, alias="recaptchaToken"),
    ctx: Optional[AuthContext] = Depends(get_current_user),
    service: UserService = Depends(get_user_service),
):
    """Register a new account and send the verification email"""
    form = _form(name=name, email=email, password=password, contactNo=contact_no, role=role or None)
    result = await service.register(form, caller=ctx, recaptcha_token=recaptcha_token)
    raise_for_result(result)
    return MessageResponse(message=result.message)


@router.post("/login", response_model=SessionResponse)
async def login(
    credentials: dict = Body(...),
    service: UserService = Depends(get_user_service),
):
    """Login user and return a JWT session"""
    result = await service.login(credentials)
    raise_for_result(result)
    return result.data


@router.get("/verify-mail", response_model=MessageResponse)
async def verify_mail(
    token: Optional[str] = Query(None),
    service: UserService = Depends(get_user_service),
):
    result = service.verify_email(token)
    raise_for_result(result)
    return MessageResponse(message=result.message)


@router.post("/forgot-password", response_model=MessageResponse)
async def forgot_password(
    body: ForgotPasswordRequest,
    service: UserService = Depends(get_user_service),
):
    """Email a 4-digit password reset code"""
    result = await service.forgot_password(body.email)
    raise_for_result(result)
    return MessageResponse(message=result.message)


@router.post("/verify-otp", response_model=MessageResponse)
async def verify_otp(
    body: VerifyOtpRequest,
    service: UserService = Depends(get_user_service),
):
    result = service.verify_otp(body.email, body.otp)
    raise_for_result(result)
    return MessageResponse(message=result.message)


@router.post("/resetpassword", response_model=MessageResponse)
async def reset_password(
    body: dict = Body(...),
    service: UserService = Depends(get_user_service),
):
    """Set a new password after the reset code was verified"""
    result = service.reset_password(body)
    raise_for_result(result)
    return MessageResponse(message=result.message)


@router.post("/user/address", response_model=AddressResponse)
async def add_address(
    address: AddressInput,
    ctx: Optional[AuthContext] = Depends(get_current_user),
    service: UserService = Depends(get_user_service),
):
    result = service.add_address(ctx, address)
    raise_for_result(result)
    return AddressResponse(address=result.data)


@router.get("/user/address", response_model=ProfileResponse)
async def get_address(
    ctx: Optional[AuthContext] = Depends(get_current_user),
    service: UserService = Depends(get_user_service),
):
    """The caller's profile including their delivery address"""
    result = service.get_profile(ctx)
    raise_for_result(result)
    return ProfileResponse(user=result.data)


@router.put("/user/address", response_model=AddressResponse)
async def update_address(
    address: AddressInput,
    ctx: Optional[AuthContext] = Depends(get_current_user),
    service: UserService = Depends(get_user_service),
):
    result = service.update_address(ctx, address)
    raise_for_result(result)
    return AddressResponse(address=result.data)


@router.post("/user/update-info", response_model=MessageResponse)
async def update_info(
    name: Optional[str] = Form(None),
    contact_no: Optional[str] = Form(None, alias="contactNo"),
    role: Optional[str] = Form(None),
    ctx: Optional[AuthContext] = Depends(get_current_user),
    service: UserService = Depends(get_user_service),
):
    result = service.update_info(ctx, _form(name=name, contactNo=contact_no, role=role or None))
    raise_for_result(result)
    return MessageResponse(message=result.message)
