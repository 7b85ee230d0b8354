"""User business logic"""
from sqlalchemy.orm import Session
from sqlalchemy.exc import SQLAlchemyError
from pydantic import ValidationError
from typing import Optional
from datetime import datetime, timedelta
from opentelemetry import trace
import logging
import secrets
import uuid

from pharmacy_service.models.records import AddressRecord
from pharmacy_service.models.schemas import (
    AddressInput,
    LoginRequest,
    ResetPasswordRequest,
    SessionResponse,
    UserCreate,
    UserInfoUpdate,
    UserResponse,
)
from pharmacy_service.models.user import DeliveryAddress, Role, User, VerificationToken
from pharmacy_service.services.auth import (
    AuthContext,
    create_access_token,
    hash_password,
    verify_password,
)
from pharmacy_service.services.notifications import NotificationDispatcher
from pharmacy_service.services.recaptcha import RecaptchaClient
from pharmacy_service.services.results import ErrorKind, OperationResult, field_errors

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

SELF_SERVICE_ROLES = (Role.USER, Role.DOCTOR)
VERIFICATION_TOKEN_TTL = timedelta(hours=1)
OTP_TTL = timedelta(minutes=15)


class UserService:
    """Accounts, sessions, password reset and the user's delivery address"""

    def __init__(
        self,
        db: Session,
        notifier: NotificationDispatcher,
        recaptcha: Optional[RecaptchaClient] = None,
    ):
        self.db = db
        self.notifier = notifier
        self.recaptcha = recaptcha

    def get_user(self, user_id: str) -> Optional[User]:
        """Get user by ID"""
        return self.db.query(User).filter(User.id == user_id).first()

    def get_user_by_email(self, email: str) -> Optional[User]:
        """Get user by email"""
        return self.db.query(User).filter(User.email == email.lower()).first()

    def _commit(self):
        try:
            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            raise

    # Registration and email verification

    async def register(
        self,
        form: dict,
        caller: Optional[AuthContext] = None,
        recaptcha_token: Optional[str] = None,
    ) -> OperationResult:
        with tracer.start_as_current_span("user_service.register") as span:
            if self.recaptcha is not None:
                if not recaptcha_token:
                    return OperationResult.fail(ErrorKind.VALIDATION, "reCAPTCHA verification required")
                if not await self.recaptcha.verify(recaptcha_token):
                    return OperationResult.fail(ErrorKind.VALIDATION, "reCAPTCHA verification failed")

            try:
                data = UserCreate.model_validate(form)
            except ValidationError as e:
                return OperationResult.fail(ErrorKind.VALIDATION, "Validation error", details=field_errors(e))

            if data.role not in SELF_SERVICE_ROLES and (caller is None or caller.role != Role.ADMIN):
                logger.warning(f"Rejected {data.role.value} registration without an admin session")
                return OperationResult.fail(ErrorKind.FORBIDDEN, "Only admins can create staff accounts")

            email = data.email.lower()
            try:
                if self.get_user_by_email(email):
                    return OperationResult.fail(ErrorKind.VALIDATION, "Email already in use!")

                user = User(
                    name=data.name,
                    email=email,
                    phone=data.contact_no,
                    role=data.role,
                    hashed_password=hash_password(data.password),
                )
                self.db.add(user)
                self._commit()
                token = self.generate_verification_token(email)
            except SQLAlchemyError as e:
                logger.error(f"Registration failed: {e}", exc_info=True)
                return OperationResult.fail(ErrorKind.INTERNAL, "Something went wrong!")

            span.set_attribute("user.id", user.id)
            logger.info(f"Registered user {user.id} with role {user.role.value}")

            await self.notifier.verification_email(email, data.name, token.token)
            return OperationResult.ok(message="Email Verification was sent")

    def generate_verification_token(self, email: str) -> VerificationToken:
        """Issue a fresh token, replacing any previous one for the email"""
        self.db.query(VerificationToken).filter(VerificationToken.email == email).delete()
        token = VerificationToken(
            email=email,
            token=str(uuid.uuid4()),
            expires=datetime.utcnow() + VERIFICATION_TOKEN_TTL,
        )
        self.db.add(token)
        self._commit()
        return token

    def verify_email(self, token: Optional[str]) -> OperationResult:
        with tracer.start_as_current_span("user_service.verify_email"):
            if not token:
                return OperationResult.fail(ErrorKind.VALIDATION, "Missing token!")

            existing = self.db.query(VerificationToken).filter(VerificationToken.token == token).first()
            if not existing:
                return OperationResult.fail(ErrorKind.VALIDATION, "Invalid token!")

            if existing.expires < datetime.utcnow():
                return OperationResult.fail(ErrorKind.VALIDATION, "Token has expired!")

            user = self.get_user_by_email(existing.email)
            if not user:
                return OperationResult.fail(ErrorKind.VALIDATION, "User not found!")

            user.email_verified = datetime.utcnow()
            self.db.delete(existing)
            self._commit()

            logger.info(f"Email verified for user {user.id}")
            return OperationResult.ok(message="Email Verified")

    # Sessions

    async def login(self, form: dict) -> OperationResult:
        with tracer.start_as_current_span("user_service.login") as span:
            try:
                credentials = LoginRequest.model_validate(form)
            except ValidationError:
                return OperationResult.fail(ErrorKind.VALIDATION, "Invalid field input!")

            user = self.get_user_by_email(credentials.email)
            if not user or not user.is_active:
                logger.warning("Login attempt for unknown or inactive account")
                return OperationResult.fail(ErrorKind.VALIDATION, "Invalid email or password!")

            if not verify_password(credentials.password, user.hashed_password):
                logger.warning(f"Invalid password for user {user.id}")
                return OperationResult.fail(ErrorKind.VALIDATION, "Invalid email or password!")

            if not user.email_verified:
                token = self.generate_verification_token(user.email)
                await self.notifier.verification_email(user.email, user.name, token.token)
                return OperationResult.fail(ErrorKind.VALIDATION, "Please confirm your email address")

            span.set_attribute("user.id", user.id)
            ctx = AuthContext(
                user_id=user.id,
                role=user.role,
                email=user.email,
                name=user.name,
                phone=user.phone,
            )
            logger.info(f"User {user.id} logged in")
            return OperationResult.ok(SessionResponse(
                access_token=create_access_token(ctx),
                user=UserResponse.model_validate(user),
            ))

    # Password reset

    async def forgot_password(self, email: str) -> OperationResult:
        with tracer.start_as_current_span("user_service.forgot_password"):
            user = self.get_user_by_email(email) if email else None
            if not user:
                return OperationResult.fail(ErrorKind.NOT_FOUND, "User not found")

            otp = f"{secrets.randbelow(10000):04d}"
            user.reset_password_token = hash_password(otp)
            user.reset_password_expires = datetime.utcnow() + OTP_TTL
            user.reset_password_verified = False
            self._commit()

            await self.notifier.password_reset_otp(user.email, user.name, otp)
            logger.info(f"Password reset OTP issued for user {user.id}")
            return OperationResult.ok(message="OTP sent via email")

    def verify_otp(self, email: str, otp: str) -> OperationResult:
        with tracer.start_as_current_span("user_service.verify_otp"):
            user = self.get_user_by_email(email) if email else None
            if not user or not user.reset_password_token or not user.reset_password_expires:
                return OperationResult.fail(ErrorKind.VALIDATION, "Invalid or expired OTP")

            if user.reset_password_expires < datetime.utcnow():
                return OperationResult.fail(ErrorKind.VALIDATION, "OTP has expired")

            if not otp or not verify_password(otp, user.reset_password_token):
                return OperationResult.fail(ErrorKind.VALIDATION, "Invalid OTP")

            user.reset_password_verified = True
            self._commit()
            return OperationResult.ok(message="OTP verified successfully")

    def reset_password(self, form: dict) -> OperationResult:
        with tracer.start_as_current_span("user_service.reset_password"):
            try:
                data = ResetPasswordRequest.model_validate(form)
            except ValidationError as e:
                return OperationResult.fail(ErrorKind.VALIDATION, "Validation error", details=field_errors(e))

            user = self.get_user_by_email(data.email)
            if not user:
                return OperationResult.fail(ErrorKind.NOT_FOUND, "User not found")

            expired = (
                user.reset_password_expires is None
                or user.reset_password_expires < datetime.utcnow()
            )
            if not user.reset_password_verified or expired:
                return OperationResult.fail(ErrorKind.VALIDATION, "Please verify your OTP first")

            user.hashed_password = hash_password(data.new_password)
            user.reset_password_token = None
            user.reset_password_expires = None
            user.reset_password_verified = False
            self._commit()

            logger.info(f"Password reset for user {user.id}")
            return OperationResult.ok(message="Password reset successfully")

    # Profile and address

    def update_info(self, ctx: Optional[AuthContext], form: dict) -> OperationResult:
        with tracer.start_as_current_span("user_service.update_info"):
            if ctx is None or not ctx.has_role(SELF_SERVICE_ROLES):
                return OperationResult.fail(ErrorKind.FORBIDDEN, "Unauthorized")

            try:
                data = UserInfoUpdate.model_validate(form)
            except ValidationError as e:
                return OperationResult.fail(ErrorKind.VALIDATION, "Validation error", details=field_errors(e))

            if data.role is not None and data.role not in SELF_SERVICE_ROLES:
                return OperationResult.fail(
                    ErrorKind.VALIDATION, "Validation error", details={"role": ["Role must be USER or DOCTOR"]}
                )

            user = self.get_user(ctx.user_id)
            if not user:
                return OperationResult.fail(ErrorKind.NOT_FOUND, "User not found!")

            user.name = data.name
            user.phone = data.contact_no
            if data.role is not None:
                user.role = data.role
            self._commit()
            return OperationResult.ok(message="User info updated")

    def add_address(self, ctx: Optional[AuthContext], data: AddressInput) -> OperationResult:
        if ctx is None:
            return OperationResult.fail(ErrorKind.UNAUTHORIZED, "Unauthorized")

        user = self.get_user(ctx.user_id)
        if not user:
            return OperationResult.fail(ErrorKind.NOT_FOUND, "User not found!")
        if user.delivery_address:
            return OperationResult.fail(
                ErrorKind.VALIDATION, "You already added an address. Please update it instead."
            )

        address = DeliveryAddress(user_id=user.id, **data.model_dump())
        self.db.add(address)
        self._commit()
        self.db.refresh(address)
        logger.info(f"Address {address.id} added for user {user.id}")
        return OperationResult.ok(AddressRecord.model_validate(address))

    def get_profile(self, ctx: Optional[AuthContext]) -> OperationResult:
        if ctx is None:
            return OperationResult.fail(ErrorKind.UNAUTHORIZED, "Unauthorized")

        user = self.get_user(ctx.user_id)
        if not user:
            return OperationResult.fail(ErrorKind.NOT_FOUND, "User not found!")
        return OperationResult.ok(UserResponse.model_validate(user))

    def update_address(self, ctx: Optional[AuthContext], data: AddressInput) -> OperationResult:
        """Update the user's address, creating it when missing"""
        if ctx is None:
            return OperationResult.fail(ErrorKind.UNAUTHORIZED, "Unauthorized")

        user = self.get_user(ctx.user_id)
        if not user:
            return OperationResult.fail(ErrorKind.NOT_FOUND, "User not found!")

        address = user.delivery_address
        if address is None:
            address = DeliveryAddress(user_id=user.id)
            self.db.add(address)
        for field, value in data.model_dump().items():
            setattr(address, field, value)

        self._commit()
        self.db.refresh(address)
        return OperationResult.ok(AddressRecord.model_validate(address))
