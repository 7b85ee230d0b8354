"""
Shared route dependencies: the caller's session, outbound clients and
service factories, and the mapping from service results to HTTP errors.
"""
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.orm import Session
from typing import Optional
import logging

from pharmacy_service.config import settings
from pharmacy_service.db.database import get_db
from pharmacy_service.services import events
from pharmacy_service.services.auth import AuthContext, decode_access_token
from pharmacy_service.services.notifications import EmailSender, NotificationDispatcher, SmsSender
from pharmacy_service.services.order_repository import SqlCatalogRepository, SqlOrderRepository
from pharmacy_service.services.order_workflow import OrderWorkflow
from pharmacy_service.services.payment_bridge import PaymentBridge
from pharmacy_service.services.payment_gateway import PaymentGateway
from pharmacy_service.services.recaptcha import RecaptchaClient
from pharmacy_service.services.results import ErrorKind, OperationResult
from pharmacy_service.services.storage import ObjectStorage
from pharmacy_service.services.user_service import UserService

logger = logging.getLogger(__name__)

bearer_scheme = HTTPBearer(auto_error=False)

# Outbound clients (initialized in main.py)
payment_gateway: Optional[PaymentGateway] = None
email_sender: Optional[EmailSender] = None
sms_sender: Optional[SmsSender] = None
object_storage: Optional[ObjectStorage] = None
recaptcha_client: Optional[RecaptchaClient] = None

ERROR_STATUS = {
    ErrorKind.VALIDATION: status.HTTP_400_BAD_REQUEST,
    ErrorKind.UNAUTHORIZED: status.HTTP_401_UNAUTHORIZED,
    ErrorKind.FORBIDDEN: status.HTTP_403_FORBIDDEN,
    ErrorKind.NOT_FOUND: status.HTTP_400_BAD_REQUEST,
    ErrorKind.INVALID_STATE: status.HTTP_400_BAD_REQUEST,
    ErrorKind.UPSTREAM: status.HTTP_500_INTERNAL_SERVER_ERROR,
    ErrorKind.INTERNAL: status.HTTP_500_INTERNAL_SERVER_ERROR,
}


def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> Optional[AuthContext]:
    """The caller's session, or None for anonymous requests"""
    if credentials is None:
        return None
    return decode_access_token(credentials.credentials)


def get_payment_gateway() -> PaymentGateway:
    """Dependency for the payment gateway client"""
    return payment_gateway


def get_email_sender() -> EmailSender:
    return email_sender


def get_sms_sender() -> SmsSender:
    return sms_sender


def get_object_storage() -> ObjectStorage:
    return object_storage


def get_recaptcha_client() -> Optional[RecaptchaClient]:
    return recaptcha_client


def get_broadcaster() -> events.EventBroadcaster:
    return events.broadcaster


def get_notifier(
    email: EmailSender = Depends(get_email_sender),
    sms: SmsSender = Depends(get_sms_sender),
) -> NotificationDispatcher:
    """Dependency for the notification dispatcher"""
    return NotificationDispatcher(
        email,
        sms,
        payment_link_base_url=settings.payment_link_base_url,
        app_base_url=settings.app_base_url,
    )


def get_order_workflow(
    db: Session = Depends(get_db),
    gateway: PaymentGateway = Depends(get_payment_gateway),
    storage: ObjectStorage = Depends(get_object_storage),
    notifier: NotificationDispatcher = Depends(get_notifier),
    broadcaster: events.EventBroadcaster = Depends(get_broadcaster),
) -> OrderWorkflow:
    """Dependency for the order workflow"""
    return OrderWorkflow(
        SqlOrderRepository(db),
        SqlCatalogRepository(db),
        gateway,
        storage,
        notifier,
        broadcaster,
    )


def get_payment_bridge(
    db: Session = Depends(get_db),
    gateway: PaymentGateway = Depends(get_payment_gateway),
    notifier: NotificationDispatcher = Depends(get_notifier),
    broadcaster: events.EventBroadcaster = Depends(get_broadcaster),
) -> PaymentBridge:
    """Dependency for the payment bridge"""
    return PaymentBridge(
        SqlOrderRepository(db),
        gateway,
        notifier,
        broadcaster,
        webhook_secret=settings.stripe_webhook_secret,
        currency=settings.payment_currency,
    )


def get_user_service(
    db: Session = Depends(get_db),
    notifier: NotificationDispatcher = Depends(get_notifier),
    recaptcha: Optional[RecaptchaClient] = Depends(get_recaptcha_client),
) -> UserService:
    """Dependency for the user service"""
    return UserService(db, notifier, recaptcha)


def raise_for_result(result: OperationResult, not_found_status: int = status.HTTP_400_BAD_REQUEST):
    """Raise the HTTPException matching a failed result; no-op on success"""
    if result.success:
        return

    if result.error == ErrorKind.NOT_FOUND:
        status_code = not_found_status
    elif result.error == ErrorKind.UPSTREAM and result.status_code:
        status_code = result.status_code
    else:
        status_code = ERROR_STATUS[result.error]

    logger.info(f"Request failed with {result.error.value}: {result.message}")

    detail = result.message
    if result.details:
        detail = {"message": result.message, "errors": result.details}
    raise HTTPException(status_code=status_code, detail=detail)
