"""
Email and SMS delivery.

Payment links are sent on request and report failures to the caller. Order
event messages (placed, paid, fulfilled, ...) are best effort: a failed
delivery is logged and never changes the outcome of the order operation
that triggered it.
"""
from typing import List, Optional, Protocol
from html import escape
from botocore.exceptions import BotoCoreError, ClientError
from opentelemetry import trace
import asyncio
import boto3
import logging
import re

from pharmacy_service.models.order import OrderStatus
from pharmacy_service.models.records import ContactRecord, OrderRecord
from pharmacy_service.services.results import ErrorKind, OperationResult

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

# +1 followed by a NANP area code and exchange (neither may start with 0 or 1)
US_PHONE_PATTERN = re.compile(r"^\+1[2-9]\d{2}[2-9]\d{6}$")

ORDER_CODE_LENGTH = 4


class DeliveryError(Exception):
    """The email or SMS vendor rejected the message"""


class EmailSender(Protocol):
    async def send_email(self, to: str, subject: str, html: str) -> bool:
        """Send one email; False when the sender is not configured"""
        ...


class SmsSender(Protocol):
    async def send_sms(self, phone: str, message: str) -> bool:
        """Send one SMS; False when the sender is not configured"""
        ...


def is_us_phone(phone: Optional[str]) -> bool:
    return bool(phone) and US_PHONE_PATTERN.match(phone) is not None


class _BotoSender:
    """Lazily created boto3 client whose calls run in the default executor"""

    service_name = ""

    def __init__(
        self,
        region: str = "us-east-1",
        aws_access_key_id: Optional[str] = None,
        aws_secret_access_key: Optional[str] = None,
    ):
        self._client = None
        self._client_kwargs = {"region_name": region}
        if aws_access_key_id:
            self._client_kwargs["aws_access_key_id"] = aws_access_key_id
            self._client_kwargs["aws_secret_access_key"] = aws_secret_access_key

    def _get_client(self):
        if self._client is None:
            self._client = boto3.client(self.service_name, **self._client_kwargs)
        return self._client

    async def _call(self, method: str, **kwargs) -> dict:
        func = getattr(self._get_client(), method)
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(None, lambda: func(**kwargs))
        except (BotoCoreError, ClientError) as e:
            raise DeliveryError(str(e)) from e


class SesEmailSender(_BotoSender):
    """EmailSender backed by AWS SES"""

    service_name = "ses"

    def __init__(self, sender: Optional[str], **kwargs):
        super().__init__(**kwargs)
        self.sender = sender

    async def send_email(self, to: str, subject: str, html: str) -> bool:
        with tracer.start_as_current_span("notifications.send_email") as span:
            if not self.sender:
                logger.warning(f"Email sender not configured, not sending '{subject}'")
                return False

            response = await self._call(
                "send_email",
                Source=self.sender,
                Destination={"ToAddresses": [to]},
                Message={
                    "Subject": {"Data": subject},
                    "Body": {"Html": {"Data": html}},
                },
            )
            span.set_attribute("ses.message_id", response.get("MessageId", ""))
            logger.info(f"Email '{subject}' sent: {response.get('MessageId')}")
            return True


class SnsSmsSender(_BotoSender):
    """SmsSender backed by AWS SNS"""

    service_name = "sns"

    def __init__(self, enabled: bool = True, **kwargs):
        super().__init__(**kwargs)
        self.enabled = enabled

    async def send_sms(self, phone: str, message: str) -> bool:
        with tracer.start_as_current_span("notifications.send_sms") as span:
            if not self.enabled:
                logger.warning("SMS sending is disabled, message not sent")
                return False

            response = await self._call("publish", PhoneNumber=phone, Message=message)
            span.set_attribute("sns.message_id", response.get("MessageId", ""))
            logger.info(f"SMS sent: {response.get('MessageId')}")
            return True


class NotificationDispatcher:
    """Builds and delivers every customer-facing email and SMS"""

    def __init__(
        self,
        email_sender: EmailSender,
        sms_sender: SmsSender,
        payment_link_base_url: str,
        app_base_url: str = "http://localhost:3000",
    ):
        self.email_sender = email_sender
        self.sms_sender = sms_sender
        self.payment_link_base_url = payment_link_base_url.rstrip("/")
        self.app_base_url = app_base_url.rstrip("/")

    def payment_link(self, code: str) -> str:
        return f"{self.payment_link_base_url}/payOrder?code={code}"

    # Payment links

    async def send_payment_link_email(self, address: str, code: str) -> OperationResult:
        if not address or not code:
            return OperationResult.fail(ErrorKind.VALIDATION, "Missing email or code")
        if len(code) != ORDER_CODE_LENGTH:
            return OperationResult.fail(ErrorKind.VALIDATION, "Order code must be 4 characters")

        link = self.payment_link(code)
        html = (
            "<p>Hello,</p><p>You can pay for your order using the following link:</p>"
            f"<p><a href='{link}'>{link}</a></p><p>Your 4-digit code: <b>{code}</b></p>"
        )
        try:
            sent = await self.email_sender.send_email(address, "Pay for your order", html)
        except DeliveryError as e:
            logger.error(f"Failed to send payment link email: {e}")
            return OperationResult.fail(ErrorKind.UPSTREAM, "Failed to send email")

        if not sent:
            return OperationResult.fail(ErrorKind.UPSTREAM, "Failed to send email")
        return OperationResult.ok(message="Email sent")

    async def send_payment_link_sms(self, phone: str, code: str) -> OperationResult:
        if not phone or not code:
            return OperationResult.fail(ErrorKind.VALIDATION, "Missing phone or code")
        if len(code) != ORDER_CODE_LENGTH:
            return OperationResult.fail(ErrorKind.VALIDATION, "Order code must be 4 characters")
        if not is_us_phone(phone):
            logger.warning("Rejected payment link SMS to a non-US number")
            return OperationResult.fail(
                ErrorKind.VALIDATION,
                "Phone number must be a US number in +1XXXXXXXXXX format",
            )

        link = self.payment_link(code)
        message = f"You can pay for your order using this link: {link} (Code: {code})"
        try:
            sent = await self.sms_sender.send_sms(phone, message)
        except DeliveryError as e:
            logger.error(f"Failed to send payment link SMS: {e}")
            return OperationResult.fail(ErrorKind.UPSTREAM, "Failed to send SMS")

        if not sent:
            return OperationResult.fail(ErrorKind.UPSTREAM, "Failed to send SMS")
        return OperationResult.ok(message="SMS sent")

    # Best-effort order events

    async def _email(self, to: Optional[str], subject: str, html: str) -> None:
        if not to:
            return
        try:
            await self.email_sender.send_email(to, subject, html)
        except Exception as e:
            logger.error(f"Failed to send '{subject}' email: {e}")

    async def _sms(self, phone: Optional[str], message: str) -> None:
        if not is_us_phone(phone):
            if phone:
                logger.info("Skipping order SMS to a non-US number")
            return
        try:
            await self.sms_sender.send_sms(phone, message)
        except Exception as e:
            logger.error(f"Failed to send order SMS: {e}")

    @staticmethod
    def _targets(order: OrderRecord) -> List[ContactRecord]:
        return [person for person in (order.patient, order.user) if person is not None]

    async def order_placed(self, order: OrderRecord) -> None:
        for target in self._targets(order):
            html = (
                f"<p>Hi {escape(target.name)},</p><p>Your order has been placed successfully.</p>"
                f"<p><b>Order Code:</b> {order.code}</p>"
                f"<p><b>Total Product Cost:</b> ${order.product_cost:.2f}</p>"
                f"<p><b>Delivery Cost:</b> ${order.delivery_price:.2f}</p>"
                f"<p><b>Total Weight:</b> {order.total_weight:.2f} lbs</p>"
                f"<p><b>Total Order Cost:</b> ${order.total_price:.2f}</p>"
            )
            if order.patient:
                html += f"<p><b>Patient Name:</b> {escape(order.patient.name)}</p>"
            await self._email(target.email, "Your order has been placed!", html)
            await self._sms(
                target.phone,
                f"Hi {target.name}, your order (#{order.code}) has been placed. "
                f"Total: ${order.total_price:.2f} (Products: ${order.product_cost:.2f}, "
                f"Delivery: ${order.delivery_price:.2f}, Weight: {order.total_weight:.2f} lbs)",
            )

    async def order_paid(self, order: OrderRecord) -> None:
        paid_html = "<p>Hi {name},</p><p>Your order has been <b>paid successfully</b>. <b>Order Code: {code}</b>.</p>"

        if order.patient:
            await self._email(
                order.patient.email,
                "Your order has been paid!",
                paid_html.format(name=escape(order.patient.name), code=order.code),
            )
            if order.user:
                await self._email(
                    order.user.email,
                    "Payment received for patient's order",
                    f"<p>Hi {escape(order.user.name)},</p><p>Payment has been received for your patient "
                    f"{escape(order.patient.name)}'s order. <b>Order Code: {order.code}</b>.</p>",
                )
        elif order.user:
            await self._email(
                order.user.email,
                "Your order has been paid!",
                paid_html.format(name=escape(order.user.name), code=order.code),
            )

    async def order_status_changed(
        self, order: OrderRecord, comment: Optional[str] = None
    ) -> None:
        """Tell the customer their order was fulfilled, rejected, refunded or cancelled"""
        target = order.notify_target()
        if target is None:
            return

        wording = {
            OrderStatus.FULFILLED: "fulfilled successfully",
            OrderStatus.REJECTED: "rejected",
            OrderStatus.REFUNDED: "refunded",
            OrderStatus.CANCELLED: "cancelled",
        }.get(order.status)
        if wording is None:
            return

        html = f"<p>Hi {escape(target.name)},</p><p>Your order has been <b>{wording}</b>. <b>Order Code: {order.code}</b>.</p>"
        if comment:
            html += f"<p><b>Reason:</b> {escape(comment)}</p>"
        subject = f"Your order has been {order.status.value.lower()}"
        await self._email(target.email, subject, html)

    # Account emails

    async def verification_email(self, email: str, name: str, token: str) -> None:
        link = f"{self.app_base_url}/verify-mail?token={token}"
        await self._email(
            email,
            "Confirm your email",
            f"<p>Hi {escape(name)},</p><p>Click <a href='{link}'>here</a> to confirm your email.</p>",
        )

    async def password_reset_otp(self, email: str, name: str, otp: str) -> None:
        await self._email(
            email,
            "Your password reset code",
            f"<p>Hi {escape(name)},</p><p>Your password reset code is <b>{otp}</b>. "
            "It expires in 15 minutes.</p>",
        )
