"""
FastAPI routes for paying orders, gateway webhooks and payment links
"""
from fastapi import APIRouter, Depends, Header, Query, Request
from typing import Optional
import logging

from pharmacy_service.api.deps import (
    get_current_user,
    get_notifier,
    get_payment_bridge,
    raise_for_result,
)
from pharmacy_service.models.schemas import (
    ConfirmIntentRequest,
    CreateIntentRequest,
    CreateIntentResponse,
    DeliveryResponse,
    OrderByCodeResponse,
    PaymentConfirmation,
    PaymentLinkEmailRequest,
    PaymentLinkSmsRequest,
)
from pharmacy_service.services.auth import AuthContext, actor_id
from pharmacy_service.services.notifications import NotificationDispatcher
from pharmacy_service.services.payment_bridge import PaymentBridge

logger = logging.getLogger(__name__)

router = APIRouter(tags=["payments"])


@router.post("/payments/create", response_model=CreateIntentResponse)
async def create_payment_intent(
    body: CreateIntentRequest,
    ctx: Optional[AuthContext] = Depends(get_current_user),
    bridge: PaymentBridge = Depends(get_payment_bridge),
):
    """Create a payment intent for an order; guests may pay with the order code"""
    result = await bridge.create_intent(
        body.order_code,
        payer_id=actor_id(ctx),
        payer_name=ctx.name if ctx else None,
    )
    raise_for_result(result)
    return result.data


@router.post("/payments/confirm", response_model=PaymentConfirmation)
async def confirm_payment(
    body: ConfirmIntentRequest,
    ctx: Optional[AuthContext] = Depends(get_current_user),
    bridge: PaymentBridge = Depends(get_payment_bridge),
):
    result = await bridge.confirm_intent(
        body.payment_intent_id,
        payer_id=actor_id(ctx),
        payer_name=ctx.name if ctx else None,
    )
    raise_for_result(result)
    return result.data


@router.get("/payments/order-by-code", response_model=OrderByCodeResponse)
async def get_order_by_code(
    code: Optional[str] = Query(None, description="4-character order code"),
    bridge: PaymentBridge = Depends(get_payment_bridge),
):
    result = await bridge.get_order_by_code(code)
    raise_for_result(result)
    return result.data


@router.post("/webhooks/stripe")
async def stripe_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(None, alias="stripe-signature"),
    bridge: PaymentBridge = Depends(get_payment_bridge),
):
    """Payment events pushed by Stripe"""
    payload = await request.body()
    result = await bridge.handle_webhook(payload, stripe_signature)
    raise_for_result(result)
    return {"received": True}


@router.post("/send-payment-link/email", response_model=DeliveryResponse)
async def send_payment_link_email(
    body: PaymentLinkEmailRequest,
    notifier: NotificationDispatcher = Depends(get_notifier),
):
    result = await notifier.send_payment_link_email(body.email, body.code)
    raise_for_result(result)
    return DeliveryResponse(message=result.message)


@router.post("/send-payment-link/sms", response_model=DeliveryResponse)
async def send_payment_link_sms(
    body: PaymentLinkSmsRequest,
    notifier: NotificationDispatcher = Depends(get_notifier),
):
    result = await notifier.send_payment_link_sms(body.phone, body.code)
    raise_for_result(result)
    return DeliveryResponse(message=result.message)
