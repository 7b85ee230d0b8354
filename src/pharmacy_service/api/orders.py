"""
FastAPI routes for orders: checkout, customer views and staff actions
"""
from fastapi import APIRouter, Depends, File, Form, Query, UploadFile
from typing import Optional
import logging

from pharmacy_service.api.deps import get_current_user, get_order_workflow, raise_for_result
from pharmacy_service.models.schemas import (
    MessageResponse,
    OrderDetailResponse,
    OrderListResponse,
    OrderPlacedResponse,
    StaffActionRequest,
)
from pharmacy_service.services.auth import AuthContext
from pharmacy_service.services.order_workflow import OrderDraft, OrderWorkflow, PrescriptionFile

logger = logging.getLogger(__name__)

router = APIRouter(tags=["orders"])


def _order_list(result) -> OrderListResponse:
    raise_for_result(result)
    return OrderListResponse(total=len(result.data), data=result.data)


@router.post("/orders", response_model=OrderPlacedResponse)
async def create_order(
    delivery_address_id: Optional[str] = Form(None, alias="deliveryAddressId"),
    items: Optional[str] = Form(None),
    patient_id: Optional[str] = Form(None, alias="patientId"),
    prescription: Optional[UploadFile] = File(None),
    ctx: Optional[AuthContext] = Depends(get_current_user),
    workflow: OrderWorkflow = Depends(get_order_workflow),
):
    """
    Place an order from the cart

    - **deliveryAddressId**: address the order ships to
    - **items**: JSON list of {productId, quantity}
    - **patientId**: required when a doctor orders for a patient
    - **prescription**: file, required when any product needs one
    """
    prescription_file = None
    if prescription is not None and prescription.filename:
        prescription_file = PrescriptionFile(
            content=await prescription.read(),
            content_type=prescription.content_type,
            filename=prescription.filename,
        )

    result = await workflow.create_order(ctx, OrderDraft(
        delivery_address_id=delivery_address_id,
        items=items,
        patient_id=patient_id or None,
        prescription=prescription_file,
    ))
    raise_for_result(result)
    return result.data


@router.get("/orders", response_model=OrderListResponse)
async def list_orders(
    ctx: Optional[AuthContext] = Depends(get_current_user),
    workflow: OrderWorkflow = Depends(get_order_workflow),
):
    """List every order, newest first"""
    return _order_list(await workflow.list_orders(ctx))


@router.get("/orders/paid", response_model=OrderListResponse)
async def list_paid_orders(
    ctx: Optional[AuthContext] = Depends(get_current_user),
    workflow: OrderWorkflow = Depends(get_order_workflow),
):
    """Orders waiting to be fulfilled"""
    return _order_list(await workflow.list_paid_orders(ctx))


@router.get("/orders/{order_id}", response_model=OrderDetailResponse)
async def get_order(
    order_id: str,
    ctx: Optional[AuthContext] = Depends(get_current_user),
    workflow: OrderWorkflow = Depends(get_order_workflow),
):
    result = await workflow.get_order(ctx, order_id)
    raise_for_result(result)
    return OrderDetailResponse(data=result.data)


@router.post("/orders/{order_id}/cancel", response_model=MessageResponse)
async def cancel_order(
    order_id: str,
    ctx: Optional[AuthContext] = Depends(get_current_user),
    workflow: OrderWorkflow = Depends(get_order_workflow),
):
    """
    Cancel one of the caller's orders

    Only CREATED or PAID orders can be cancelled.
    """
    logger.info(f"Cancelling order {order_id}")
    result = await workflow.cancel(ctx, order_id)
    raise_for_result(result)
    return MessageResponse(message=result.message)


@router.get("/staff/orders", response_model=OrderListResponse)
async def list_staff_orders(
    status_filter: Optional[str] = Query("ALL", alias="status", description="Order status or ALL"),
    ctx: Optional[AuthContext] = Depends(get_current_user),
    workflow: OrderWorkflow = Depends(get_order_workflow),
):
    return _order_list(await workflow.list_orders(ctx, status_filter))


@router.post("/staff/orders/{order_id}/fulfill", response_model=OrderDetailResponse)
async def fulfill_order(
    order_id: str,
    ctx: Optional[AuthContext] = Depends(get_current_user),
    workflow: OrderWorkflow = Depends(get_order_workflow),
):
    logger.info(f"Fulfilling order {order_id}")
    result = await workflow.fulfill(ctx, order_id)
    raise_for_result(result)
    return OrderDetailResponse(data=result.data)


@router.post("/staff/orders/{order_id}/refund", response_model=OrderDetailResponse)
async def refund_order(
    order_id: str,
    body: Optional[StaffActionRequest] = None,
    ctx: Optional[AuthContext] = Depends(get_current_user),
    workflow: OrderWorkflow = Depends(get_order_workflow),
):
    """Refund a paid order through the payment gateway; a comment is required"""
    logger.info(f"Refunding order {order_id}")
    result = await workflow.refund(ctx, order_id, body.comment if body else None)
    raise_for_result(result)
    return OrderDetailResponse(data=result.data)


@router.post("/staff/orders/{order_id}/reject", response_model=OrderDetailResponse)
async def reject_order(
    order_id: str,
    body: Optional[StaffActionRequest] = None,
    ctx: Optional[AuthContext] = Depends(get_current_user),
    workflow: OrderWorkflow = Depends(get_order_workflow),
):
    """Reject a paid order; a comment is required"""
    logger.info(f"Rejecting order {order_id}")
    result = await workflow.reject(ctx, order_id, body.comment if body else None)
    raise_for_result(result)
    return OrderDetailResponse(data=result.data)


@router.get("/user/orders", response_model=OrderListResponse)
async def list_user_orders(
    status_filter: Optional[str] = Query("ALL", alias="status"),
    ctx: Optional[AuthContext] = Depends(get_current_user),
    workflow: OrderWorkflow = Depends(get_order_workflow),
):
    """The caller's own orders"""
    return _order_list(await workflow.list_user_orders(ctx, status_filter))
