"""
Quotations API - FastAPI routers for the custom quotation workflow.

Admin routes see everything including internal notes; customer routes go
through the service's customer view.
"""
from typing import Optional

from fastapi import APIRouter
from fastapi.encoders import jsonable_encoder
from fastapi.responses import PlainTextResponse
from pydantic import BaseModel

from ..engine.models import MONTHLY
from ..services.quotation_service import ADMIN, CUSTOMER, QuoteInput
from . import state
from .errors import service_errors

admin_router = APIRouter(prefix="/api/admin/quotations", tags=["quotations-admin"])
customer_router = APIRouter(prefix="/api/quotations", tags=["quotations"])


class QuotationRequestCreate(BaseModel):
    organization_id: str
    requested_inspections: int
    currency: str
    preferred_billing_period: str = MONTHLY
    customer_notes: Optional[str] = None
    submitted_by: Optional[str] = None


class AdminAction(BaseModel):
    admin_id: str


class QuoteCreate(BaseModel):
    """Request model for issuing or revising a quote."""
    admin_id: str
    quoted_price: int
    quoted_inspections: int
    billing_period: str = MONTHLY
    currency: Optional[str] = None
    admin_notes: Optional[str] = None
    customer_notes: Optional[str] = None


class CustomerAction(BaseModel):
    customer_id: str
    reason: Optional[str] = None


# Admin endpoints

@admin_router.get("")
async def list_requests(status: Optional[str] = None):
    with service_errors():
        return jsonable_encoder(state.quotation_service.list_requests(status))


@admin_router.get("/stats")
async def get_stats():
    return state.quotation_service.stats()


@admin_router.get("/export", response_class=PlainTextResponse)
async def export_requests():
    """All requests with their current quote, as CSV."""
    return PlainTextResponse(state.quotation_service.export_csv(), media_type="text/csv")


@admin_router.get("/{request_id}")
async def get_request_details(request_id: str):
    with service_errors():
        return jsonable_encoder(state.quotation_service.get_details(request_id))


@admin_router.post("/{request_id}/assign")
async def assign_request(request_id: str, action: AdminAction):
    with service_errors():
        return jsonable_encoder(state.quotation_service.assign(request_id, action.admin_id))


@admin_router.post("/{request_id}/contacted")
async def mark_contacted(request_id: str, action: AdminAction):
    with service_errors():
        return jsonable_encoder(state.quotation_service.mark_contacted(request_id, action.admin_id))


@admin_router.post("/{request_id}/quote")
async def create_quote(request_id: str, data: QuoteCreate):
    quote = QuoteInput(**data.model_dump(exclude={'admin_id'}))
    with service_errors():
        return jsonable_encoder(state.quotation_service.create_quote(request_id, data.admin_id, quote))


@admin_router.post("/{request_id}/cancel")
async def admin_cancel(request_id: str, action: AdminAction):
    with service_errors():
        return jsonable_encoder(state.quotation_service.cancel(request_id, action.admin_id, actor_type=ADMIN))


# Customer endpoints

@customer_router.post("", status_code=201)
async def submit_request(data: QuotationRequestCreate):
    with service_errors():
        request = state.quotation_service.submit_request(**data.model_dump())
    return jsonable_encoder(state.quotation_service.customer_view(request.id))


@customer_router.get("/{request_id}")
async def get_customer_view(request_id: str):
    with service_errors():
        return jsonable_encoder(state.quotation_service.customer_view(request_id, mark_viewed=True))


@customer_router.post("/{request_id}/accept")
async def accept_quote(request_id: str, action: CustomerAction):
    with service_errors():
        state.quotation_service.accept(request_id, action.customer_id)
        return jsonable_encoder(state.quotation_service.customer_view(request_id, mark_viewed=True))


@customer_router.post("/{request_id}/reject")
async def reject_quote(request_id: str, action: CustomerAction):
    with service_errors():
        state.quotation_service.reject(request_id, action.customer_id, reason=action.reason)
        return jsonable_encoder(state.quotation_service.customer_view(request_id, mark_viewed=True))


@customer_router.post("/{request_id}/cancel")
async def customer_cancel(request_id: str, action: CustomerAction):
    with service_errors():
        state.quotation_service.cancel(request_id, action.customer_id, actor_type=CUSTOMER)
        return jsonable_encoder(state.quotation_service.customer_view(request_id, mark_viewed=True))
