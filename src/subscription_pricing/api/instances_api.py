"""
Organisation Subscriptions API - negotiated prices and module settings per organisation.
"""
from typing import Optional

from fastapi import APIRouter
from fastapi.encoders import jsonable_encoder
from pydantic import BaseModel

from ..engine.models import MONTHLY
from . import state
from .errors import service_errors

router = APIRouter(prefix="/api/admin/instances", tags=["instances-admin"])


class SubscriptionInput(BaseModel):
    """Request model for setting an organisation's subscription."""
    registration_currency: str
    current_tier_id: Optional[str] = None
    override_monthly_fee: Optional[int] = None
    override_annual_fee: Optional[int] = None
    is_active: bool = True


class ModuleToggle(BaseModel):
    is_enabled: bool = True


class ModuleOverrideInput(BaseModel):
    override_monthly_price: Optional[int] = None
    override_annual_price: Optional[int] = None
    is_active: bool = True


@router.get("")
async def list_subscriptions():
    return jsonable_encoder(state.catalog_service.list_instance_subscriptions())


@router.get("/{organization_id}")
async def get_subscription(organization_id: str):
    with service_errors():
        return jsonable_encoder(state.catalog_service.get_instance_subscription(organization_id))


@router.put("/{organization_id}")
async def set_subscription(organization_id: str, data: SubscriptionInput):
    with service_errors():
        return jsonable_encoder(state.catalog_service.set_instance_subscription(organization_id, data.model_dump()))


@router.delete("/{organization_id}")
async def delete_subscription(organization_id: str):
    with service_errors():
        state.catalog_service.delete_instance_subscription(organization_id)
    return {"success": True}


@router.get("/{organization_id}/price")
async def get_instance_price(organization_id: str, billing_period: str = MONTHLY):
    """What the organisation pays for its subscription, overrides applied."""
    with service_errors():
        return jsonable_encoder(state.engine.calculate_instance_price(organization_id, billing_period))


@router.put("/{organization_id}/modules/{module_id}")
async def toggle_module(organization_id: str, module_id: str, data: ModuleToggle):
    with service_errors():
        return jsonable_encoder(state.catalog_service.set_instance_module(organization_id, module_id, data.is_enabled))


@router.get("/{organization_id}/modules/{module_id}/price")
async def get_module_price(organization_id: str, module_id: str, billing_period: str = MONTHLY):
    with service_errors():
        price = state.engine.calculate_module_price(organization_id, module_id, billing_period)
        available = state.engine.is_module_available_for_instance(module_id, organization_id)
    return {"price": jsonable_encoder(price), "available": available}


@router.put("/{organization_id}/modules/{module_id}/override")
async def set_module_override(organization_id: str, module_id: str, data: ModuleOverrideInput):
    with service_errors():
        return jsonable_encoder(
            state.catalog_service.set_module_override(organization_id, module_id, data.model_dump())
        )


@router.delete("/{organization_id}/modules/{module_id}/override")
async def delete_module_override(organization_id: str, module_id: str):
    with service_errors():
        state.catalog_service.delete_module_override(organization_id, module_id)
    return {"success": True}


@router.put("/{organization_id}/bundles/{bundle_id}")
async def add_bundle(organization_id: str, bundle_id: str):
    with service_errors():
        return jsonable_encoder(state.catalog_service.add_instance_bundle(organization_id, bundle_id))


@router.delete("/{organization_id}/bundles/{bundle_id}")
async def remove_bundle(organization_id: str, bundle_id: str):
    with service_errors():
        state.catalog_service.remove_instance_bundle(organization_id, bundle_id)
    return {"success": True}
