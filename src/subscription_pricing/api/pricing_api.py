"""
Pricing Admin API - FastAPI router for catalog management and previews.
"""
from typing import Optional

from fastapi import APIRouter
from fastapi.encoders import jsonable_encoder
from pydantic import BaseModel

from . import state
from .errors import service_errors

router = APIRouter(prefix="/api/admin", tags=["pricing-admin"])


# Pydantic models for API

class CurrencyCreate(BaseModel):
    code: str
    symbol: str
    is_active: bool = True
    default_for_region: Optional[str] = None
    conversion_rate: float = 1.0


class CurrencyUpdate(BaseModel):
    symbol: Optional[str] = None
    is_active: Optional[bool] = None
    default_for_region: Optional[str] = None
    conversion_rate: Optional[float] = None


class TierCreate(BaseModel):
    """Request model for creating a subscription tier."""
    name: str
    code: str
    tier_order: int
    included_inspections: int
    base_price_monthly: int
    base_price_annual: int
    annual_discount_percentage: Optional[float] = None
    description: Optional[str] = None
    is_active: bool = True
    requires_custom_pricing: bool = False


class TierUpdate(BaseModel):
    name: Optional[str] = None
    code: Optional[str] = None
    tier_order: Optional[int] = None
    included_inspections: Optional[int] = None
    base_price_monthly: Optional[int] = None
    base_price_annual: Optional[int] = None
    annual_discount_percentage: Optional[float] = None
    description: Optional[str] = None
    is_active: Optional[bool] = None
    requires_custom_pricing: Optional[bool] = None


class TierPricingInput(BaseModel):
    currency_code: str
    price_monthly: int
    price_annual: int
    per_inspection_price: int = 0


class PackCreate(BaseModel):
    name: str
    inspection_quantity: int
    pack_order: int = 0
    is_active: bool = True


class PackUpdate(BaseModel):
    name: Optional[str] = None
    inspection_quantity: Optional[int] = None
    pack_order: Optional[int] = None
    is_active: Optional[bool] = None


class PackPricingInput(BaseModel):
    """Per-inspection price for a (tier, currency). The pack total is derived server-side."""
    tier_id: str
    currency_code: str
    price_per_inspection: int


class ExtensiveTypeCreate(BaseModel):
    name: str
    image_count: int = 800
    description: Optional[str] = None
    is_active: bool = True


class ExtensiveTypeUpdate(BaseModel):
    name: Optional[str] = None
    image_count: Optional[int] = None
    description: Optional[str] = None
    is_active: Optional[bool] = None


class ExtensivePricingInput(BaseModel):
    tier_id: str
    currency_code: str
    price_per_inspection: int


class ModuleCreate(BaseModel):
    name: str
    module_key: str
    display_order: int = 0
    description: Optional[str] = None
    is_available_globally: bool = True
    default_enabled: bool = False


class ModuleUpdate(BaseModel):
    name: Optional[str] = None
    module_key: Optional[str] = None
    display_order: Optional[int] = None
    description: Optional[str] = None
    is_available_globally: Optional[bool] = None
    default_enabled: Optional[bool] = None


class PeriodPricingInput(BaseModel):
    """Monthly/annual prices for a module in one currency."""
    currency_code: str
    price_monthly: int
    price_annual: int


class BundlePricingInput(PeriodPricingInput):
    savings_monthly: Optional[int] = None
    savings_annual: Optional[int] = None


class ModuleLimitInput(BaseModel):
    limit_type: str
    included_quantity: int
    overage_price: int
    overage_currency: str


class ModuleLimitUpdate(BaseModel):
    limit_type: Optional[str] = None
    included_quantity: Optional[int] = None
    overage_price: Optional[int] = None
    overage_currency: Optional[str] = None


class BundleCreate(BaseModel):
    name: str
    description: Optional[str] = None
    discount_percentage: Optional[float] = None
    is_active: bool = True
    module_ids: list[str] = []


class BundleUpdate(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    discount_percentage: Optional[float] = None
    is_active: Optional[bool] = None
    module_ids: Optional[list[str]] = None


class BundleModulesInput(BaseModel):
    module_ids: list[str]


# Endpoints: currencies

@router.get("/currencies")
async def list_currencies(active_only: bool = False):
    return jsonable_encoder(state.catalog_service.list_currencies(active_only=active_only))


@router.post("/currencies", status_code=201)
async def create_currency(data: CurrencyCreate):
    with service_errors():
        return jsonable_encoder(state.catalog_service.create_currency(data.model_dump()))


@router.put("/currencies/{code}")
async def update_currency(code: str, updates: CurrencyUpdate):
    with service_errors():
        return jsonable_encoder(state.catalog_service.update_currency(code, updates.model_dump(exclude_unset=True)))


@router.delete("/currencies/{code}")
async def delete_currency(code: str, cascade: Optional[bool] = None):
    """Delete a currency. Refused (409) while referenced unless cascading."""
    with service_errors():
        removed = state.catalog_service.delete_currency(code, cascade=cascade)
    return {"success": True, "removed": removed}


# Endpoints: subscription tiers

@router.get("/subscription-tiers")
async def list_tiers():
    return jsonable_encoder(state.catalog_service.list_tiers())


@router.post("/subscription-tiers", status_code=201)
async def create_tier(data: TierCreate):
    with service_errors():
        return jsonable_encoder(state.catalog_service.create_tier(data.model_dump()))


@router.put("/subscription-tiers/{tier_id}")
async def update_tier(tier_id: str, updates: TierUpdate):
    with service_errors():
        return jsonable_encoder(state.catalog_service.update_tier(tier_id, updates.model_dump(exclude_unset=True)))


@router.delete("/subscription-tiers/{tier_id}")
async def delete_tier(tier_id: str):
    with service_errors():
        state.catalog_service.delete_tier(tier_id)
    return {"success": True, "message": f"Tier '{tier_id}' deleted"}


@router.get("/subscription-tiers/{tier_id}/pricing")
async def list_tier_pricing(tier_id: str):
    with service_errors():
        return jsonable_encoder(state.catalog_service.list_tier_pricing(tier_id))


@router.put("/subscription-tiers/{tier_id}/pricing")
async def upsert_tier_pricing(tier_id: str, data: TierPricingInput):
    with service_errors():
        return jsonable_encoder(state.catalog_service.upsert_tier_pricing(tier_id, data.model_dump()))


@router.delete("/subscription-tiers/{tier_id}/pricing/{currency_code}")
async def delete_tier_pricing(tier_id: str, currency_code: str):
    with service_errors():
        state.catalog_service.delete_tier_pricing(tier_id, currency_code)
    return {"success": True}


@router.get("/subscription-tiers/{tier_id}/resolved-price")
async def resolve_tier_price(tier_id: str, currency: str):
    """Resolved price for a tier in a currency, with the resolution trace."""
    with service_errors():
        price, trace = state.engine.resolve_tier_price_with_trace(tier_id, currency)
    return {
        "price": jsonable_encoder(price),
        "is_fallback": price.is_fallback,
        "trace": [{"step": s, "description": d, "value": v} for s, d, v in trace],
    }


# Endpoints: add-on packs

@router.get("/addon-packs")
async def list_packs():
    return jsonable_encoder(state.catalog_service.list_packs())


@router.post("/addon-packs", status_code=201)
async def create_pack(data: PackCreate):
    with service_errors():
        return jsonable_encoder(state.catalog_service.create_pack(data.model_dump()))


@router.put("/addon-packs/{pack_id}")
async def update_pack(pack_id: str, updates: PackUpdate):
    with service_errors():
        return jsonable_encoder(state.catalog_service.update_pack(pack_id, updates.model_dump(exclude_unset=True)))


@router.delete("/addon-packs/{pack_id}")
async def delete_pack(pack_id: str):
    with service_errors():
        state.catalog_service.delete_pack(pack_id)
    return {"success": True, "message": f"Add-on pack '{pack_id}' deleted"}


@router.get("/addon-packs/{pack_id}/pricing")
async def list_pack_pricing(pack_id: str):
    with service_errors():
        return jsonable_encoder(state.catalog_service.list_pack_pricing(pack_id))


@router.put("/addon-packs/{pack_id}/pricing")
async def upsert_pack_pricing(pack_id: str, data: PackPricingInput):
    with service_errors():
        return jsonable_encoder(state.catalog_service.upsert_pack_pricing(pack_id, data.model_dump()))


@router.delete("/addon-packs/{pack_id}/pricing/{tier_id}/{currency_code}")
async def delete_pack_pricing(pack_id: str, tier_id: str, currency_code: str):
    with service_errors():
        state.catalog_service.delete_pack_pricing(pack_id, tier_id, currency_code)
    return {"success": True}


# Endpoints: extensive inspections

@router.get("/extensive-inspections")
async def list_extensive_types():
    return jsonable_encoder(state.catalog_service.list_extensive_types())


@router.post("/extensive-inspections", status_code=201)
async def create_extensive_type(data: ExtensiveTypeCreate):
    with service_errors():
        return jsonable_encoder(state.catalog_service.create_extensive_type(data.model_dump()))


@router.put("/extensive-inspections/{type_id}")
async def update_extensive_type(type_id: str, updates: ExtensiveTypeUpdate):
    with service_errors():
        return jsonable_encoder(
            state.catalog_service.update_extensive_type(type_id, updates.model_dump(exclude_unset=True))
        )


@router.delete("/extensive-inspections/{type_id}")
async def delete_extensive_type(type_id: str):
    with service_errors():
        state.catalog_service.delete_extensive_type(type_id)
    return {"success": True}


@router.get("/extensive-inspections/{type_id}/pricing")
async def list_extensive_pricing(type_id: str):
    with service_errors():
        return jsonable_encoder(state.catalog_service.list_extensive_pricing(type_id))


@router.put("/extensive-inspections/{type_id}/pricing")
async def upsert_extensive_pricing(type_id: str, data: ExtensivePricingInput):
    with service_errors():
        return jsonable_encoder(state.catalog_service.upsert_extensive_pricing(type_id, data.model_dump()))


@router.delete("/extensive-inspections/{type_id}/pricing/{tier_id}/{currency_code}")
async def delete_extensive_pricing(type_id: str, tier_id: str, currency_code: str):
    with service_errors():
        state.catalog_service.delete_extensive_pricing(type_id, tier_id, currency_code)
    return {"success": True}


# Endpoints: modules

@router.get("/modules")
async def list_modules():
    return jsonable_encoder(state.catalog_service.list_modules())


@router.post("/modules", status_code=201)
async def create_module(data: ModuleCreate):
    with service_errors():
        return jsonable_encoder(state.catalog_service.create_module(data.model_dump()))


@router.put("/modules/{module_id}")
async def update_module(module_id: str, updates: ModuleUpdate):
    with service_errors():
        return jsonable_encoder(state.catalog_service.update_module(module_id, updates.model_dump(exclude_unset=True)))


@router.delete("/modules/{module_id}")
async def delete_module(module_id: str):
    with service_errors():
        state.catalog_service.delete_module(module_id)
    return {"success": True}


@router.get("/modules/{module_id}/pricing")
async def list_module_pricing(module_id: str):
    with service_errors():
        return jsonable_encoder(state.catalog_service.list_module_pricing(module_id))


@router.put("/modules/{module_id}/pricing")
async def upsert_module_pricing(module_id: str, data: PeriodPricingInput):
    with service_errors():
        return jsonable_encoder(state.catalog_service.upsert_module_pricing(module_id, data.model_dump()))


@router.delete("/modules/{module_id}/pricing/{currency_code}")
async def delete_module_pricing(module_id: str, currency_code: str):
    with service_errors():
        state.catalog_service.delete_module_pricing(module_id, currency_code)
    return {"success": True}


@router.get("/modules/{module_id}/limits")
async def list_module_limits(module_id: str):
    with service_errors():
        return jsonable_encoder(state.catalog_service.list_module_limits(module_id))


@router.post("/modules/{module_id}/limits", status_code=201)
async def add_module_limit(module_id: str, data: ModuleLimitInput):
    with service_errors():
        return jsonable_encoder(state.catalog_service.add_module_limit(module_id, data.model_dump()))


@router.put("/module-limits/{limit_id}")
async def update_module_limit(limit_id: str, updates: ModuleLimitUpdate):
    with service_errors():
        return jsonable_encoder(
            state.catalog_service.update_module_limit(limit_id, updates.model_dump(exclude_unset=True))
        )


@router.delete("/module-limits/{limit_id}")
async def delete_module_limit(limit_id: str):
    with service_errors():
        state.catalog_service.delete_module_limit(limit_id)
    return {"success": True}


# Endpoints: bundles

@router.get("/module-bundles")
async def list_bundles():
    return jsonable_encoder(state.catalog_service.list_bundles())


@router.post("/module-bundles", status_code=201)
async def create_bundle(data: BundleCreate):
    with service_errors():
        return jsonable_encoder(state.catalog_service.create_bundle(data.model_dump()))


@router.put("/module-bundles/{bundle_id}")
async def update_bundle(bundle_id: str, updates: BundleUpdate):
    with service_errors():
        return jsonable_encoder(state.catalog_service.update_bundle(bundle_id, updates.model_dump(exclude_unset=True)))


@router.delete("/module-bundles/{bundle_id}")
async def delete_bundle(bundle_id: str):
    with service_errors():
        state.catalog_service.delete_bundle(bundle_id)
    return {"success": True}


@router.get("/module-bundles/{bundle_id}/modules")
async def get_bundle_modules(bundle_id: str):
    with service_errors():
        return {"module_ids": state.catalog_service.bundle_modules(bundle_id)}


@router.put("/module-bundles/{bundle_id}/modules")
async def set_bundle_modules(bundle_id: str, data: BundleModulesInput):
    with service_errors():
        return {"module_ids": state.catalog_service.set_bundle_modules(bundle_id, data.module_ids)}


@router.get("/module-bundles/{bundle_id}/pricing")
async def list_bundle_pricing(bundle_id: str):
    with service_errors():
        return jsonable_encoder(state.catalog_service.list_bundle_pricing(bundle_id))


@router.put("/module-bundles/{bundle_id}/pricing")
async def upsert_bundle_pricing(bundle_id: str, data: BundlePricingInput):
    with service_errors():
        return jsonable_encoder(state.catalog_service.upsert_bundle_pricing(bundle_id, data.model_dump()))


@router.delete("/module-bundles/{bundle_id}/pricing/{currency_code}")
async def delete_bundle_pricing(bundle_id: str, currency_code: str):
    with service_errors():
        state.catalog_service.delete_bundle_pricing(bundle_id, currency_code)
    return {"success": True}


# Endpoints: preview and persistence

@router.get("/pricing-preview")
async def pricing_preview(currency: str, display: bool = False):
    """Full customer-facing catalog in one currency. display=true returns formatted strings."""
    with service_errors():
        preview = state.engine.build_preview(currency, include_inactive=True)
    return preview.to_display_dict() if display else jsonable_encoder(preview)


@router.post("/catalog/save")
async def save_catalog():
    """Write the in-memory catalog back to the CSV data directory."""
    state.store.save(state.settings.data_dir)
    return {"success": True, "data_dir": str(state.settings.data_dir)}
