import logging
from typing import List, Optional

from fastapi import FastAPI
from fastapi.encoders import jsonable_encoder
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel

from subscription_pricing import __version__
from subscription_pricing.config.settings import get_settings
from subscription_pricing.engine import PricingRequest
from subscription_pricing.api import state
from subscription_pricing.api.errors import service_errors
from subscription_pricing.api.instances_api import router as instances_router
from subscription_pricing.api.pricing_api import router as pricing_router
from subscription_pricing.api.quotations_api import admin_router as quotations_admin_router
from subscription_pricing.api.quotations_api import customer_router as quotations_router

logging.basicConfig(
    level=get_settings().log_level,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(
    title="Subscription Pricing API",
    description="Catalog administration, price resolution and custom quotations",
    version=__version__,
)

# Enable CORS for frontend development
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(pricing_router)
app.include_router(instances_router)
app.include_router(quotations_admin_router)
app.include_router(quotations_router)


class CalcRequest(BaseModel):
    inspection_count: int
    currency_code: str
    billing_period: str = "monthly"
    module_ids: List[str] = []
    bundle_ids: List[str] = []
    organization_id: Optional[str] = None


@app.get("/")
async def root():
    return {"status": "online", "message": "Subscription Pricing API Active"}


@app.post("/api/pricing/calculate")
async def calculate_quote(req: CalcRequest, summary: bool = False):
    """Quote a subscription: tier, packs for extra inspections, modules and bundles."""
    with service_errors():
        result = state.engine.calculate(PricingRequest(**req.model_dump()))
    if summary:
        return result.to_summary_dict()
    payload = jsonable_encoder(result)
    payload["total"] = result.total
    payload["mixed_currency"] = result.mixed_currency
    return payload


@app.get("/api/pricing/detect-tier")
async def detect_tier(inspections: int):
    with service_errors():
        tier = state.engine.detect_tier(inspections)
    return jsonable_encoder(tier)


@app.get("/api/pricing/preview")
async def customer_preview(currency: Optional[str] = None):
    """Customer pricing page; defaults to the master currency."""
    with service_errors():
        preview = state.engine.build_preview(currency or state.settings.master_currency)
    return preview.to_display_dict()


@app.get("/system/status")
async def get_status():
    return {
        "engine_active": True,
        "master_currency": state.settings.master_currency,
        "data_dir": str(state.settings.data_dir),
        "tiers_count": len(state.store.all('subscription_tiers')),
        "currencies_count": len(state.store.all('currencies')),
        "open_quotations": state.quotation_service.stats()["pending"],
    }
