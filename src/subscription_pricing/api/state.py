"""
Process-wide service instances shared by the API routers.

Routers read these attributes at call time, so reset() can swap in a
different catalog (tests, reloads) without re-importing anything.
"""
import logging
from typing import Optional

from ..config.settings import get_settings, Settings
from ..engine.pricing_engine import PricingEngine
from ..services.catalog_service import CatalogService
from ..services.catalog_store import CatalogStore
from ..services.quotation_service import QuotationService, QuotationStore

logger = logging.getLogger(__name__)

settings: Settings = get_settings()
store: CatalogStore = CatalogStore.load(settings.data_dir)
engine: PricingEngine = PricingEngine(store, settings)
quotations: QuotationStore = QuotationStore()
catalog_service: CatalogService = CatalogService(store, settings, quotations)
quotation_service: QuotationService = QuotationService(store, quotations)


def reset(new_store: Optional[CatalogStore] = None, new_settings: Optional[Settings] = None,
          new_quotations: Optional[QuotationStore] = None):
    """Rebuild the shared services over a catalog store (loaded from data_dir when omitted)."""
    global settings, store, engine, quotations, catalog_service, quotation_service

    settings = new_settings or get_settings()
    store = new_store if new_store is not None else CatalogStore.load(settings.data_dir)
    engine = PricingEngine(store, settings)
    quotations = new_quotations if new_quotations is not None else QuotationStore()
    catalog_service = CatalogService(store, settings, quotations)
    quotation_service = QuotationService(store, quotations)
    logger.info("API state reset (master currency %s)", settings.master_currency)
