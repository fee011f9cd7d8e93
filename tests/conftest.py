import pytest
import sys
import os

# Add src to path for internal imports
src_path = os.path.join(os.path.dirname(os.path.dirname(os.path.abspath(__file__))), 'src')
if src_path not in sys.path:
    sys.path.insert(0, src_path)

from subscription_pricing.config.settings import Settings
from subscription_pricing.data.demo_catalog import build_demo_catalog
from subscription_pricing.engine import PricingEngine
from subscription_pricing.services.catalog_service import CatalogService
from subscription_pricing.services.quotation_service import QuotationService, QuotationStore


@pytest.fixture
def settings(tmp_path):
    return Settings(project_root=tmp_path, data_dir=tmp_path / 'catalog')


@pytest.fixture(scope="function")  # every test gets its own catalog to mutate
def store(settings):
    return build_demo_catalog(settings)


@pytest.fixture
def engine(store, settings):
    return PricingEngine(store, settings)


@pytest.fixture
def quotation_store():
    return QuotationStore()


@pytest.fixture
def catalog_service(store, settings, quotation_store):
    return CatalogService(store, settings, quotation_store)


@pytest.fixture
def quotation_service(store, quotation_store):
    return QuotationService(store, quotation_store)
