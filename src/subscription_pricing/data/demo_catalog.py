"""
Demo Catalog - a small, fully wired catalog for local runs and tests.

Built through CatalogService so every row passes the same validation and
pack totals are derived the same way as admin writes. Ids are fixed so
callers can refer to entities directly.

Master currency is GBP. USD is priced for most of the catalog, EUR is
active but unpriced (every tier falls back to its GBP base price).
"""
import logging
from typing import Optional

from ..config.settings import get_settings, Settings
from ..services.catalog_service import CatalogService
from ..services.catalog_store import CatalogStore, TABLES

logger = logging.getLogger(__name__)


CURRENCIES = [
    {'code': 'GBP', 'symbol': '£', 'default_for_region': 'UK', 'conversion_rate': 1.0},
    {'code': 'USD', 'symbol': '$', 'default_for_region': 'US', 'conversion_rate': 1.27},
    {'code': 'EUR', 'symbol': '€', 'default_for_region': 'EU', 'conversion_rate': 1.17},
]

# (id, name, code, order, included, monthly GBP, annual GBP, custom)
TIERS = [
    ('tier-starter', 'Starter', 'starter', 1, 10, 4900, 49000, False),
    ('tier-growth', 'Growth', 'growth', 2, 50, 19900, 199000, False),
    ('tier-professional', 'Professional', 'professional', 3, 200, 59900, 599000, False),
    ('tier-enterprise', 'Enterprise', 'enterprise', 4, 1000, 0, 0, True),
]

# tier id -> (monthly, annual)
TIER_PRICING_USD = {
    'tier-starter': (5900, 59000),
    'tier-growth': (24900, 249000),
    'tier-professional': (74900, 749000),
}

PACKS = [
    ('pack-10', '10 Pack', 10, 1),
    ('pack-20', '20 Pack', 20, 2),
    ('pack-50', '50 Pack', 50, 3),
]

# (pack id, tier id, currency) -> price per inspection
PACK_PRICING = {
    ('pack-10', 'tier-starter', 'GBP'): 600,
    ('pack-20', 'tier-starter', 'GBP'): 550,
    ('pack-50', 'tier-starter', 'GBP'): 500,
    ('pack-10', 'tier-growth', 'GBP'): 550,
    ('pack-20', 'tier-growth', 'GBP'): 500,
    ('pack-50', 'tier-growth', 'GBP'): 450,
    ('pack-10', 'tier-professional', 'GBP'): 450,
    ('pack-20', 'tier-professional', 'GBP'): 400,
    ('pack-50', 'tier-professional', 'GBP'): 350,
    ('pack-10', 'tier-growth', 'USD'): 700,
    ('pack-20', 'tier-growth', 'USD'): 650,
}

MODULES = [
    ('mod-reporting', 'Advanced Reporting', 'advanced_reporting', 1),
    ('mod-api', 'API Access', 'api_access', 2),
    ('mod-white-label', 'White Label', 'white_label', 3),
]

# (module id, currency) -> (monthly, annual)
MODULE_PRICING = {
    ('mod-reporting', 'GBP'): (2900, 29000),
    ('mod-reporting', 'USD'): (3500, 35000),
    ('mod-api', 'GBP'): (4900, 49000),
    ('mod-api', 'USD'): (5900, 59000),
    ('mod-white-label', 'GBP'): (9900, 99000),
}


def build_demo_catalog(settings: Optional[Settings] = None) -> CatalogStore:
    """Create the demo catalog in a fresh in-memory store."""
    settings = settings or get_settings()
    store = CatalogStore()
    service = CatalogService(store, settings)

    for currency in CURRENCIES:
        service.create_currency(currency)

    for tier_id, name, code, order, included, monthly, annual, custom in TIERS:
        service.create_tier({
            'id': tier_id,
            'name': name,
            'code': code,
            'tier_order': order,
            'included_inspections': included,
            'base_price_monthly': monthly,
            'base_price_annual': annual,
            'annual_discount_percentage': round(100 - annual * 100 / (monthly * 12), 2) if monthly else None,
            'requires_custom_pricing': custom,
        })
    for tier_id, (monthly, annual) in TIER_PRICING_USD.items():
        service.upsert_tier_pricing(tier_id, {
            'currency_code': 'USD', 'price_monthly': monthly, 'price_annual': annual,
        })

    for pack_id, name, quantity, order in PACKS:
        service.create_pack({'id': pack_id, 'name': name, 'inspection_quantity': quantity, 'pack_order': order})
    for (pack_id, tier_id, currency), per_inspection in PACK_PRICING.items():
        service.upsert_pack_pricing(pack_id, {
            'tier_id': tier_id, 'currency_code': currency, 'price_per_inspection': per_inspection,
        })

    service.create_extensive_type({
        'id': 'ext-roof', 'name': 'Extensive Roof Survey', 'image_count': 800,
        'description': 'High-resolution drone capture of the full roof area',
    })
    service.upsert_extensive_pricing('ext-roof', {
        'tier_id': 'tier-growth', 'currency_code': 'GBP', 'price_per_inspection': 2500,
    })
    service.upsert_extensive_pricing('ext-roof', {
        'tier_id': 'tier-professional', 'currency_code': 'GBP', 'price_per_inspection': 2000,
    })

    for module_id, name, key, order in MODULES:
        service.create_module({'id': module_id, 'name': name, 'module_key': key, 'display_order': order})
    for (module_id, currency), (monthly, annual) in MODULE_PRICING.items():
        service.upsert_module_pricing(module_id, {
            'currency_code': currency, 'price_monthly': monthly, 'price_annual': annual,
        })
    service.add_module_limit('mod-api', {
        'id': 'limit-api-calls', 'limit_type': 'api_calls', 'included_quantity': 10000,
        'overage_price': 5, 'overage_currency': 'GBP',
    })

    service.create_bundle({
        'id': 'bundle-insights', 'name': 'Insights Bundle', 'discount_percentage': 11.5,
        'description': 'Advanced Reporting and API Access together',
        'module_ids': ['mod-reporting', 'mod-api'],
    })
    service.upsert_bundle_pricing('bundle-insights', {
        'currency_code': 'GBP', 'price_monthly': 6900, 'price_annual': 69000,
        'savings_monthly': 900, 'savings_annual': 9000,
    })
    service.upsert_bundle_pricing('bundle-insights', {
        'currency_code': 'USD', 'price_monthly': 8400, 'price_annual': 84000,
        'savings_monthly': 1000, 'savings_annual': 10000,
    })

    logger.info("Built demo catalog: %s", catalog_report(store))
    return store


def catalog_report(store: CatalogStore) -> dict[str, int]:
    """Row count per table."""
    return {name: len(store.all(name)) for name in TABLES}
