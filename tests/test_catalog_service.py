from dataclasses import replace

import pytest

from subscription_pricing.services.catalog_service import CatalogService
from subscription_pricing.services.catalog_store import CatalogStore
from subscription_pricing.services.errors import ConflictError, NotFoundError, ValidationError
from subscription_pricing.services.quotation_service import QuoteInput


# ----------------------------------------------------------------------
# Derived pack totals
# ----------------------------------------------------------------------

def test_pack_total_is_derived_on_write(catalog_service, store):
    """A client-supplied total is ignored; the stored one is price x quantity."""
    row = catalog_service.upsert_pack_pricing('pack-20', {
        'tier_id': 'tier-starter',
        'currency_code': 'gbp',
        'price_per_inspection': 500,
        'total_pack_price': 1,
    })
    assert row.currency_code == 'GBP'
    assert row.total_pack_price == 10000
    assert store.get('addon_pack_pricing', 'pack-20', 'tier-starter', 'GBP').total_pack_price == 10000


def test_pack_quantity_change_rederives_totals(catalog_service, store):
    catalog_service.update_pack('pack-20', {'inspection_quantity': 25})

    totals = {
        (r.tier_id, r.currency_code): r.total_pack_price
        for r in store.where('addon_pack_pricing', pack_id='pack-20')
    }
    assert totals[('tier-growth', 'GBP')] == 500 * 25
    assert totals[('tier-starter', 'GBP')] == 550 * 25
    assert totals[('tier-growth', 'USD')] == 650 * 25


def test_pack_rename_leaves_totals_alone(catalog_service, store):
    catalog_service.update_pack('pack-20', {'name': 'Twenty Pack'})
    assert store.get('addon_pack_pricing', 'pack-20', 'tier-growth', 'GBP').total_pack_price == 10000


# ----------------------------------------------------------------------
# Validation
# ----------------------------------------------------------------------

def test_rejected_pricing_write_leaves_no_row(catalog_service, store):
    before = store.get('tier_pricing', 'tier-growth', 'USD')
    with pytest.raises(ValidationError) as exc:
        catalog_service.upsert_tier_pricing('tier-growth', {
            'currency_code': 'USD', 'price_monthly': -1, 'price_annual': 100,
        })
    assert "'price_monthly' cannot be negative" in exc.value.errors
    assert store.get('tier_pricing', 'tier-growth', 'USD') == before


def test_pricing_requires_active_known_currency(catalog_service, store):
    with pytest.raises(ValidationError):
        catalog_service.upsert_module_pricing('mod-api', {
            'currency_code': 'JPY', 'price_monthly': 100, 'price_annual': 1000,
        })

    catalog_service.update_currency('EUR', {'is_active': False})
    with pytest.raises(ValidationError) as exc:
        catalog_service.upsert_module_pricing('mod-api', {
            'currency_code': 'EUR', 'price_monthly': 100, 'price_annual': 1000,
        })
    assert "Currency 'EUR' is not active" in exc.value.errors
    assert store.get('module_pricing', 'mod-api', 'EUR') is None


def test_amounts_must_be_integers(catalog_service):
    with pytest.raises(ValidationError):
        catalog_service.upsert_tier_pricing('tier-growth', {
            'currency_code': 'GBP', 'price_monthly': 199.0, 'price_annual': 1990,
        })


def test_create_tier_reports_missing_and_duplicate_fields(catalog_service):
    with pytest.raises(ValidationError) as exc:
        catalog_service.create_tier({'name': 'Scale'})
    assert "'code' is required" in exc.value.errors

    with pytest.raises(ValidationError) as exc:
        catalog_service.create_tier({
            'name': 'Growth II', 'code': 'growth', 'tier_order': 5, 'included_inspections': 75,
            'base_price_monthly': 100, 'base_price_annual': 1000,
        })
    assert "Tier code 'growth' is already in use" in exc.value.errors


def test_create_tier_generates_id(catalog_service, store):
    tier = catalog_service.create_tier({
        'name': 'Scale', 'code': 'scale', 'tier_order': 5, 'included_inspections': 500,
        'base_price_monthly': 99900, 'base_price_annual': 999000,
    })
    assert tier.id
    assert store.get('subscription_tiers', tier.id) == tier


def test_key_fields_cannot_change(catalog_service):
    with pytest.raises(ValidationError):
        catalog_service.update_tier('tier-growth', {'id': 'tier-other'})
    with pytest.raises(ValidationError):
        catalog_service.update_currency('USD', {'code': 'XXX'})


def test_unknown_fields_rejected(catalog_service):
    with pytest.raises(ValidationError) as exc:
        catalog_service.create_pack({'name': 'Odd', 'inspection_quantity': 5, 'colour': 'red'})
    assert "Unknown field 'colour'" in exc.value.errors


def test_update_unknown_entity(catalog_service):
    with pytest.raises(NotFoundError):
        catalog_service.update_pack('pack-missing', {'name': 'x'})


def test_create_currency_normalizes_and_rejects_duplicates(catalog_service):
    currency = catalog_service.create_currency({'code': 'aed', 'symbol': 'د.إ', 'conversion_rate': 4.67})
    assert currency.code == 'AED'
    with pytest.raises(ValidationError):
        catalog_service.create_currency({'code': 'AED', 'symbol': 'x'})
    with pytest.raises(ValidationError):
        catalog_service.create_currency({'code': 'EURO', 'symbol': '€'})


# ----------------------------------------------------------------------
# Currency delete policy
# ----------------------------------------------------------------------

def test_currency_delete_restricted_while_referenced(catalog_service, store):
    with pytest.raises(ConflictError) as exc:
        catalog_service.delete_currency('USD')
    assert 'tier_pricing' in exc.value.dependents
    assert store.get('currencies', 'USD') is not None
    assert store.get('tier_pricing', 'tier-growth', 'USD') is not None


def test_currency_delete_cascade_removes_rows(catalog_service, store, engine):
    removed = catalog_service.delete_currency('USD', cascade=True)
    assert removed['tier_pricing'] == 3
    assert removed['addon_pack_pricing'] == 2
    assert store.get('currencies', 'USD') is None
    assert store.where('module_pricing', currency_code='USD') == []

    # USD is gone entirely, so nothing resolves in it any more
    with pytest.raises(NotFoundError):
        engine.resolve_tier_price('tier-growth', 'USD')


def test_currency_delete_policy_from_settings(store, settings):
    service = CatalogService(store, replace(settings, currency_delete_policy='cascade'))
    service.delete_currency('GBP')
    assert store.where('addon_pack_pricing', currency_code='GBP') == []
    assert store.where('module_limits', overage_currency='GBP') == []


def test_unreferenced_currency_deletes(catalog_service, store):
    assert catalog_service.delete_currency('EUR') == {}
    assert store.get('currencies', 'EUR') is None


def test_currency_held_by_quotation_survives_cascade(catalog_service, quotation_service, store):
    quotation_service.submit_request('org-acme', 2500, 'EUR')

    with pytest.raises(ConflictError) as exc:
        catalog_service.delete_currency('EUR', cascade=True)
    assert exc.value.dependents == ['quotation_requests']
    assert store.get('currencies', 'EUR') is not None
    assert catalog_service.currency_dependents('EUR') == {'quotation_requests': 1}


def test_currency_held_by_quote_currency(catalog_service, quotation_service):
    request = quotation_service.submit_request('org-acme', 2500, 'GBP')
    quotation_service.create_quote(request.id, 'admin-1', QuoteInput(
        quoted_price=500000, quoted_inspections=2500, currency='EUR',
    ))
    with pytest.raises(ConflictError) as exc:
        catalog_service.delete_currency('EUR')
    assert exc.value.dependents == ['quotations']


# ----------------------------------------------------------------------
# Referential rules
# ----------------------------------------------------------------------

def test_pack_delete_refused_with_active_purchase(catalog_service, store):
    catalog_service.record_purchase('pack-20')
    with pytest.raises(ConflictError):
        catalog_service.delete_pack('pack-20')
    assert store.get('addon_packs', 'pack-20') is not None
    assert len(store.where('addon_pack_pricing', pack_id='pack-20')) == 4


def test_pack_delete_removes_pricing(catalog_service, store):
    catalog_service.record_purchase('pack-20', status='expired')
    catalog_service.delete_pack('pack-20')
    assert store.get('addon_packs', 'pack-20') is None
    assert store.where('addon_pack_pricing', pack_id='pack-20') == []


def test_tier_delete_refused_while_packs_priced(catalog_service, store):
    with pytest.raises(ConflictError):
        catalog_service.delete_tier('tier-growth')

    catalog_service.delete_tier('tier-enterprise')
    assert store.get('subscription_tiers', 'tier-enterprise') is None


def test_bundle_with_unknown_module_is_not_created(catalog_service, store):
    with pytest.raises(ValidationError):
        catalog_service.create_bundle({'id': 'bundle-x', 'name': 'X', 'module_ids': ['mod-api', 'mod-nope']})
    assert store.get('module_bundles', 'bundle-x') is None
    assert store.where('bundle_modules', bundle_id='bundle-x') == []


def test_bundle_membership(catalog_service):
    assert catalog_service.set_bundle_modules('bundle-insights', ['mod-white-label']) == ['mod-white-label']
    catalog_service.update_bundle('bundle-insights', {'module_ids': ['mod-api', 'mod-reporting']})
    assert catalog_service.bundle_modules('bundle-insights') == ['mod-api', 'mod-reporting']


def test_module_delete_removes_dependents(catalog_service, store):
    catalog_service.delete_module('mod-api')
    assert store.where('module_pricing', module_id='mod-api') == []
    assert store.where('module_limits', module_id='mod-api') == []
    assert catalog_service.bundle_modules('bundle-insights') == ['mod-reporting']


def test_module_limit_lifecycle(catalog_service):
    with pytest.raises(ValidationError):
        catalog_service.add_module_limit('mod-reporting', {
            'limit_type': 'reports', 'included_quantity': 10, 'overage_price': 100, 'overage_currency': 'JPY',
        })

    limit = catalog_service.add_module_limit('mod-reporting', {
        'limit_type': 'reports', 'included_quantity': 10, 'overage_price': 100, 'overage_currency': 'usd',
    })
    assert limit.overage_currency == 'USD'
    updated = catalog_service.update_module_limit(limit.id, {'included_quantity': 20})
    assert updated.included_quantity == 20
    catalog_service.delete_module_limit(limit.id)
    assert catalog_service.list_module_limits('mod-reporting') == []


def test_duplicate_module_key_rejected(catalog_service):
    with pytest.raises(ValidationError):
        catalog_service.create_module({'name': 'API Again', 'module_key': 'api_access'})


def test_create_with_existing_id_is_rejected(catalog_service, store):
    """An explicit id that is already taken never replaces the stored record."""
    with pytest.raises(ValidationError) as exc:
        catalog_service.create_pack({'id': 'pack-20', 'name': 'Forty', 'inspection_quantity': 40})
    assert "AddonPack 'pack-20' already exists" in exc.value.errors
    assert store.get('addon_packs', 'pack-20').inspection_quantity == 20
    assert store.get('addon_pack_pricing', 'pack-20', 'tier-growth', 'GBP').total_pack_price == 10000

    with pytest.raises(ValidationError):
        catalog_service.create_module({'id': 'mod-api', 'name': 'Other', 'module_key': 'other'})
    assert store.get('modules', 'mod-api').module_key == 'api_access'

    with pytest.raises(ValidationError):
        catalog_service.create_tier({
            'id': 'tier-growth', 'name': 'Scale', 'code': 'scale', 'tier_order': 5,
            'included_inspections': 500, 'base_price_monthly': 1, 'base_price_annual': 1,
        })
    with pytest.raises(ValidationError):
        catalog_service.create_bundle({'id': 'bundle-insights', 'name': 'Other'})
    assert catalog_service.bundle_modules('bundle-insights') == ['mod-api', 'mod-reporting']


# ----------------------------------------------------------------------
# CSV persistence
# ----------------------------------------------------------------------

def test_store_csv_round_trip(store, tmp_path):
    store.save(tmp_path / 'catalog')
    loaded = CatalogStore.load(tmp_path / 'catalog')

    assert loaded.get('subscription_tiers', 'tier-growth') == store.get('subscription_tiers', 'tier-growth')
    assert loaded.get('subscription_tiers', 'tier-enterprise').annual_discount_percentage is None
    assert loaded.get('addon_pack_pricing', 'pack-20', 'tier-growth', 'GBP').total_pack_price == 10000
    assert loaded.get('currencies', 'USD').conversion_rate == 1.27
    assert loaded.get('bundle_pricing', 'bundle-insights', 'USD').savings_monthly == 1000
    assert len(loaded.all('bundle_modules')) == 2


def test_load_missing_directory_is_empty(tmp_path):
    store = CatalogStore.load(tmp_path / 'nowhere')
    assert store.all('currencies') == []
