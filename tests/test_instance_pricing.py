import pytest

from subscription_pricing.engine import PricingEngine
from subscription_pricing.engine.models import ANNUAL, MONTHLY, PricingRequest
from subscription_pricing.services.catalog_store import CatalogStore
from subscription_pricing.services.errors import ConflictError, NotFoundError, ValidationError


@pytest.fixture
def acme(catalog_service):
    """Growth customer billed in GBP with a negotiated monthly fee."""
    return catalog_service.set_instance_subscription('org-acme', {
        'registration_currency': 'GBP',
        'current_tier_id': 'tier-growth',
        'override_monthly_fee': 15000,
    })


def tier_line(result):
    return next(line for line in result.lines if line.kind == 'tier')


# ----------------------------------------------------------------------
# Subscription price
# ----------------------------------------------------------------------

def test_tier_override_replaces_catalog_price(engine, acme):
    result = engine.calculate(PricingRequest(inspection_count=50, currency_code='GBP', organization_id='org-acme'))

    line = tier_line(result)
    assert line.extended_price == 15000
    assert line.source == 'instance_override'
    assert result.total == 15000
    assert not result.mixed_currency


def test_override_only_covers_its_billing_period(engine, acme):
    result = engine.calculate(PricingRequest(
        inspection_count=50, currency_code='GBP', billing_period=ANNUAL, organization_id='org-acme',
    ))

    line = tier_line(result)
    assert line.extended_price == 199000
    assert line.source == 'base_price'


def test_zero_override_is_charged_as_zero(engine, catalog_service, acme):
    catalog_service.set_instance_subscription('org-acme', {
        'registration_currency': 'GBP', 'current_tier_id': 'tier-growth', 'override_monthly_fee': 0,
    })

    result = engine.calculate(PricingRequest(inspection_count=50, currency_code='GBP', organization_id='org-acme'))

    assert tier_line(result).extended_price == 0
    assert tier_line(result).source == 'instance_override'


def test_override_needs_matching_tier(engine, acme):
    result = engine.calculate(PricingRequest(inspection_count=10, currency_code='GBP', organization_id='org-acme'))

    assert result.tier_id == 'tier-starter'
    assert tier_line(result).extended_price == 4900


def test_override_ignored_in_another_currency(engine, acme):
    result = engine.calculate(PricingRequest(inspection_count=50, currency_code='USD', organization_id='org-acme'))

    assert tier_line(result).extended_price == 24900
    assert tier_line(result).source == 'tier_pricing'
    assert any('Negotiated prices for org-acme are in GBP' in w for w in result.warnings)


def test_inactive_subscription_uses_catalog_prices(engine, catalog_service, acme):
    catalog_service.set_instance_subscription('org-acme', {
        'registration_currency': 'GBP', 'current_tier_id': 'tier-growth',
        'override_monthly_fee': 15000, 'is_active': False,
    })

    result = engine.calculate(PricingRequest(inspection_count=50, currency_code='GBP', organization_id='org-acme'))

    assert tier_line(result).extended_price == 19900
    assert any('not active' in w for w in result.warnings)


def test_unknown_organisation(engine):
    with pytest.raises(NotFoundError):
        engine.calculate(PricingRequest(inspection_count=50, currency_code='GBP', organization_id='org-nobody'))
    with pytest.raises(NotFoundError):
        engine.calculate_instance_price('org-nobody', MONTHLY)


def test_calculate_instance_price(engine, catalog_service, acme):
    monthly = engine.calculate_instance_price('org-acme', MONTHLY)
    assert (monthly.amount, monthly.currency_code, monthly.source) == (15000, 'GBP', 'instance_override')

    annual = engine.calculate_instance_price('org-acme', ANNUAL)
    assert (annual.amount, annual.source) == (199000, 'base_price')

    # EUR is unpriced, so the GBP base price comes back unconverted
    catalog_service.set_instance_subscription('org-euro', {
        'registration_currency': 'EUR', 'current_tier_id': 'tier-growth',
    })
    euro = engine.calculate_instance_price('org-euro', MONTHLY)
    assert (euro.amount, euro.currency_code) == (19900, 'GBP')

    with pytest.raises(ValidationError):
        engine.calculate_instance_price('org-acme', 'weekly')


def test_instance_price_needs_a_tier(engine, catalog_service):
    catalog_service.set_instance_subscription('org-trial', {'registration_currency': 'GBP'})

    with pytest.raises(ValidationError):
        engine.calculate_instance_price('org-trial', MONTHLY)


# ----------------------------------------------------------------------
# Modules and bundles
# ----------------------------------------------------------------------

def test_enabled_modules_join_the_quote_once(engine, catalog_service, acme):
    catalog_service.set_instance_module('org-acme', 'mod-reporting')

    result = engine.calculate(PricingRequest(
        inspection_count=50, currency_code='GBP', module_ids=['mod-reporting'], organization_id='org-acme',
    ))

    modules = [line for line in result.lines if line.kind == 'module']
    assert [m.ref_id for m in modules] == ['mod-reporting']
    assert modules[0].extended_price == 2900


def test_disabled_module_is_not_added(engine, catalog_service, acme):
    catalog_service.set_instance_module('org-acme', 'mod-reporting', is_enabled=False)

    result = engine.calculate(PricingRequest(inspection_count=50, currency_code='GBP', organization_id='org-acme'))

    assert [line.kind for line in result.lines] == ['tier']


def test_module_override_price(engine, catalog_service, acme):
    catalog_service.set_instance_module('org-acme', 'mod-api')
    catalog_service.set_module_override('org-acme', 'mod-api', {'override_monthly_price': 1000})

    result = engine.calculate(PricingRequest(inspection_count=50, currency_code='GBP', organization_id='org-acme'))
    line = next(line for line in result.lines if line.ref_id == 'mod-api')
    assert (line.extended_price, line.source) == (1000, 'instance_override')
    assert result.total == 16000

    # No annual override, so the catalog price applies
    annual = engine.calculate_module_price('org-acme', 'mod-api', ANNUAL)
    assert (annual.amount, annual.source) == (49000, 'module_pricing')


def test_module_override_needs_a_price(catalog_service, acme):
    with pytest.raises(ValidationError):
        catalog_service.set_module_override('org-acme', 'mod-api', {})


def test_instance_bundle_covers_its_modules(engine, catalog_service, acme):
    catalog_service.add_instance_bundle('org-acme', 'bundle-insights')
    catalog_service.set_instance_module('org-acme', 'mod-api')

    result = engine.calculate(PricingRequest(inspection_count=50, currency_code='GBP', organization_id='org-acme'))

    assert [line.kind for line in result.lines] == ['tier', 'bundle']
    assert result.total == 15000 + 6900

    covered = engine.calculate_module_price('org-acme', 'mod-api', MONTHLY)
    assert (covered.amount, covered.source) == (0, 'bundle')


def test_module_price_unavailable_in_registration_currency(engine, catalog_service):
    catalog_service.set_instance_subscription('org-euro', {
        'registration_currency': 'EUR', 'current_tier_id': 'tier-growth',
    })

    assert engine.calculate_module_price('org-euro', 'mod-reporting', MONTHLY) is None


def test_inactive_bundle_cannot_be_added(catalog_service, acme):
    catalog_service.update_bundle('bundle-insights', {'is_active': False})

    with pytest.raises(ValidationError):
        catalog_service.add_instance_bundle('org-acme', 'bundle-insights')


def test_module_availability_for_organisation(engine, catalog_service, acme):
    assert not engine.is_module_available_for_instance('mod-api', 'org-acme')

    catalog_service.set_instance_module('org-acme', 'mod-api')
    assert engine.is_module_available_for_instance('mod-api', 'org-acme')
    assert not engine.is_module_available_for_instance('mod-api', 'org-nobody')

    catalog_service.update_module('mod-api', {'is_available_globally': False})
    assert not engine.is_module_available_for_instance('mod-api', 'org-acme')
    with pytest.raises(ValidationError):
        catalog_service.set_instance_module('org-acme', 'mod-api')


# ----------------------------------------------------------------------
# Admin writes
# ----------------------------------------------------------------------

def test_subscription_validation(catalog_service):
    with pytest.raises(ValidationError) as exc:
        catalog_service.set_instance_subscription('org-bad', {
            'registration_currency': 'ZZZ', 'current_tier_id': 'tier-missing', 'override_monthly_fee': -1,
        })

    assert len(exc.value.errors) == 3


def test_registration_currency_is_normalized(catalog_service):
    subscription = catalog_service.set_instance_subscription('org-lower', {'registration_currency': ' usd '})

    assert subscription.registration_currency == 'USD'


def test_tier_delete_refused_while_subscribed(catalog_service):
    catalog_service.set_instance_subscription('org-big', {
        'registration_currency': 'GBP', 'current_tier_id': 'tier-enterprise',
    })

    with pytest.raises(ConflictError) as exc:
        catalog_service.delete_tier('tier-enterprise')

    assert exc.value.dependents == ['instance_subscriptions']


def test_registration_currency_blocks_delete(catalog_service, store):
    catalog_service.set_instance_subscription('org-euro', {'registration_currency': 'EUR'})

    with pytest.raises(ConflictError) as exc:
        catalog_service.delete_currency('EUR', cascade=True)

    assert exc.value.dependents == ['instance_subscriptions']
    assert store.get('currencies', 'EUR') is not None


def test_delete_subscription_removes_organisation_rows(catalog_service, store, acme):
    catalog_service.set_instance_module('org-acme', 'mod-api')
    catalog_service.set_module_override('org-acme', 'mod-api', {'override_annual_price': 40000})
    catalog_service.add_instance_bundle('org-acme', 'bundle-insights')

    catalog_service.delete_instance_subscription('org-acme')

    for table in ('instance_subscriptions', 'instance_modules', 'instance_module_overrides', 'instance_bundles'):
        assert store.all(table) == []


def test_module_delete_removes_organisation_rows(catalog_service, store, acme):
    catalog_service.set_instance_module('org-acme', 'mod-white-label')
    catalog_service.set_module_override('org-acme', 'mod-white-label', {'override_monthly_price': 5000})

    catalog_service.delete_module('mod-white-label')

    assert store.all('instance_modules') == []
    assert store.all('instance_module_overrides') == []


def test_instance_tables_round_trip(catalog_service, store, settings, tmp_path, acme):
    catalog_service.set_module_override('org-acme', 'mod-api', {'override_monthly_price': 0})
    store.save(tmp_path / 'catalog')

    loaded = CatalogStore.load(tmp_path / 'catalog')

    subscription = loaded.get('instance_subscriptions', 'org-acme')
    assert subscription == acme
    assert subscription.override_annual_fee is None
    assert loaded.get('instance_module_overrides', 'org-acme', 'mod-api').override_monthly_price == 0

    result = PricingEngine(loaded, settings).calculate(
        PricingRequest(inspection_count=50, currency_code='GBP', organization_id='org-acme')
    )
    assert tier_line(result).extended_price == 15000
