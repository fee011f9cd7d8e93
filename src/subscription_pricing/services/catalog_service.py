"""
Catalog Service - validated CRUD for catalog entities and pricing rows.

Every write is validated in full before the store is touched, so a rejected
request never leaves a partial row behind. Derived pack totals are computed
here on every write path.
"""
import logging
import re
import uuid
from dataclasses import dataclass, field, fields, replace, MISSING
from typing import Any, Optional

from ..config.settings import get_settings, Settings
from ..engine.models import (
    AddonPack,
    AddonPackPricing,
    AddonPurchase,
    BundleModule,
    BundlePricing,
    Currency,
    ExtensiveInspectionPricing,
    ExtensiveInspectionType,
    InstanceBundle,
    InstanceModule,
    InstanceModuleOverride,
    InstanceSubscription,
    Module,
    ModuleBundle,
    ModuleLimit,
    ModulePricing,
    SubscriptionTier,
    TierPricing,
)
from ..engine.money import compute_total_pack_price
from .catalog_store import CatalogStore, INSTANCE_TABLES, PRICING_TABLES
from .errors import ConflictError, NotFoundError, ValidationError
from .quotation_service import QuotationStore

logger = logging.getLogger(__name__)

CURRENCY_CODE = re.compile(r'^[A-Z]{3}$')

# Currency references that block a delete under every policy
RESTRICTING_TABLES = ('instance_subscriptions', 'quotation_requests', 'quotations')


@dataclass
class ValidationResult:
    """Result of validating a catalog write."""
    valid: bool = True
    errors: list[str] = field(default_factory=list)

    def add(self, message: str):
        self.errors.append(message)
        self.valid = False

    def raise_if_invalid(self):
        if not self.valid:
            raise ValidationError(self.errors)


def new_id() -> str:
    return str(uuid.uuid4())


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _build(record_cls: type, data: dict, generated: Optional[dict] = None) -> Any:
    """Construct a record from a payload, reporting missing or unknown fields."""
    payload = {k: v for k, v in data.items() if v is not None}
    payload.update(generated or {})
    result = ValidationResult()

    names = {f.name for f in fields(record_cls)}
    for key in payload:
        if key not in names:
            result.add(f"Unknown field '{key}'")
    for f in fields(record_cls):
        required = f.default is MISSING and f.default_factory is MISSING
        if required and f.name not in payload:
            result.add(f"'{f.name}' is required")
    result.raise_if_invalid()
    return record_cls(**payload)


def _apply_updates(record: Any, updates: dict, frozen: tuple[str, ...]) -> Any:
    """Return a copy of record with updates applied. Key fields cannot change."""
    result = ValidationResult()
    names = {f.name for f in fields(record)}
    for key, value in updates.items():
        if key not in names:
            result.add(f"Unknown field '{key}'")
        elif key in frozen and value != getattr(record, key):
            result.add(f"'{key}' cannot be changed")
    result.raise_if_invalid()
    return replace(record, **{k: v for k, v in updates.items() if k not in frozen})


class CatalogService:
    """Service for managing the pricing catalog."""

    def __init__(self, store: CatalogStore, settings: Optional[Settings] = None,
                 quotations: Optional[QuotationStore] = None):
        self.store = store
        self.settings = settings or get_settings()
        self.quotations = quotations

    # ------------------------------------------------------------------
    # Shared checks
    # ------------------------------------------------------------------

    def _require(self, table: str, entity: str, *key) -> Any:
        row = self.store.get(table, *key)
        if row is None:
            raise NotFoundError(entity, "/".join(str(k) for k in key))
        return row

    @staticmethod
    def _check_amount(result: ValidationResult, name: str, value: Any, optional: bool = False):
        if value is None and optional:
            return
        if not _is_int(value):
            result.add(f"'{name}' must be an integer amount in minor units")
        elif value < 0:
            result.add(f"'{name}' cannot be negative")

    @staticmethod
    def _check_percentage(result: ValidationResult, name: str, value: Any):
        if value is None:
            return
        if isinstance(value, bool) or not isinstance(value, (int, float)) or not 0 <= value <= 100:
            result.add(f"'{name}' must be between 0 and 100")

    @staticmethod
    def _check_text(result: ValidationResult, name: str, value: Any):
        if not isinstance(value, str) or not value.strip():
            result.add(f"'{name}' is required")

    def _check_unused_id(self, table: str, entity: str, record_id: str):
        """Creates never replace an existing row."""
        if self.store.get(table, record_id) is not None:
            raise ValidationError([f"{entity} '{record_id}' already exists"])

    def _check_pricing_currency(self, result: ValidationResult, currency_code: Any, name: str = 'currency_code'):
        """Pricing rows may only reference an existing, active currency."""
        if not isinstance(currency_code, str) or not currency_code:
            result.add(f"'{name}' is required")
            return
        currency = self.store.get('currencies', currency_code)
        if currency is None:
            result.add(f"Currency '{currency_code}' does not exist")
        elif not currency.is_active:
            result.add(f"Currency '{currency_code}' is not active")

    @staticmethod
    def _normalize_code(value: Any) -> Any:
        return value.strip().upper() if isinstance(value, str) else value

    # ------------------------------------------------------------------
    # Currencies
    # ------------------------------------------------------------------

    def list_currencies(self, active_only: bool = False) -> list[Currency]:
        currencies = sorted(self.store.all('currencies'), key=lambda c: c.code)
        return [c for c in currencies if c.is_active or not active_only]

    def validate_currency(self, currency: Currency) -> ValidationResult:
        result = ValidationResult()
        if not isinstance(currency.code, str) or not CURRENCY_CODE.match(currency.code):
            result.add("'code' must be a three-letter ISO 4217 code")
        self._check_text(result, 'symbol', currency.symbol)
        if isinstance(currency.conversion_rate, bool) or not isinstance(currency.conversion_rate, (int, float)) \
                or currency.conversion_rate <= 0:
            result.add("'conversion_rate' must be a positive number")
        return result

    def create_currency(self, data: dict) -> Currency:
        data = dict(data)
        data['code'] = self._normalize_code(data.get('code'))
        currency = _build(Currency, data)
        self.validate_currency(currency).raise_if_invalid()
        if self.store.get('currencies', currency.code):
            raise ValidationError([f"Currency '{currency.code}' already exists"])
        self.store.put('currencies', currency)
        logger.info("Created currency %s", currency.code)
        return currency

    def update_currency(self, code: str, updates: dict) -> Currency:
        code = self._normalize_code(code)
        currency = self._require('currencies', 'Currency', code)
        updated = _apply_updates(currency, updates, frozen=('code',))
        self.validate_currency(updated).raise_if_invalid()
        self.store.put('currencies', updated)
        logger.info("Updated currency %s", code)
        return updated

    def currency_dependents(self, code: str) -> dict[str, int]:
        """Rows that reference the currency, by table: pricing, limits, subscriptions and quotations."""
        counts = {table: len(self.store.where(table, currency_code=code)) for table in PRICING_TABLES}
        counts['module_limits'] = len(self.store.where('module_limits', overage_currency=code))
        counts['instance_subscriptions'] = len(self.store.where('instance_subscriptions', registration_currency=code))
        if self.quotations is not None:
            counts.update(self.quotations.currency_references(code))
        return {table: n for table, n in counts.items() if n}

    def delete_currency(self, code: str, cascade: Optional[bool] = None) -> dict[str, int]:
        """
        Delete a currency.

        With the restrict policy the delete is refused while any row
        references the currency. With cascade, pricing rows and module
        limits go too. Organisation subscriptions and quotations always
        block the delete. Returns the number of dependent rows removed per
        table.
        """
        code = self._normalize_code(code)
        self._require('currencies', 'Currency', code)
        if cascade is None:
            cascade = self.settings.currency_delete_policy == 'cascade'

        dependents = self.currency_dependents(code)
        held = sorted(table for table in dependents if table in RESTRICTING_TABLES)
        if held:
            logger.warning("Refused to delete currency %s: held by %s", code, held)
            raise ConflictError(f"Currency '{code}' is used by subscriptions or quotations", dependents=held)
        if dependents and not cascade:
            logger.warning("Refused to delete currency %s: referenced by %s", code, dependents)
            raise ConflictError(
                f"Currency '{code}' is referenced by pricing rows",
                dependents=sorted(dependents),
            )

        removed = {}
        for table in PRICING_TABLES:
            n = self.store.delete_where(table, currency_code=code)
            if n:
                removed[table] = n
        n = self.store.delete_where('module_limits', overage_currency=code)
        if n:
            removed['module_limits'] = n
        self.store.delete('currencies', code)
        logger.info("Deleted currency %s (removed dependents: %s)", code, removed or "none")
        return removed

    # ------------------------------------------------------------------
    # Subscription tiers
    # ------------------------------------------------------------------

    def list_tiers(self) -> list[SubscriptionTier]:
        return sorted(self.store.all('subscription_tiers'), key=lambda t: (t.tier_order, t.included_inspections))

    def validate_tier(self, tier: SubscriptionTier) -> ValidationResult:
        result = ValidationResult()
        self._check_text(result, 'name', tier.name)
        self._check_text(result, 'code', tier.code)
        if not _is_int(tier.tier_order):
            result.add("'tier_order' must be an integer")
        if not _is_int(tier.included_inspections) or tier.included_inspections < 0:
            result.add("'included_inspections' must be zero or more")
        self._check_amount(result, 'base_price_monthly', tier.base_price_monthly)
        self._check_amount(result, 'base_price_annual', tier.base_price_annual)
        self._check_percentage(result, 'annual_discount_percentage', tier.annual_discount_percentage)
        clash = [t for t in self.store.where('subscription_tiers', code=tier.code) if t.id != tier.id]
        if clash:
            result.add(f"Tier code '{tier.code}' is already in use")
        return result

    def create_tier(self, data: dict) -> SubscriptionTier:
        tier = _build(SubscriptionTier, data, generated={'id': data.get('id') or new_id()})
        self._check_unused_id('subscription_tiers', 'SubscriptionTier', tier.id)
        self.validate_tier(tier).raise_if_invalid()
        self.store.put('subscription_tiers', tier)
        logger.info("Created tier %s (%s)", tier.code, tier.id)
        return tier

    def update_tier(self, tier_id: str, updates: dict) -> SubscriptionTier:
        tier = self._require('subscription_tiers', 'SubscriptionTier', tier_id)
        updated = _apply_updates(tier, updates, frozen=('id',))
        self.validate_tier(updated).raise_if_invalid()
        self.store.put('subscription_tiers', updated)
        logger.info("Updated tier %s", tier_id)
        return updated

    def delete_tier(self, tier_id: str):
        """Delete a tier and its own pricing rows. Refused while priced packs or subscriptions reference it."""
        self._require('subscription_tiers', 'SubscriptionTier', tier_id)
        dependents = [
            table for table in ('addon_pack_pricing', 'extensive_inspection_pricing')
            if self.store.where(table, tier_id=tier_id)
        ]
        if self.store.where('instance_subscriptions', current_tier_id=tier_id):
            dependents.append('instance_subscriptions')
        if dependents:
            logger.warning("Refused to delete tier %s: referenced by %s", tier_id, dependents)
            raise ConflictError(f"Tier '{tier_id}' is referenced by {', '.join(dependents)}", dependents=dependents)
        self.store.delete_where('tier_pricing', tier_id=tier_id)
        self.store.delete('subscription_tiers', tier_id)
        logger.info("Deleted tier %s", tier_id)

    def list_tier_pricing(self, tier_id: str) -> list[TierPricing]:
        self._require('subscription_tiers', 'SubscriptionTier', tier_id)
        return sorted(self.store.where('tier_pricing', tier_id=tier_id), key=lambda p: p.currency_code)

    def upsert_tier_pricing(self, tier_id: str, data: dict) -> TierPricing:
        self._require('subscription_tiers', 'SubscriptionTier', tier_id)
        data = dict(data)
        data['currency_code'] = self._normalize_code(data.get('currency_code'))
        row = _build(TierPricing, data, generated={'tier_id': tier_id})

        result = ValidationResult()
        self._check_pricing_currency(result, row.currency_code)
        self._check_amount(result, 'price_monthly', row.price_monthly)
        self._check_amount(result, 'price_annual', row.price_annual)
        self._check_amount(result, 'per_inspection_price', row.per_inspection_price)
        result.raise_if_invalid()

        self.store.put('tier_pricing', row)
        logger.info("Set %s pricing for tier %s", row.currency_code, tier_id)
        return row

    def delete_tier_pricing(self, tier_id: str, currency_code: str):
        currency_code = self._normalize_code(currency_code)
        self._require('tier_pricing', 'TierPricing', tier_id, currency_code)
        self.store.delete('tier_pricing', tier_id, currency_code)
        logger.info("Deleted %s pricing for tier %s", currency_code, tier_id)

    # ------------------------------------------------------------------
    # Add-on packs
    # ------------------------------------------------------------------

    def list_packs(self) -> list[AddonPack]:
        return sorted(self.store.all('addon_packs'), key=lambda p: (p.pack_order, p.inspection_quantity))

    def validate_pack(self, pack: AddonPack) -> ValidationResult:
        result = ValidationResult()
        self._check_text(result, 'name', pack.name)
        if not _is_int(pack.inspection_quantity) or pack.inspection_quantity <= 0:
            result.add("'inspection_quantity' must be a positive integer")
        if not _is_int(pack.pack_order):
            result.add("'pack_order' must be an integer")
        return result

    def create_pack(self, data: dict) -> AddonPack:
        pack = _build(AddonPack, data, generated={'id': data.get('id') or new_id()})
        self._check_unused_id('addon_packs', 'AddonPack', pack.id)
        self.validate_pack(pack).raise_if_invalid()
        self.store.put('addon_packs', pack)
        logger.info("Created add-on pack %s (%d inspections)", pack.name, pack.inspection_quantity)
        return pack

    def update_pack(self, pack_id: str, updates: dict) -> AddonPack:
        """Update a pack; a quantity change re-derives every pricing row's total."""
        pack = self._require('addon_packs', 'AddonPack', pack_id)
        updated = _apply_updates(pack, updates, frozen=('id',))
        self.validate_pack(updated).raise_if_invalid()
        self.store.put('addon_packs', updated)

        if updated.inspection_quantity != pack.inspection_quantity:
            rows = self.store.where('addon_pack_pricing', pack_id=pack_id)
            for row in rows:
                self.store.put('addon_pack_pricing', replace(
                    row,
                    total_pack_price=compute_total_pack_price(row.price_per_inspection, updated.inspection_quantity),
                ))
            logger.info("Re-derived %d pack totals for %s", len(rows), pack_id)

        logger.info("Updated add-on pack %s", pack_id)
        return updated

    def delete_pack(self, pack_id: str):
        """Delete a pack and its pricing rows. Refused while active purchases exist."""
        pack = self._require('addon_packs', 'AddonPack', pack_id)
        active = self.store.count_active_purchases(pack_id)
        if active:
            logger.warning("Refused to delete pack %s: %d active purchases", pack_id, active)
            raise ConflictError(
                f"Add-on pack '{pack.name}' has {active} active purchase(s)",
                dependents=['addon_purchases'],
            )
        self.store.delete_where('addon_pack_pricing', pack_id=pack_id)
        self.store.delete('addon_packs', pack_id)
        logger.info("Deleted add-on pack %s", pack_id)

    def record_purchase(self, pack_id: str, status: str = 'active') -> AddonPurchase:
        self._require('addon_packs', 'AddonPack', pack_id)
        purchase = AddonPurchase(id=new_id(), pack_id=pack_id, status=status)
        return self.store.put('addon_purchases', purchase)

    def list_pack_pricing(self, pack_id: str) -> list[AddonPackPricing]:
        self._require('addon_packs', 'AddonPack', pack_id)
        return sorted(
            self.store.where('addon_pack_pricing', pack_id=pack_id),
            key=lambda p: (p.tier_id, p.currency_code),
        )

    def upsert_pack_pricing(self, pack_id: str, data: dict) -> AddonPackPricing:
        """Set a pack's per-inspection price for (tier, currency). The total is derived."""
        pack = self._require('addon_packs', 'AddonPack', pack_id)
        data = dict(data)
        data.pop('total_pack_price', None)
        data['currency_code'] = self._normalize_code(data.get('currency_code'))

        result = ValidationResult()
        for required in ('tier_id', 'currency_code', 'price_per_inspection'):
            if data.get(required) is None:
                result.add(f"'{required}' is required")
        result.raise_if_invalid()

        if self.store.get('subscription_tiers', data['tier_id']) is None:
            result.add(f"Tier '{data['tier_id']}' does not exist")
        self._check_pricing_currency(result, data['currency_code'])
        self._check_amount(result, 'price_per_inspection', data['price_per_inspection'])
        result.raise_if_invalid()

        row = _build(AddonPackPricing, data, generated={
            'pack_id': pack_id,
            'total_pack_price': compute_total_pack_price(data['price_per_inspection'], pack.inspection_quantity),
        })
        self.store.put('addon_pack_pricing', row)
        logger.info("Set pack %s pricing for tier %s in %s: %d each, %d total",
                    pack_id, row.tier_id, row.currency_code, row.price_per_inspection, row.total_pack_price)
        return row

    def delete_pack_pricing(self, pack_id: str, tier_id: str, currency_code: str):
        currency_code = self._normalize_code(currency_code)
        self._require('addon_pack_pricing', 'AddonPackPricing', pack_id, tier_id, currency_code)
        self.store.delete('addon_pack_pricing', pack_id, tier_id, currency_code)

    # ------------------------------------------------------------------
    # Extensive inspection types
    # ------------------------------------------------------------------

    def list_extensive_types(self) -> list[ExtensiveInspectionType]:
        return sorted(self.store.all('extensive_inspection_types'), key=lambda t: t.name)

    def validate_extensive_type(self, inspection_type: ExtensiveInspectionType) -> ValidationResult:
        result = ValidationResult()
        self._check_text(result, 'name', inspection_type.name)
        if not _is_int(inspection_type.image_count) or inspection_type.image_count <= 0:
            result.add("'image_count' must be a positive integer")
        return result

    def create_extensive_type(self, data: dict) -> ExtensiveInspectionType:
        inspection_type = _build(ExtensiveInspectionType, data, generated={'id': data.get('id') or new_id()})
        self._check_unused_id('extensive_inspection_types', 'ExtensiveInspectionType', inspection_type.id)
        self.validate_extensive_type(inspection_type).raise_if_invalid()
        self.store.put('extensive_inspection_types', inspection_type)
        logger.info("Created extensive inspection type %s", inspection_type.name)
        return inspection_type

    def update_extensive_type(self, type_id: str, updates: dict) -> ExtensiveInspectionType:
        inspection_type = self._require('extensive_inspection_types', 'ExtensiveInspectionType', type_id)
        updated = _apply_updates(inspection_type, updates, frozen=('id',))
        self.validate_extensive_type(updated).raise_if_invalid()
        self.store.put('extensive_inspection_types', updated)
        return updated

    def delete_extensive_type(self, type_id: str):
        self._require('extensive_inspection_types', 'ExtensiveInspectionType', type_id)
        self.store.delete_where('extensive_inspection_pricing', type_id=type_id)
        self.store.delete('extensive_inspection_types', type_id)
        logger.info("Deleted extensive inspection type %s", type_id)

    def list_extensive_pricing(self, type_id: str) -> list[ExtensiveInspectionPricing]:
        self._require('extensive_inspection_types', 'ExtensiveInspectionType', type_id)
        return sorted(
            self.store.where('extensive_inspection_pricing', type_id=type_id),
            key=lambda p: (p.tier_id, p.currency_code),
        )

    def upsert_extensive_pricing(self, type_id: str, data: dict) -> ExtensiveInspectionPricing:
        self._require('extensive_inspection_types', 'ExtensiveInspectionType', type_id)
        data = dict(data)
        data['currency_code'] = self._normalize_code(data.get('currency_code'))
        row = _build(ExtensiveInspectionPricing, data, generated={'type_id': type_id})

        result = ValidationResult()
        if self.store.get('subscription_tiers', row.tier_id) is None:
            result.add(f"Tier '{row.tier_id}' does not exist")
        self._check_pricing_currency(result, row.currency_code)
        self._check_amount(result, 'price_per_inspection', row.price_per_inspection)
        result.raise_if_invalid()

        self.store.put('extensive_inspection_pricing', row)
        logger.info("Set extensive type %s pricing for tier %s in %s", type_id, row.tier_id, row.currency_code)
        return row

    def delete_extensive_pricing(self, type_id: str, tier_id: str, currency_code: str):
        currency_code = self._normalize_code(currency_code)
        self._require('extensive_inspection_pricing', 'ExtensiveInspectionPricing', type_id, tier_id, currency_code)
        self.store.delete('extensive_inspection_pricing', type_id, tier_id, currency_code)

    # ------------------------------------------------------------------
    # Modules and limits
    # ------------------------------------------------------------------

    def list_modules(self) -> list[Module]:
        return sorted(self.store.all('modules'), key=lambda m: (m.display_order, m.name))

    def validate_module(self, module: Module) -> ValidationResult:
        result = ValidationResult()
        self._check_text(result, 'name', module.name)
        self._check_text(result, 'module_key', module.module_key)
        if not _is_int(module.display_order):
            result.add("'display_order' must be an integer")
        clash = [m for m in self.store.where('modules', module_key=module.module_key) if m.id != module.id]
        if clash:
            result.add(f"Module key '{module.module_key}' is already in use")
        return result

    def create_module(self, data: dict) -> Module:
        module = _build(Module, data, generated={'id': data.get('id') or new_id()})
        self._check_unused_id('modules', 'Module', module.id)
        self.validate_module(module).raise_if_invalid()
        self.store.put('modules', module)
        logger.info("Created module %s", module.module_key)
        return module

    def update_module(self, module_id: str, updates: dict) -> Module:
        module = self._require('modules', 'Module', module_id)
        updated = _apply_updates(module, updates, frozen=('id',))
        self.validate_module(updated).raise_if_invalid()
        self.store.put('modules', updated)
        return updated

    def delete_module(self, module_id: str):
        """Delete a module with its pricing, limits, bundle memberships and organisation settings."""
        self._require('modules', 'Module', module_id)
        self.store.delete_where('module_pricing', module_id=module_id)
        self.store.delete_where('module_limits', module_id=module_id)
        self.store.delete_where('bundle_modules', module_id=module_id)
        self.store.delete_where('instance_modules', module_id=module_id)
        self.store.delete_where('instance_module_overrides', module_id=module_id)
        self.store.delete('modules', module_id)
        logger.info("Deleted module %s", module_id)

    def list_module_pricing(self, module_id: str) -> list[ModulePricing]:
        self._require('modules', 'Module', module_id)
        return sorted(self.store.where('module_pricing', module_id=module_id), key=lambda p: p.currency_code)

    def upsert_module_pricing(self, module_id: str, data: dict) -> ModulePricing:
        self._require('modules', 'Module', module_id)
        data = dict(data)
        data['currency_code'] = self._normalize_code(data.get('currency_code'))
        row = _build(ModulePricing, data, generated={'module_id': module_id})

        result = ValidationResult()
        self._check_pricing_currency(result, row.currency_code)
        self._check_amount(result, 'price_monthly', row.price_monthly)
        self._check_amount(result, 'price_annual', row.price_annual)
        result.raise_if_invalid()

        self.store.put('module_pricing', row)
        logger.info("Set %s pricing for module %s", row.currency_code, module_id)
        return row

    def delete_module_pricing(self, module_id: str, currency_code: str):
        currency_code = self._normalize_code(currency_code)
        self._require('module_pricing', 'ModulePricing', module_id, currency_code)
        self.store.delete('module_pricing', module_id, currency_code)

    def list_module_limits(self, module_id: str) -> list[ModuleLimit]:
        self._require('modules', 'Module', module_id)
        return sorted(self.store.where('module_limits', module_id=module_id), key=lambda lim: lim.limit_type)

    def validate_module_limit(self, limit: ModuleLimit) -> ValidationResult:
        result = ValidationResult()
        self._check_text(result, 'limit_type', limit.limit_type)
        if not _is_int(limit.included_quantity) or limit.included_quantity < 0:
            result.add("'included_quantity' must be zero or more")
        self._check_amount(result, 'overage_price', limit.overage_price)
        self._check_pricing_currency(result, limit.overage_currency)
        return result

    def add_module_limit(self, module_id: str, data: dict) -> ModuleLimit:
        self._require('modules', 'Module', module_id)
        data = dict(data)
        data['overage_currency'] = self._normalize_code(data.get('overage_currency'))
        limit = _build(ModuleLimit, data, generated={'id': data.get('id') or new_id(), 'module_id': module_id})
        self._check_unused_id('module_limits', 'ModuleLimit', limit.id)
        self.validate_module_limit(limit).raise_if_invalid()
        self.store.put('module_limits', limit)
        logger.info("Added %s limit to module %s", limit.limit_type, module_id)
        return limit

    def update_module_limit(self, limit_id: str, updates: dict) -> ModuleLimit:
        limit = self._require('module_limits', 'ModuleLimit', limit_id)
        updates = dict(updates)
        if 'overage_currency' in updates:
            updates['overage_currency'] = self._normalize_code(updates['overage_currency'])
        updated = _apply_updates(limit, updates, frozen=('id', 'module_id'))
        self.validate_module_limit(updated).raise_if_invalid()
        self.store.put('module_limits', updated)
        return updated

    def delete_module_limit(self, limit_id: str):
        self._require('module_limits', 'ModuleLimit', limit_id)
        self.store.delete('module_limits', limit_id)

    # ------------------------------------------------------------------
    # Bundles
    # ------------------------------------------------------------------

    def list_bundles(self) -> list[ModuleBundle]:
        return sorted(self.store.all('module_bundles'), key=lambda b: b.name)

    def validate_bundle(self, bundle: ModuleBundle) -> ValidationResult:
        result = ValidationResult()
        self._check_text(result, 'name', bundle.name)
        self._check_percentage(result, 'discount_percentage', bundle.discount_percentage)
        return result

    def _check_module_ids(self, module_ids: list[str]):
        missing = [m for m in module_ids if self.store.get('modules', m) is None]
        if missing:
            raise ValidationError([f"Module '{m}' does not exist" for m in missing])

    def create_bundle(self, data: dict) -> ModuleBundle:
        data = dict(data)
        module_ids = list(data.pop('module_ids', None) or [])
        bundle = _build(ModuleBundle, data, generated={'id': data.get('id') or new_id()})
        self._check_unused_id('module_bundles', 'ModuleBundle', bundle.id)
        self.validate_bundle(bundle).raise_if_invalid()
        self._check_module_ids(module_ids)

        self.store.put('module_bundles', bundle)
        for module_id in set(module_ids):
            self.store.put('bundle_modules', BundleModule(bundle_id=bundle.id, module_id=module_id))
        logger.info("Created bundle %s with %d modules", bundle.name, len(set(module_ids)))
        return bundle

    def update_bundle(self, bundle_id: str, updates: dict) -> ModuleBundle:
        bundle = self._require('module_bundles', 'ModuleBundle', bundle_id)
        updates = dict(updates)
        module_ids = updates.pop('module_ids', None)
        updated = _apply_updates(bundle, updates, frozen=('id',))
        self.validate_bundle(updated).raise_if_invalid()
        if module_ids is not None:
            self._check_module_ids(module_ids)

        self.store.put('module_bundles', updated)
        if module_ids is not None:
            self.set_bundle_modules(bundle_id, module_ids)
        return updated

    def bundle_modules(self, bundle_id: str) -> list[str]:
        self._require('module_bundles', 'ModuleBundle', bundle_id)
        return sorted(bm.module_id for bm in self.store.where('bundle_modules', bundle_id=bundle_id))

    def set_bundle_modules(self, bundle_id: str, module_ids: list[str]) -> list[str]:
        """Replace a bundle's module set."""
        self._require('module_bundles', 'ModuleBundle', bundle_id)
        self._check_module_ids(module_ids)
        self.store.delete_where('bundle_modules', bundle_id=bundle_id)
        self.store.delete_where('instance_bundles', bundle_id=bundle_id)
        for module_id in set(module_ids):
            self.store.put('bundle_modules', BundleModule(bundle_id=bundle_id, module_id=module_id))
        return self.bundle_modules(bundle_id)

    def delete_bundle(self, bundle_id: str):
        self._require('module_bundles', 'ModuleBundle', bundle_id)
        self.store.delete_where('bundle_pricing', bundle_id=bundle_id)
        self.store.delete_where('bundle_modules', bundle_id=bundle_id)
        self.store.delete('module_bundles', bundle_id)
        logger.info("Deleted bundle %s", bundle_id)

    def list_bundle_pricing(self, bundle_id: str) -> list[BundlePricing]:
        self._require('module_bundles', 'ModuleBundle', bundle_id)
        return sorted(self.store.where('bundle_pricing', bundle_id=bundle_id), key=lambda p: p.currency_code)

    def upsert_bundle_pricing(self, bundle_id: str, data: dict) -> BundlePricing:
        self._require('module_bundles', 'ModuleBundle', bundle_id)
        data = dict(data)
        data['currency_code'] = self._normalize_code(data.get('currency_code'))
        row = _build(BundlePricing, data, generated={'bundle_id': bundle_id})

        result = ValidationResult()
        self._check_pricing_currency(result, row.currency_code)
        self._check_amount(result, 'price_monthly', row.price_monthly)
        self._check_amount(result, 'price_annual', row.price_annual)
        self._check_amount(result, 'savings_monthly', row.savings_monthly, optional=True)
        self._check_amount(result, 'savings_annual', row.savings_annual, optional=True)
        result.raise_if_invalid()

        self.store.put('bundle_pricing', row)
        logger.info("Set %s pricing for bundle %s", row.currency_code, bundle_id)
        return row

    def delete_bundle_pricing(self, bundle_id: str, currency_code: str):
        currency_code = self._normalize_code(currency_code)
        self._require('bundle_pricing', 'BundlePricing', bundle_id, currency_code)
        self.store.delete('bundle_pricing', bundle_id, currency_code)

    # ------------------------------------------------------------------
    # Organisation subscriptions
    # ------------------------------------------------------------------

    def list_instance_subscriptions(self) -> list[InstanceSubscription]:
        return sorted(self.store.all('instance_subscriptions'), key=lambda s: s.organization_id)

    def get_instance_subscription(self, organization_id: str) -> dict[str, Any]:
        """A subscription with its enabled modules, module overrides and bundles."""
        subscription = self._require('instance_subscriptions', 'InstanceSubscription', organization_id)
        return {
            'subscription': subscription,
            'modules': sorted(self.store.where('instance_modules', organization_id=organization_id),
                              key=lambda m: m.module_id),
            'module_overrides': sorted(self.store.where('instance_module_overrides', organization_id=organization_id),
                                       key=lambda o: o.module_id),
            'bundles': sorted(self.store.where('instance_bundles', organization_id=organization_id),
                              key=lambda b: b.bundle_id),
        }

    def validate_instance_subscription(self, subscription: InstanceSubscription) -> ValidationResult:
        result = ValidationResult()
        self._check_text(result, 'organization_id', subscription.organization_id)
        if subscription.current_tier_id is not None \
                and self.store.get('subscription_tiers', subscription.current_tier_id) is None:
            result.add(f"Tier '{subscription.current_tier_id}' does not exist")
        self._check_pricing_currency(result, subscription.registration_currency, name='registration_currency')
        self._check_amount(result, 'override_monthly_fee', subscription.override_monthly_fee, optional=True)
        self._check_amount(result, 'override_annual_fee', subscription.override_annual_fee, optional=True)
        return result

    def set_instance_subscription(self, organization_id: str, data: dict) -> InstanceSubscription:
        """Create or replace an organisation's subscription. Override fees are in its registration currency."""
        data = dict(data)
        data['registration_currency'] = self._normalize_code(data.get('registration_currency'))
        subscription = _build(InstanceSubscription, data, generated={'organization_id': organization_id})
        self.validate_instance_subscription(subscription).raise_if_invalid()
        self.store.put('instance_subscriptions', subscription)
        logger.info("Set subscription for %s (tier %s, %s)", organization_id,
                    subscription.current_tier_id, subscription.registration_currency)
        return subscription

    def delete_instance_subscription(self, organization_id: str):
        self._require('instance_subscriptions', 'InstanceSubscription', organization_id)
        for table in INSTANCE_TABLES:
            self.store.delete_where(table, organization_id=organization_id)
        self.store.delete('instance_subscriptions', organization_id)
        logger.info("Deleted subscription for %s", organization_id)

    def set_instance_module(self, organization_id: str, module_id: str, is_enabled: bool = True) -> InstanceModule:
        """Switch a module on or off for an organisation."""
        self._require('instance_subscriptions', 'InstanceSubscription', organization_id)
        module = self._require('modules', 'Module', module_id)
        if is_enabled and not module.is_available_globally:
            raise ValidationError([f"Module '{module.module_key}' is not available"])
        row = InstanceModule(organization_id=organization_id, module_id=module_id, is_enabled=bool(is_enabled))
        self.store.put('instance_modules', row)
        logger.info("%s module %s for %s", "Enabled" if row.is_enabled else "Disabled", module_id, organization_id)
        return row

    def set_module_override(self, organization_id: str, module_id: str, data: dict) -> InstanceModuleOverride:
        self._require('instance_subscriptions', 'InstanceSubscription', organization_id)
        self._require('modules', 'Module', module_id)
        row = _build(InstanceModuleOverride, data, generated={
            'organization_id': organization_id,
            'module_id': module_id,
        })

        result = ValidationResult()
        self._check_amount(result, 'override_monthly_price', row.override_monthly_price, optional=True)
        self._check_amount(result, 'override_annual_price', row.override_annual_price, optional=True)
        if row.override_monthly_price is None and row.override_annual_price is None:
            result.add("At least one of 'override_monthly_price' or 'override_annual_price' is required")
        result.raise_if_invalid()

        self.store.put('instance_module_overrides', row)
        logger.info("Set module %s override for %s", module_id, organization_id)
        return row

    def delete_module_override(self, organization_id: str, module_id: str):
        self._require('instance_module_overrides', 'InstanceModuleOverride', organization_id, module_id)
        self.store.delete('instance_module_overrides', organization_id, module_id)

    def add_instance_bundle(self, organization_id: str, bundle_id: str) -> InstanceBundle:
        self._require('instance_subscriptions', 'InstanceSubscription', organization_id)
        bundle = self._require('module_bundles', 'ModuleBundle', bundle_id)
        if not bundle.is_active:
            raise ValidationError([f"Bundle '{bundle.name}' is not active"])
        row = self.store.put('instance_bundles', InstanceBundle(organization_id=organization_id, bundle_id=bundle_id))
        logger.info("Added bundle %s for %s", bundle_id, organization_id)
        return row

    def remove_instance_bundle(self, organization_id: str, bundle_id: str):
        self._require('instance_bundles', 'InstanceBundle', organization_id, bundle_id)
        self.store.delete('instance_bundles', organization_id, bundle_id)
