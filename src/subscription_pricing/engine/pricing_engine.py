"""
Pricing Engine - resolves catalog prices for a currency and builds quotes.

Resolution rules:
- Pricing rows are authoritative per currency. Nothing is converted.
- A tier with no row for the currency falls back to its base price, which
  is expressed in the master currency.
- Packs, extensive inspections, modules and bundles with no row for the
  requested key are "not orderable": they are omitted, never priced at zero.
- The requested currency must exist. Customers can only preview and quote
  in an active one.
- Totals only ever add lines in the quote's own currency.
"""
import logging
from typing import Optional

from ..config.settings import get_settings, Settings
from ..services.errors import NotFoundError, ValidationError
from .models import (
    ANNUAL,
    BILLING_PERIODS,
    AddonPackPricing,
    BundlePricing,
    Currency,
    ExtensiveInspectionPricing,
    ExtensiveTierPrice,
    InstancePrice,
    InstanceSubscription,
    LineItem,
    ModulePricing,
    PackTierPrice,
    PreviewBundle,
    PreviewExtensiveInspection,
    PreviewModule,
    PreviewPack,
    PreviewTier,
    PricingPreview,
    PricingRequest,
    ResolvedTierPrice,
    Result,
    SubscriptionTier,
    UpgradeRecommendation,
)
from .money import format_minor_units
from .pack_optimizer import PackOption, PackSelection, recommend_pack_mix

logger = logging.getLogger(__name__)


def normalize_currency(currency_code: str) -> str:
    return str(currency_code or '').strip().upper()


class PricingEngine:
    """
    Core pricing engine over a catalog store.

    Quote resolution order:
    1. Apply the minimum inspection count
    2. Detect the tier whose inspection range holds the count
    3. Resolve the tier price (currency row, else master-currency base price)
    4. Cover inspections above the allowance with the cheapest priced packs
    5. Add selected bundles, then modules not already covered by a bundle
    6. Suggest the next tier when it beats tier + packs
    """

    def __init__(self, store: 'CatalogStore', settings: Optional[Settings] = None):
        """Initialize engine with a catalog store."""
        self.settings = settings or get_settings()
        self.store = store

    @classmethod
    def from_data_dir(cls, settings: Optional[Settings] = None) -> 'PricingEngine':
        """Build an engine over the CSV catalog in settings.data_dir."""
        from ..services.catalog_store import CatalogStore

        settings = settings or get_settings()
        return cls(CatalogStore.load(settings.data_dir), settings)

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def _require(self, table: str, entity: str, key: str):
        row = self.store.get(table, key)
        if row is None:
            raise NotFoundError(entity, key)
        return row

    def get_tier(self, tier_id: str) -> SubscriptionTier:
        return self._require('subscription_tiers', 'SubscriptionTier', tier_id)

    def get_currency(self, currency_code: str, orderable: bool = False) -> Currency:
        """
        Look up a currency by code.

        Raises NotFoundError for an unknown code. With orderable=True an
        inactive currency is refused with a ValidationError.
        """
        currency = self._require('currencies', 'Currency', normalize_currency(currency_code))
        if orderable and not currency.is_active:
            raise ValidationError([f"Currency '{currency.code}' is not active"])
        return currency

    def active_tiers(self) -> list[SubscriptionTier]:
        """Active tiers in display order."""
        tiers = [t for t in self.store.all('subscription_tiers') if t.is_active]
        return sorted(tiers, key=lambda t: (t.tier_order, t.included_inspections))

    def bundle_module_ids(self, bundle_id: str) -> list[str]:
        self._require('module_bundles', 'ModuleBundle', bundle_id)
        return sorted(bm.module_id for bm in self.store.where('bundle_modules', bundle_id=bundle_id))

    # ------------------------------------------------------------------
    # Price resolution
    # ------------------------------------------------------------------

    def resolve_tier_price(self, tier_id: str, currency_code: str) -> ResolvedTierPrice:
        """
        Resolve a tier's price in a currency.

        Returns the currency's pricing row when there is one, otherwise the
        tier's base price in the master currency. Never raises for a missing
        row and never returns a converted amount.
        """
        price, _ = self.resolve_tier_price_with_trace(tier_id, currency_code)
        return price

    def resolve_tier_price_with_trace(self, tier_id: str, currency_code: str) -> tuple[ResolvedTierPrice, list]:
        """
        Resolve tier price with trace of resolution steps.

        Returns (resolved_price, trace_steps).
        """
        tier = self.get_tier(tier_id)
        currency_code = self.get_currency(currency_code).code
        trace = []

        trace.append(("Tier Lookup", f"Resolving {tier.name} in {currency_code}", None))

        row = self.store.get('tier_pricing', tier.id, currency_code)
        if row is not None:
            trace.append(("Price Resolution", f"Using {currency_code} tier pricing",
                          format_minor_units(row.price_monthly, currency_code)))
            return ResolvedTierPrice(
                tier_id=tier.id,
                requested_currency=currency_code,
                currency_code=currency_code,
                price_monthly=row.price_monthly,
                price_annual=row.price_annual,
                per_inspection_price=row.per_inspection_price,
                source="tier_pricing",
            ), trace

        master = self.settings.master_currency
        logger.debug("No %s pricing for tier %s; using base price in %s", currency_code, tier.code, master)
        trace.append(("Fallback", f"No {currency_code} pricing, using base price in {master}",
                      format_minor_units(tier.base_price_monthly, master)))
        return ResolvedTierPrice(
            tier_id=tier.id,
            requested_currency=currency_code,
            currency_code=master,
            price_monthly=tier.base_price_monthly,
            price_annual=tier.base_price_annual,
            per_inspection_price=0,
            source="base_price",
        ), trace

    def resolve_pack_price(self, pack_id: str, tier_id: str, currency_code: str) -> Optional[AddonPackPricing]:
        """Pack pricing for (tier, currency), or None when the pack is not orderable there."""
        self._require('addon_packs', 'AddonPack', pack_id)
        self.get_tier(tier_id)
        return self.store.get('addon_pack_pricing', pack_id, tier_id, self.get_currency(currency_code).code)

    def resolve_extensive_price(self, type_id: str, tier_id: str,
                                currency_code: str) -> Optional[ExtensiveInspectionPricing]:
        self._require('extensive_inspection_types', 'ExtensiveInspectionType', type_id)
        self.get_tier(tier_id)
        return self.store.get('extensive_inspection_pricing', type_id, tier_id, self.get_currency(currency_code).code)

    def resolve_module_price(self, module_id: str, currency_code: str) -> Optional[ModulePricing]:
        self._require('modules', 'Module', module_id)
        return self.store.get('module_pricing', module_id, self.get_currency(currency_code).code)

    def resolve_bundle_price(self, bundle_id: str, currency_code: str) -> Optional[BundlePricing]:
        """Bundle pricing row; savings are returned as stored, never derived."""
        self._require('module_bundles', 'ModuleBundle', bundle_id)
        return self.store.get('bundle_pricing', bundle_id, self.get_currency(currency_code).code)

    # ------------------------------------------------------------------
    # Preview
    # ------------------------------------------------------------------

    def build_preview(self, currency_code: str, include_inactive: bool = False) -> PricingPreview:
        """
        Resolve the whole catalog for one currency, as customers would see it.

        Every active tier appears (base-price fallback). Packs and extensive
        inspection types list only the tiers they are priced for and are
        dropped entirely when priced for none. Modules and bundles without a
        row in the currency are dropped.

        An unknown currency raises NotFoundError. An inactive one is refused
        unless include_inactive is set (admin previews).
        """
        currency_code = self.get_currency(currency_code, orderable=not include_inactive).code
        tiers = self.active_tiers()
        preview = PricingPreview(currency_code=currency_code)

        for tier in tiers:
            preview.tiers.append(PreviewTier(tier=tier, price=self.resolve_tier_price(tier.id, currency_code)))

        packs = sorted(
            (p for p in self.store.all('addon_packs') if p.is_active),
            key=lambda p: (p.pack_order, p.inspection_quantity),
        )
        for pack in packs:
            entry = PreviewPack(pack=pack)
            for tier in tiers:
                row = self.store.get('addon_pack_pricing', pack.id, tier.id, currency_code)
                if row is None:
                    continue
                entry.pricing.append(PackTierPrice(
                    tier_id=tier.id,
                    tier_name=tier.name,
                    price_per_inspection=row.price_per_inspection,
                    total_pack_price=row.total_pack_price,
                ))
            if entry.pricing:
                preview.addon_packs.append(entry)
            else:
                logger.debug("Pack %s has no %s pricing; omitted from preview", pack.name, currency_code)

        types = sorted(
            (t for t in self.store.all('extensive_inspection_types') if t.is_active),
            key=lambda t: t.name,
        )
        for inspection_type in types:
            entry = PreviewExtensiveInspection(inspection_type=inspection_type)
            for tier in tiers:
                row = self.store.get('extensive_inspection_pricing', inspection_type.id, tier.id, currency_code)
                if row is None:
                    continue
                entry.pricing.append(ExtensiveTierPrice(
                    tier_id=tier.id,
                    tier_name=tier.name,
                    price_per_inspection=row.price_per_inspection,
                ))
            if entry.pricing:
                preview.extensive_inspections.append(entry)

        modules = sorted(
            (m for m in self.store.all('modules') if m.is_available_globally),
            key=lambda m: (m.display_order, m.name),
        )
        for module in modules:
            row = self.store.get('module_pricing', module.id, currency_code)
            if row is None:
                logger.debug("Module %s has no %s pricing; omitted from preview", module.module_key, currency_code)
                continue
            limits = sorted(self.store.where('module_limits', module_id=module.id), key=lambda lim: lim.limit_type)
            preview.modules.append(PreviewModule(module=module, pricing=row, limits=limits))

        bundles = sorted(
            (b for b in self.store.all('module_bundles') if b.is_active),
            key=lambda b: b.name,
        )
        for bundle in bundles:
            row = self.store.get('bundle_pricing', bundle.id, currency_code)
            if row is None:
                continue
            preview.bundles.append(PreviewBundle(
                bundle=bundle,
                pricing=row,
                module_ids=self.bundle_module_ids(bundle.id),
            ))

        return preview

    # ------------------------------------------------------------------
    # Customer quotes
    # ------------------------------------------------------------------

    def detect_tier(self, inspection_count: int) -> SubscriptionTier:
        """
        Pick the tier whose inspection range holds the count.

        A tier's range runs from its included_inspections up to the next
        tier's. The largest tier takes every count above its allowance and
        the smallest takes every count below its own.
        """
        tiers = sorted(self.active_tiers(), key=lambda t: t.included_inspections)
        if not tiers:
            raise NotFoundError("SubscriptionTier", "active")

        count = max(int(inspection_count), self.settings.minimum_inspections)
        for current, following in zip(tiers, tiers[1:]):
            if count < following.included_inspections:
                return current
        return tiers[-1]

    def recommend_packs(self, extra_inspections: int, tier_id: str, currency_code: str) -> list[PackSelection]:
        """Cheapest pack mix covering the extra inspections, priced for tier and currency."""
        currency_code = self.get_currency(currency_code).code
        self.get_tier(tier_id)
        options = []
        for pack in self.store.all('addon_packs'):
            if not pack.is_active:
                continue
            row = self.store.get('addon_pack_pricing', pack.id, tier_id, currency_code)
            if row is None:
                continue
            options.append(PackOption(
                pack_id=pack.id,
                name=pack.name,
                quantity=pack.inspection_quantity,
                price=row.total_pack_price,
            ))
        return recommend_pack_mix(extra_inspections, options)

    # ------------------------------------------------------------------
    # Organisation pricing
    # ------------------------------------------------------------------

    def get_instance_subscription(self, organization_id: str) -> InstanceSubscription:
        return self._require('instance_subscriptions', 'InstanceSubscription', organization_id)

    def instance_bundle_ids(self, organization_id: str) -> list[str]:
        """Bundles the organisation holds."""
        rows = self.store.where('instance_bundles', organization_id=organization_id)
        return sorted(b.bundle_id for b in rows if b.is_active)

    def instance_module_ids(self, organization_id: str) -> list[str]:
        """Modules switched on for the organisation."""
        rows = self.store.where('instance_modules', organization_id=organization_id)
        return sorted(m.module_id for m in rows if m.is_enabled)

    def calculate_instance_price(self, organization_id: str, billing_period: str) -> InstancePrice:
        """
        An organisation's subscription price for one billing period.

        An override fee for the period wins and is taken to be in the
        registration currency. Otherwise the current tier is resolved in the
        registration currency like any other tier price, base-price fallback
        included.
        """
        if billing_period not in BILLING_PERIODS:
            raise ValidationError([f"billing_period must be one of {BILLING_PERIODS}"])
        subscription = self.get_instance_subscription(organization_id)

        override = subscription.override_for(billing_period)
        if override is not None:
            return InstancePrice(
                organization_id=organization_id,
                ref_id=subscription.current_tier_id or '',
                billing_period=billing_period,
                amount=override,
                currency_code=subscription.registration_currency,
                source="instance_override",
            )

        if not subscription.current_tier_id:
            raise ValidationError([f"Organisation '{organization_id}' has no tier assigned"])
        price = self.resolve_tier_price(subscription.current_tier_id, subscription.registration_currency)
        return InstancePrice(
            organization_id=organization_id,
            ref_id=price.tier_id,
            billing_period=billing_period,
            amount=price.price_for(billing_period),
            currency_code=price.currency_code,
            source=price.source,
        )

    def calculate_module_price(self, organization_id: str, module_id: str,
                               billing_period: str) -> Optional[InstancePrice]:
        """
        An organisation's price for one module.

        1. An active override for the period
        2. Zero, when a bundle the organisation holds covers the module
        3. The module's pricing row in the registration currency

        Returns None when none of these applies (not orderable).
        """
        if billing_period not in BILLING_PERIODS:
            raise ValidationError([f"billing_period must be one of {BILLING_PERIODS}"])
        subscription = self.get_instance_subscription(organization_id)
        self._require('modules', 'Module', module_id)
        currency = subscription.registration_currency

        def priced(amount: int, source: str) -> InstancePrice:
            return InstancePrice(organization_id, module_id, billing_period, amount, currency, source)

        override = self.store.get('instance_module_overrides', organization_id, module_id)
        if override is not None and override.is_active and override.override_for(billing_period) is not None:
            return priced(override.override_for(billing_period), "instance_override")

        for bundle_id in self.instance_bundle_ids(organization_id):
            if module_id in self.bundle_module_ids(bundle_id):
                return priced(0, "bundle")

        row = self.store.get('module_pricing', module_id, currency)
        if row is None:
            return None
        return priced(row.price_annual if billing_period == ANNUAL else row.price_monthly, "module_pricing")

    def is_module_available_for_instance(self, module_id: str, organization_id: str) -> bool:
        """A module is available when it is offered globally and switched on for the organisation."""
        module = self.store.get('modules', module_id)
        if module is None or not module.is_available_globally:
            return False
        if self.store.get('instance_subscriptions', organization_id) is None:
            return False
        enabled = self.store.get('instance_modules', organization_id, module_id)
        return enabled is not None and enabled.is_enabled

    # ------------------------------------------------------------------
    # Quote
    # ------------------------------------------------------------------

    def calculate(self, request: PricingRequest) -> Result:
        """
        Calculate a customer quote with full traceability.

        Args:
            request: PricingRequest with inspection volume, currency, any
                selected modules/bundles and optionally the organisation
                whose negotiated prices apply

        Returns:
            Result dataclass with lines, totals, trace and warnings. Lines
            priced in another currency (base-price fallback) are kept out
            of the totals and summed in other_currency_totals.
        """
        errors = []
        if request.billing_period not in BILLING_PERIODS:
            errors.append(f"billing_period must be one of {BILLING_PERIODS}")
        if request.inspection_count is None or int(request.inspection_count) < 0:
            errors.append("inspection_count must be zero or more")
        if not normalize_currency(request.currency_code):
            errors.append("currency_code is required")
        if errors:
            raise ValidationError(errors)

        currency = self.get_currency(request.currency_code, orderable=True).code
        period = request.billing_period
        count = max(int(request.inspection_count), self.settings.minimum_inspections)
        subscription = (
            self.get_instance_subscription(request.organization_id) if request.organization_id else None
        )

        tier = self.detect_tier(count)
        result = Result(
            tier_id=tier.id,
            tier_name=tier.name,
            currency_code=currency,
            billing_period=period,
            inspection_count=count,
        )
        if count != request.inspection_count:
            result.add_trace("Minimum", f"Raised to minimum of {self.settings.minimum_inspections}", str(count))
        result.add_trace("Tier Detection", f"{count} inspections fall in {tier.name}", tier.code)

        if tier.requires_custom_pricing:
            result.requires_quotation = True
            result.add_warning(f"{tier.name} requires a custom quotation")

        negotiated = False
        if subscription is not None:
            org = subscription.organization_id
            if not subscription.is_active:
                result.add_warning(f"Subscription for {org} is not active; catalog prices used")
            elif subscription.registration_currency != currency:
                result.add_warning(
                    f"Negotiated prices for {org} are in {subscription.registration_currency}; "
                    f"catalog prices used for {currency}"
                )
            else:
                negotiated = True
                result.add_trace("Organisation", f"Applying negotiated prices for {org}", None)

        # Tier line
        price, tier_trace = self.resolve_tier_price_with_trace(tier.id, currency)
        override = None
        if negotiated and subscription.current_tier_id == tier.id:
            override = subscription.override_for(period)
        if override is not None:
            amount, line_currency, source = override, currency, "instance_override"
        else:
            amount, line_currency, source = price.price_for(period), price.currency_code, price.source
        tier_line = LineItem(
            kind="tier",
            ref_id=tier.id,
            description=f"{tier.name} subscription ({tier.included_inspections} inspections)",
            quantity=1,
            unit_price=amount,
            extended_price=amount,
            currency_code=line_currency,
            source=source,
        )
        for step, desc, val in tier_trace:
            tier_line.add_trace(step, desc, val)
        if override is not None:
            tier_line.add_trace("Override", f"Negotiated {period} fee", format_minor_units(override, currency))
        elif line_currency != currency:
            tier_line.add_warning(
                f"No {currency} pricing for {tier.name}; base price shown in {line_currency}"
            )
        result.add_line(tier_line)

        # Extra inspections
        extra = max(0, count - tier.included_inspections)
        if extra:
            result.add_trace("Allowance", f"{tier.name} includes {tier.included_inspections}", f"{extra} extra")
            selections = self.recommend_packs(extra, tier.id, currency)
            if not selections:
                result.add_warning(
                    f"No add-on packs are priced for {tier.name} in {currency}; {extra} inspections not covered"
                )
            for selection in selections:
                line = LineItem(
                    kind="addon_pack",
                    ref_id=selection.pack_id,
                    description=f"{selection.name} ({selection.quantity} inspections)",
                    quantity=selection.count,
                    unit_price=selection.unit_price,
                    extended_price=selection.total_price,
                    currency_code=currency,
                    source="addon_pack_pricing",
                    recurring=False,
                )
                line.add_trace("Extension",
                               f"{selection.count} × {format_minor_units(selection.unit_price, currency)}",
                               format_minor_units(selection.total_price, currency))
                result.add_line(line)

        bundle_ids = list(request.bundle_ids)
        module_ids = list(request.module_ids)
        if subscription is not None and subscription.is_active:
            bundle_ids += self.instance_bundle_ids(subscription.organization_id)
            module_ids += self.instance_module_ids(subscription.organization_id)

        # Bundles first, so covered modules are not charged twice
        covered = set()
        for bundle_id in dict.fromkeys(bundle_ids):
            bundle = self._require('module_bundles', 'ModuleBundle', bundle_id)
            row = self.store.get('bundle_pricing', bundle.id, currency) if bundle.is_active else None
            if row is None:
                result.add_warning(f"Bundle {bundle.name} is not available in {currency}")
                continue
            amount = row.price_annual if period == ANNUAL else row.price_monthly
            result.add_line(LineItem(
                kind="bundle",
                ref_id=bundle.id,
                description=bundle.name,
                quantity=1,
                unit_price=amount,
                extended_price=amount,
                currency_code=currency,
                source="bundle_pricing",
            ))
            covered.update(self.bundle_module_ids(bundle.id))

        for module_id in dict.fromkeys(module_ids):
            module = self._require('modules', 'Module', module_id)
            if module.id in covered:
                result.add_trace("Module", f"{module.name} included in a selected bundle", None)
                continue
            if not module.is_available_globally:
                result.add_warning(f"Module {module.name} is not available")
                continue

            override = None
            if negotiated:
                row = self.store.get('instance_module_overrides', subscription.organization_id, module.id)
                if row is not None and row.is_active:
                    override = row.override_for(period)
            if override is not None:
                amount, source = override, "instance_override"
            else:
                row = self.store.get('module_pricing', module.id, currency)
                if row is None:
                    result.add_warning(f"Module {module.name} is not available in {currency}")
                    continue
                amount, source = (row.price_annual if period == ANNUAL else row.price_monthly), "module_pricing"

            result.add_line(LineItem(
                kind="module",
                ref_id=module.id,
                description=module.name,
                quantity=1,
                unit_price=amount,
                extended_price=amount,
                currency_code=currency,
                source=source,
            ))

        for line in result.lines:
            for warning in line.warnings:
                result.add_warning(warning)

        if result.mixed_currency:
            separate = ", ".join(
                format_minor_units(amount, code) for code, amount in sorted(result.other_currency_totals.items())
            )
            result.add_warning(f"Total covers {currency} lines only; {separate} is billed separately")

        if extra:
            result.upgrade_recommendation = self._recommend_upgrade(
                tier, tier_line, count, result.addon_total, period, currency
            )

        return result

    def _recommend_upgrade(self, tier: SubscriptionTier, tier_line: LineItem, count: int,
                           addon_total: int, period: str, currency: str) -> Optional[UpgradeRecommendation]:
        """Suggest the next tier up when its price beats current tier + packs, in one currency."""
        if tier_line.currency_code != currency:
            return None

        candidates = [
            t for t in self.active_tiers()
            if t.included_inspections > tier.included_inspections
            and t.included_inspections >= count
            and not t.requires_custom_pricing
        ]
        if not candidates:
            return None
        next_tier = min(candidates, key=lambda t: t.included_inspections)

        next_price = self.resolve_tier_price(next_tier.id, currency)
        if next_price.currency_code != currency:
            return None

        current_cost = tier_line.extended_price + addon_total
        next_cost = next_price.price_for(period)
        if next_cost >= current_cost:
            return None

        savings = current_cost - next_cost
        unit = "year" if period == ANNUAL else "month"
        return UpgradeRecommendation(
            tier_id=next_tier.id,
            tier_name=next_tier.name,
            savings=savings,
            message=(
                f"Upgrade to {next_tier.name} ({next_tier.included_inspections} included) and save "
                f"{format_minor_units(savings, currency)}/{unit}"
            ),
        )
