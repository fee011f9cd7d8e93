"""
Data models for the pricing engine.

Uses dataclasses for structured, type-safe data representation. Catalog
entities mirror the admin tables; the remaining classes are resolution and
quote results. All money fields are integer minor units.
"""
from dataclasses import dataclass, field
from typing import Optional

from .money import currency_symbol, format_minor_units


MONTHLY = "monthly"
ANNUAL = "annual"
BILLING_PERIODS = (MONTHLY, ANNUAL)


# ============================================================================
# CATALOG ENTITIES
# ============================================================================

@dataclass
class Currency:
    """A currency customers can be billed in."""
    code: str
    symbol: str
    is_active: bool = True
    default_for_region: Optional[str] = None
    conversion_rate: float = 1.0  # to the master currency, informational only


@dataclass
class SubscriptionTier:
    """A subscription plan level with a base inspection allowance."""
    id: str
    name: str
    code: str
    tier_order: int
    included_inspections: int
    base_price_monthly: int  # master currency
    base_price_annual: int  # master currency
    annual_discount_percentage: Optional[float] = None
    description: Optional[str] = None
    is_active: bool = True
    requires_custom_pricing: bool = False


@dataclass
class TierPricing:
    """Authoritative tier price in one currency."""
    tier_id: str
    currency_code: str
    price_monthly: int
    price_annual: int
    per_inspection_price: int = 0


@dataclass
class AddonPack:
    """A purchasable block of extra inspection credits."""
    id: str
    name: str
    inspection_quantity: int
    pack_order: int = 0
    is_active: bool = True


@dataclass
class AddonPackPricing:
    """Pack price for one (tier, currency). total_pack_price is derived."""
    pack_id: str
    tier_id: str
    currency_code: str
    price_per_inspection: int
    total_pack_price: int


@dataclass
class ExtensiveInspectionType:
    """An inspection variant with a larger image allowance."""
    id: str
    name: str
    image_count: int = 800
    description: Optional[str] = None
    is_active: bool = True


@dataclass
class ExtensiveInspectionPricing:
    type_id: str
    tier_id: str
    currency_code: str
    price_per_inspection: int


@dataclass
class Module:
    """An optional premium feature priced independently of the tier."""
    id: str
    name: str
    module_key: str
    display_order: int = 0
    description: Optional[str] = None
    is_available_globally: bool = True
    default_enabled: bool = False


@dataclass
class ModulePricing:
    module_id: str
    currency_code: str
    price_monthly: int
    price_annual: int


@dataclass
class ModuleLimit:
    """Usage allowance for a module with a per-unit overage price."""
    id: str
    module_id: str
    limit_type: str  # e.g. "active_tenants"
    included_quantity: int
    overage_price: int
    overage_currency: str


@dataclass
class ModuleBundle:
    """A discounted grouping of modules sold together."""
    id: str
    name: str
    description: Optional[str] = None
    discount_percentage: Optional[float] = None
    is_active: bool = True


@dataclass
class BundleModule:
    """Membership of a module in a bundle. Unordered."""
    bundle_id: str
    module_id: str


@dataclass
class BundlePricing:
    """Bundle price in one currency. Savings are entered by an admin."""
    bundle_id: str
    currency_code: str
    price_monthly: int
    price_annual: int
    savings_monthly: Optional[int] = None
    savings_annual: Optional[int] = None


@dataclass
class AddonPurchase:
    """An organisation's purchase of a pack; only its status matters here."""
    id: str
    pack_id: str
    status: str = "active"


# ============================================================================
# ORGANISATION SUBSCRIPTIONS
# ============================================================================

@dataclass
class InstanceSubscription:
    """
    An organisation's subscription.

    Override fees replace the tier price for that billing period and are
    expressed in the registration currency. None means no override.
    """
    organization_id: str
    registration_currency: str
    current_tier_id: Optional[str] = None
    override_monthly_fee: Optional[int] = None
    override_annual_fee: Optional[int] = None
    is_active: bool = True

    def override_for(self, billing_period: str) -> Optional[int]:
        return self.override_annual_fee if billing_period == ANNUAL else self.override_monthly_fee


@dataclass
class InstanceModule:
    """Whether a module is switched on for an organisation."""
    organization_id: str
    module_id: str
    is_enabled: bool = True


@dataclass
class InstanceModuleOverride:
    """Negotiated module price for one organisation, in its registration currency."""
    organization_id: str
    module_id: str
    override_monthly_price: Optional[int] = None
    override_annual_price: Optional[int] = None
    is_active: bool = True

    def override_for(self, billing_period: str) -> Optional[int]:
        return self.override_annual_price if billing_period == ANNUAL else self.override_monthly_price


@dataclass
class InstanceBundle:
    organization_id: str
    bundle_id: str
    is_active: bool = True


# ============================================================================
# RESOLUTION RESULTS
# ============================================================================

@dataclass
class ResolvedTierPrice:
    """
    Outcome of resolving a tier in a currency.

    currency_code is the currency the amounts are actually expressed in.
    When no pricing row exists it is the master currency and source is
    "base_price"; no conversion is ever applied.
    """
    tier_id: str
    requested_currency: str
    currency_code: str
    price_monthly: int
    price_annual: int
    per_inspection_price: int
    source: str  # "tier_pricing" or "base_price"

    @property
    def is_fallback(self) -> bool:
        return self.source == "base_price"

    def price_for(self, billing_period: str) -> int:
        return self.price_annual if billing_period == ANNUAL else self.price_monthly


@dataclass
class InstancePrice:
    """An organisation's price for its tier or one module, for one billing period."""
    organization_id: str
    ref_id: str  # tier or module id
    billing_period: str
    amount: int
    currency_code: str
    source: str  # "instance_override", "bundle", or the catalog source it fell through to


@dataclass
class PackTierPrice:
    tier_id: str
    tier_name: str
    price_per_inspection: int
    total_pack_price: int


@dataclass
class ExtensiveTierPrice:
    tier_id: str
    tier_name: str
    price_per_inspection: int


@dataclass
class PreviewTier:
    tier: SubscriptionTier
    price: ResolvedTierPrice


@dataclass
class PreviewPack:
    pack: AddonPack
    pricing: list[PackTierPrice] = field(default_factory=list)


@dataclass
class PreviewExtensiveInspection:
    inspection_type: ExtensiveInspectionType
    pricing: list[ExtensiveTierPrice] = field(default_factory=list)


@dataclass
class PreviewModule:
    module: Module
    pricing: ModulePricing
    limits: list[ModuleLimit] = field(default_factory=list)


@dataclass
class PreviewBundle:
    bundle: ModuleBundle
    pricing: BundlePricing
    module_ids: list[str] = field(default_factory=list)


@dataclass
class PricingPreview:
    """The complete customer-facing pricing structure for one currency."""
    currency_code: str
    tiers: list[PreviewTier] = field(default_factory=list)
    addon_packs: list[PreviewPack] = field(default_factory=list)
    extensive_inspections: list[PreviewExtensiveInspection] = field(default_factory=list)
    modules: list[PreviewModule] = field(default_factory=list)
    bundles: list[PreviewBundle] = field(default_factory=list)

    def to_display_dict(self) -> dict:
        """Flatten to a dict of display strings for pricing sheets."""
        cur = self.currency_code
        return {
            "currency": cur,
            "symbol": currency_symbol(cur),
            "tiers": [
                {
                    "id": t.tier.id,
                    "name": t.tier.name,
                    "included_inspections": t.tier.included_inspections,
                    "monthly": format_minor_units(t.price.price_monthly, t.price.currency_code),
                    "annual": format_minor_units(t.price.price_annual, t.price.currency_code),
                    "annual_discount_percentage": t.tier.annual_discount_percentage,
                    "is_fallback": t.price.is_fallback,
                }
                for t in self.tiers
            ],
            "addon_packs": [
                {
                    "id": p.pack.id,
                    "name": p.pack.name,
                    "inspection_quantity": p.pack.inspection_quantity,
                    "pricing": [
                        {
                            "tier_name": tp.tier_name,
                            "per_inspection": format_minor_units(tp.price_per_inspection, cur),
                            "total": format_minor_units(tp.total_pack_price, cur),
                        }
                        for tp in p.pricing
                    ],
                }
                for p in self.addon_packs
            ],
            "extensive_inspections": [
                {
                    "id": e.inspection_type.id,
                    "name": e.inspection_type.name,
                    "image_count": e.inspection_type.image_count,
                    "pricing": [
                        {
                            "tier_name": tp.tier_name,
                            "per_inspection": format_minor_units(tp.price_per_inspection, cur),
                        }
                        for tp in e.pricing
                    ],
                }
                for e in self.extensive_inspections
            ],
            "modules": [
                {
                    "id": m.module.id,
                    "name": m.module.name,
                    "monthly": format_minor_units(m.pricing.price_monthly, cur),
                    "annual": format_minor_units(m.pricing.price_annual, cur),
                }
                for m in self.modules
            ],
            "bundles": [
                {
                    "id": b.bundle.id,
                    "name": b.bundle.name,
                    "discount_percentage": b.bundle.discount_percentage,
                    "monthly": format_minor_units(b.pricing.price_monthly, cur),
                    "annual": format_minor_units(b.pricing.price_annual, cur),
                    "savings_monthly": (
                        format_minor_units(b.pricing.savings_monthly, cur)
                        if b.pricing.savings_monthly is not None else None
                    ),
                    "savings_annual": (
                        format_minor_units(b.pricing.savings_annual, cur)
                        if b.pricing.savings_annual is not None else None
                    ),
                }
                for b in self.bundles
            ],
        }


# ============================================================================
# CUSTOMER QUOTES
# ============================================================================

@dataclass
class TraceStep:
    """A single step in the pricing resolution trace."""
    step: str
    description: str
    value: Optional[str] = None


@dataclass
class LineItem:
    """A single line item in a quote result."""
    kind: str  # "tier", "addon_pack", "module", "bundle"
    ref_id: str
    description: str
    quantity: int
    unit_price: int
    extended_price: int
    currency_code: str
    source: str
    recurring: bool = True
    warnings: list[str] = field(default_factory=list)
    trace: list[TraceStep] = field(default_factory=list)

    def add_trace(self, step: str, description: str, value: str = None):
        """Add a step to the trace for this line item."""
        self.trace.append(TraceStep(step=step, description=description, value=value))

    def add_warning(self, warning: str):
        """Add a warning for this line item."""
        self.warnings.append(warning)

    def get_trace_text(self) -> str:
        """Get human-readable trace as formatted text."""
        lines = []
        for t in self.trace:
            if t.value:
                lines.append(f"→ {t.step}: {t.description} = {t.value}")
            else:
                lines.append(f"→ {t.step}: {t.description}")
        return "\n".join(lines)


@dataclass
class PricingRequest:
    """A customer's request for a price."""
    inspection_count: int
    currency_code: str
    billing_period: str = MONTHLY
    module_ids: list[str] = field(default_factory=list)
    bundle_ids: list[str] = field(default_factory=list)
    organization_id: Optional[str] = None  # applies that organisation's overrides and enabled modules


@dataclass
class UpgradeRecommendation:
    tier_id: str
    tier_name: str
    savings: int
    message: str


@dataclass
class Result:
    """Complete result of a pricing calculation."""
    tier_id: str
    tier_name: str
    currency_code: str
    billing_period: str
    inspection_count: int
    lines: list[LineItem] = field(default_factory=list)
    recurring_total: int = 0  # currency_code only
    addon_total: int = 0  # currency_code only
    other_currency_totals: dict[str, int] = field(default_factory=dict)
    requires_quotation: bool = False
    upgrade_recommendation: Optional[UpgradeRecommendation] = None
    warnings: list[str] = field(default_factory=list)
    trace: list[TraceStep] = field(default_factory=list)

    @property
    def total(self) -> int:
        """Total in currency_code. Lines in any other currency are not included."""
        return self.recurring_total + self.addon_total

    @property
    def mixed_currency(self) -> bool:
        return bool(self.other_currency_totals)

    def add_line(self, line: LineItem):
        """Append a line and add it to the total for its own currency."""
        self.lines.append(line)
        if line.currency_code != self.currency_code:
            self.other_currency_totals[line.currency_code] = (
                self.other_currency_totals.get(line.currency_code, 0) + line.extended_price
            )
        elif line.recurring:
            self.recurring_total += line.extended_price
        else:
            self.addon_total += line.extended_price

    def add_trace(self, step: str, description: str, value: str = None):
        """Add a step to the result-level trace."""
        self.trace.append(TraceStep(step=step, description=description, value=value))

    def add_warning(self, warning: str):
        """Add a result-level warning."""
        if warning not in self.warnings:
            self.warnings.append(warning)

    def get_trace_text(self) -> str:
        """Get human-readable result trace as formatted text."""
        lines = []
        for t in self.trace:
            if t.value:
                lines.append(f"• {t.step}: {t.description} = {t.value}")
            else:
                lines.append(f"• {t.step}: {t.description}")
        return "\n".join(lines)

    def to_summary_dict(self) -> dict:
        """Compact dict with display strings, for API responses and exports."""
        cur = self.currency_code
        return {
            "tier": self.tier_name,
            "currency": cur,
            "billing_period": self.billing_period,
            "inspection_count": self.inspection_count,
            "requires_quotation": self.requires_quotation,
            "lines": [
                {
                    "kind": line.kind,
                    "description": line.description,
                    "quantity": line.quantity,
                    "unit_price": format_minor_units(line.unit_price, line.currency_code),
                    "total": format_minor_units(line.extended_price, line.currency_code),
                    "source": line.source,
                }
                for line in self.lines
            ],
            "recurring_total": format_minor_units(self.recurring_total, cur),
            "addon_total": format_minor_units(self.addon_total, cur),
            "total": format_minor_units(self.total, cur),
            "mixed_currency": self.mixed_currency,
            "other_currency_totals": {
                code: format_minor_units(amount, code) for code, amount in sorted(self.other_currency_totals.items())
            },
            "upgrade_recommendation": (
                self.upgrade_recommendation.message if self.upgrade_recommendation else None
            ),
            "warnings": list(self.warnings),
        }
