"""Engine subpackage - core pricing logic and resolution."""
from .pricing_engine import PricingEngine
from .models import PricingRequest, LineItem, Result, PricingPreview
from .money import format_minor_units, compute_total_pack_price

__all__ = [
    'PricingEngine',
    'PricingRequest',
    'LineItem',
    'Result',
    'PricingPreview',
    'format_minor_units',
    'compute_total_pack_price',
]
