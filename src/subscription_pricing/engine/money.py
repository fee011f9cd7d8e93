"""
Minor-unit money helpers.

All amounts are integers in the smallest denomination of their currency
(pence, cents, fils). Nothing here touches floating point.
"""

CURRENCY_SYMBOLS = {
    'GBP': '£',
    'USD': '$',
    'EUR': '€',
    'AED': 'د.إ',
}


def currency_symbol(currency_code: str) -> str:
    """Display symbol for a currency, or the raw code when unknown."""
    code = (currency_code or '').strip().upper()
    return CURRENCY_SYMBOLS.get(code, code)


def format_minor_units(amount_minor: int, currency_code: str = '') -> str:
    """
    Render a minor-unit amount with two decimals and its currency symbol.

    >>> format_minor_units(19900, 'GBP')
    '£199.00'
    >>> format_minor_units(19900, 'XYZ')
    'XYZ199.00'
    """
    amount_minor = int(amount_minor)
    sign = '-' if amount_minor < 0 else ''
    major, minor = divmod(abs(amount_minor), 100)
    return f"{sign}{currency_symbol(currency_code)}{major}.{minor:02d}"


def compute_total_pack_price(price_per_inspection: int, inspection_quantity: int) -> int:
    """
    Total price of an add-on pack.

    Every write of pack pricing (and every change to a pack's quantity)
    goes through this function so the stored total never drifts from its
    inputs.
    """
    return int(price_per_inspection) * int(inspection_quantity)
