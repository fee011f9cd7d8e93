"""
Subscription Pricing Package

Tiered, multi-currency pricing resolution for an inspection subscription
catalog: tiers, add-on inspection packs, premium modules and bundles, plus
the custom quotation workflow for organisations outside standard pricing.
"""

__version__ = "1.0.0"
