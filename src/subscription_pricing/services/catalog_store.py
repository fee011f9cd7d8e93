"""
Catalog Store - keyed tables for catalog entities and their pricing rows.

Stands in for the persistence layer: every table is a dict keyed by the
row's natural key, so writes are keyed upserts. Tables can be loaded from
and saved to a directory of CSV files (one file per table).
"""
import logging
from dataclasses import asdict, fields, MISSING
from pathlib import Path
from typing import Any, Optional, Union, get_args, get_origin

import pandas as pd

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

logger = logging.getLogger(__name__)


# table name -> (record class, key fields)
TABLES: dict[str, tuple[type, tuple[str, ...]]] = {
    'currencies': (Currency, ('code',)),
    'subscription_tiers': (SubscriptionTier, ('id',)),
    'tier_pricing': (TierPricing, ('tier_id', 'currency_code')),
    'addon_packs': (AddonPack, ('id',)),
    'addon_pack_pricing': (AddonPackPricing, ('pack_id', 'tier_id', 'currency_code')),
    'extensive_inspection_types': (ExtensiveInspectionType, ('id',)),
    'extensive_inspection_pricing': (ExtensiveInspectionPricing, ('type_id', 'tier_id', 'currency_code')),
    'modules': (Module, ('id',)),
    'module_pricing': (ModulePricing, ('module_id', 'currency_code')),
    'module_limits': (ModuleLimit, ('id',)),
    'module_bundles': (ModuleBundle, ('id',)),
    'bundle_modules': (BundleModule, ('bundle_id', 'module_id')),
    'bundle_pricing': (BundlePricing, ('bundle_id', 'currency_code')),
    'addon_purchases': (AddonPurchase, ('id',)),
    'instance_subscriptions': (InstanceSubscription, ('organization_id',)),
    'instance_modules': (InstanceModule, ('organization_id', 'module_id')),
    'instance_module_overrides': (InstanceModuleOverride, ('organization_id', 'module_id')),
    'instance_bundles': (InstanceBundle, ('organization_id', 'bundle_id')),
}

# Tables whose rows carry a currency_code column
PRICING_TABLES = (
    'tier_pricing',
    'addon_pack_pricing',
    'extensive_inspection_pricing',
    'module_pricing',
    'bundle_pricing',
)

# Organisation tables, removed together when a subscription is deleted
INSTANCE_TABLES = (
    'instance_modules',
    'instance_module_overrides',
    'instance_bundles',
)


def _coerce(raw: str, annotation: Any) -> Any:
    """Convert a CSV cell back to the field's declared type."""
    optional = get_origin(annotation) is Union and type(None) in get_args(annotation)
    base = next((a for a in get_args(annotation) if a is not type(None)), annotation) if optional else annotation

    value = raw.strip()
    if value == '':
        if optional:
            return None
        return '' if base is str else MISSING

    if base is bool:
        return value.lower() in ('true', '1', 'yes')
    if base is int:
        return int(float(value))
    if base is float:
        return float(value)
    return value


def record_from_row(record_cls: type, row: dict) -> Any:
    """Build a dataclass record from a dict of strings."""
    kwargs = {}
    for f in fields(record_cls):
        if f.name not in row:
            continue
        value = _coerce(str(row[f.name]), f.type)
        if value is MISSING:
            continue
        kwargs[f.name] = value
    return record_cls(**kwargs)


class CatalogStore:
    """In-memory catalog tables with keyed upsert semantics."""

    def __init__(self):
        self._tables: dict[str, dict[tuple, Any]] = {name: {} for name in TABLES}

    @staticmethod
    def key_of(table: str, record: Any) -> tuple:
        _, key_fields = TABLES[table]
        return tuple(getattr(record, k) for k in key_fields)

    def _table(self, table: str) -> dict[tuple, Any]:
        if table not in self._tables:
            raise KeyError(f"Unknown catalog table '{table}'")
        return self._tables[table]

    def get(self, table: str, *key) -> Optional[Any]:
        """Fetch one row by its natural key, or None."""
        return self._table(table).get(tuple(key))

    def all(self, table: str) -> list:
        return list(self._table(table).values())

    def where(self, table: str, **criteria) -> list:
        """All rows whose attributes equal every given criterion."""
        return [
            row for row in self._table(table).values()
            if all(getattr(row, k) == v for k, v in criteria.items())
        ]

    def put(self, table: str, record: Any) -> Any:
        """Insert or replace a row."""
        record_cls, _ = TABLES[table]
        if not isinstance(record, record_cls):
            raise TypeError(f"Table '{table}' stores {record_cls.__name__}, got {type(record).__name__}")
        self._table(table)[self.key_of(table, record)] = record
        return record

    def delete(self, table: str, *key) -> bool:
        """Remove a row; returns False when nothing was stored under the key."""
        return self._table(table).pop(tuple(key), None) is not None

    def delete_where(self, table: str, **criteria) -> int:
        """Remove all matching rows and return how many were removed."""
        doomed = [self.key_of(table, row) for row in self.where(table, **criteria)]
        for key in doomed:
            del self._tables[table][key]
        return len(doomed)

    def count_active_purchases(self, pack_id: str) -> int:
        return len(self.where('addon_purchases', pack_id=pack_id, status='active'))

    # ------------------------------------------------------------------
    # CSV persistence
    # ------------------------------------------------------------------

    def save(self, directory: Path):
        """Write every table to <directory>/<table>.csv."""
        directory = Path(directory)
        directory.mkdir(parents=True, exist_ok=True)
        for name, (record_cls, _) in TABLES.items():
            columns = [f.name for f in fields(record_cls)]
            df = pd.DataFrame([asdict(r) for r in self.all(name)], columns=columns)
            df.to_csv(directory / f"{name}.csv", index=False)
        logger.info("Saved catalog to %s", directory)

    @classmethod
    def load(cls, directory: Path) -> 'CatalogStore':
        """Read tables from a CSV directory. Missing files mean empty tables."""
        store = cls()
        directory = Path(directory)
        if not directory.exists():
            logger.warning("Catalog directory %s does not exist; starting empty", directory)
            return store

        for name, (record_cls, _) in TABLES.items():
            path = directory / f"{name}.csv"
            if not path.exists():
                continue
            df = pd.read_csv(path, dtype=str, keep_default_na=False)
            # Strip headers
            df.columns = [c.strip() for c in df.columns]
            for row in df.to_dict(orient='records'):
                store.put(name, record_from_row(record_cls, row))
            logger.debug("Loaded %d rows into %s", len(df), name)

        return store
