"""
Centralized settings and path configuration for the pricing service.
"""
import os
from pathlib import Path
from dataclasses import dataclass
from typing import Optional


CURRENCY_DELETE_POLICIES = ('restrict', 'cascade')


def get_project_root() -> Path:
    """Get the project root directory (where pyproject.toml lives)."""
    current = Path(__file__).resolve()
    for parent in current.parents:
        if (parent / 'pyproject.toml').exists():
            return parent
    # Fallback to 3 levels up from this file
    return Path(__file__).resolve().parent.parent.parent.parent


@dataclass
class Settings:
    """Application settings with sensible defaults."""

    # Project paths
    project_root: Path

    # Directory holding the catalog CSV tables
    data_dir: Path

    # Base prices on tiers are expressed in this currency
    master_currency: str = 'GBP'

    # Customers are never quoted for fewer inspections than this
    minimum_inspections: int = 10

    # What happens to pricing rows when their currency is deleted
    currency_delete_policy: str = 'restrict'

    log_level: str = 'INFO'

    @classmethod
    def load(cls, project_root: Optional[Path] = None) -> 'Settings':
        """Load settings from the project structure and environment."""
        root = project_root or get_project_root()

        data_dir = os.environ.get('PRICING_DATA_DIR')
        policy = os.environ.get('PRICING_CURRENCY_DELETE_POLICY', 'restrict').strip().lower()
        if policy not in CURRENCY_DELETE_POLICIES:
            raise ValueError(
                f"PRICING_CURRENCY_DELETE_POLICY must be one of {CURRENCY_DELETE_POLICIES}, got '{policy}'"
            )

        return cls(
            project_root=root,
            data_dir=Path(data_dir) if data_dir else root / 'data' / 'catalog',
            master_currency=os.environ.get('PRICING_MASTER_CURRENCY', 'GBP').strip().upper(),
            minimum_inspections=int(os.environ.get('PRICING_MIN_INSPECTIONS', 10)),
            currency_delete_policy=policy,
            log_level=os.environ.get('PRICING_LOG_LEVEL', 'INFO').strip().upper(),
        )


# Default settings instance
_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Get the global settings instance."""
    global _settings
    if _settings is None:
        _settings = Settings.load()
    return _settings
