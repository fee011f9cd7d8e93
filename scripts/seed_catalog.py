#!/usr/bin/env python
"""
Seed pipeline - writes the demo catalog to the configured data directory.

Usage:
    python scripts/seed_catalog.py [target_dir]
"""
import sys
from pathlib import Path

# Add src to path
src_path = Path(__file__).parent.parent / 'src'
sys.path.insert(0, str(src_path))

from subscription_pricing.config.settings import get_settings
from subscription_pricing.data.demo_catalog import build_demo_catalog, catalog_report


def main():
    settings = get_settings()
    target = Path(sys.argv[1]) if len(sys.argv) > 1 else settings.data_dir

    print("=" * 60)
    print("SUBSCRIPTION PRICING CATALOG SEED")
    print("=" * 60)
    print()

    print("[1/2] Building demo catalog...")
    store = build_demo_catalog(settings)

    print(f"[2/2] Writing CSV tables to {target}...")
    store.save(target)

    print()
    print("Summary:")
    for table, count in catalog_report(store).items():
        print(f"  {table}: {count}")
    print()
    print("✅ SEED COMPLETE")


if __name__ == "__main__":
    main()
