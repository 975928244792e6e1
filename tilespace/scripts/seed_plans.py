#!/usr/bin/env python3
"""
Seed plans and plan limits.

Creates the tables if needed and inserts the guest, member and business
plans with their ceilings. Safe to re-run: existing rows are kept and only
missing limits are added.

Usage:
    python -m tilespace.scripts.seed_plans [--show]
"""
import argparse
import json

from dotenv import load_dotenv


def main():
    parser = argparse.ArgumentParser(description="Seed Tilespace plans and limits")
    parser.add_argument("--show", action="store_true", help="Print the resulting limits per plan")
    args = parser.parse_args()

    load_dotenv()

    from tilespace.core.config import settings
    from tilespace.core.database import create_all_tables
    from tilespace.core.logging import configure_logging
    from tilespace.features.plans.service import DEFAULT_PLANS, limits_for, seed_plans

    configure_logging(settings.ENV)
    create_all_tables()
    seed_plans()
    print(f"Seeded {len(DEFAULT_PLANS)} plans")

    if args.show:
        for plan_id in DEFAULT_PLANS:
            print(f"{plan_id}: {json.dumps(limits_for(plan_id))}")


if __name__ == "__main__":
    main()
