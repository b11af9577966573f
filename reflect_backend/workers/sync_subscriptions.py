"""
Subscription sync worker.

Reconciles every billing-provider subscription into the local snapshot
cache. Safe to run repeatedly; converges with webhooks.
"""
from __future__ import annotations

import argparse
import json
import os
from typing import List, Optional

from reflect_backend.core.config import settings
from reflect_backend.core.database import init_engine
from reflect_backend.core.logging import configure_logging
from reflect_backend.features.billing.service import sync_all_subscriptions


def _parse_bool(value: Optional[str], default: bool = False) -> bool:
    if value is None:
        return default
    return str(value).strip().lower() in {"1", "true", "yes", "on"}


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Sync billing-provider subscriptions into the snapshot cache.")
    parser.add_argument("--delay", type=float, default=settings.SYNC_DELAY_SECONDS, help="Seconds between subscriptions.")
    parser.add_argument("--dry-run", dest="dry_run", action="store_true", help="Resolve users without writing snapshots.")
    parser.add_argument("--live", dest="dry_run", action="store_false", help="Write snapshots.")
    parser.set_defaults(dry_run=_parse_bool(os.getenv("REFLECT_SYNC_DRY_RUN"), False))
    args = parser.parse_args(argv)

    configure_logging(settings.ENV)
    init_engine()

    result = sync_all_subscriptions(delay_seconds=args.delay, dry_run=args.dry_run)
    print(json.dumps({**result, "dry_run": args.dry_run}))
    return 0 if result["errors"] == 0 else 1


if __name__ == "__main__":
    raise SystemExit(main())
