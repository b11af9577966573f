"""
Backfill AI titles for saved journals that only carry a default title.

Dry-run by default. Use --live to write titles.
"""
from __future__ import annotations

import argparse
import json
import os
from typing import List, Optional

from reflect_backend.core.config import settings
from reflect_backend.core.database import init_engine
from reflect_backend.core.logging import configure_logging
from reflect_backend.features.journals.titles import MAX_BATCH_SIZE, backfill_titles


def _parse_bool(value: Optional[str], default: bool = False) -> bool:
    if value is None:
        return default
    return str(value).strip().lower() in {"1", "true", "yes", "on"}


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Generate titles for journals that still have a default title.")
    parser.add_argument("--batch-size", dest="batch_size", type=int, default=50, help=f"Journals per batch (max {MAX_BATCH_SIZE}).")
    parser.add_argument("--max-batches", dest="max_batches", type=int, default=20)
    parser.add_argument("--dry-run", dest="dry_run", action="store_true", help="Report without generating titles.")
    parser.add_argument("--live", dest="dry_run", action="store_false", help="Generate and store titles.")
    parser.set_defaults(dry_run=_parse_bool(os.getenv("REFLECT_TITLE_BACKFILL_DRY_RUN", "1"), True))
    args = parser.parse_args(argv)

    configure_logging(settings.ENV)
    init_engine()

    result = backfill_titles(dry_run=args.dry_run, batch_size=args.batch_size, max_batches=args.max_batches)
    print(json.dumps(result.as_dict()))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
