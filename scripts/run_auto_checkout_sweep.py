#!/usr/bin/env python
from __future__ import annotations

import argparse
import json
import os
import sys
from datetime import datetime, timezone
from pathlib import Path

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))


def load_env_if_exists() -> None:
    env_file = Path(".env")
    if not env_file.exists():
        return
    for raw_line in env_file.read_text(encoding="utf-8").splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        os.environ.setdefault(key.strip(), value.strip())


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run one auto-checkout enforcement tick.")
    parser.add_argument(
        "--max-workers",
        type=int,
        default=None,
        help="Worker pool size for the tick (defaults to SWEEP_MAX_WORKERS).",
    )
    return parser.parse_args()


def run(max_workers: int | None = None) -> dict:
    load_env_if_exists()

    from app.db import SessionLocal
    from app.logging_utils import setup_json_logging
    from app.services.auto_checkout import run_auto_checkout_sweep
    from app.settings import get_settings

    settings = get_settings()
    setup_json_logging(settings.log_level.upper())
    started_at = datetime.now(timezone.utc)
    summary = run_auto_checkout_sweep(
        SessionLocal,
        now_utc=started_at,
        max_workers=max_workers if max_workers is not None else settings.sweep_max_workers,
    )
    return {
        "started_at_utc": started_at.isoformat(),
        **summary.to_dict(),
    }


if __name__ == "__main__":
    args = parse_args()
    # Per-session failures are reported in the summary, not through the exit code.
    print(json.dumps(run(args.max_workers), ensure_ascii=False, indent=2, default=str))
