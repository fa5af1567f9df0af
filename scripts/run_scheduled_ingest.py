"""Cron entry point for the scheduled leaderboard ingests.

``daily`` pulls the current period; ``weekly`` re-pulls the period that just
closed so late uploads land. Both share the ingest lease, so overlapping
schedules skip instead of running twice.
"""

from __future__ import annotations

import argparse
import os

from keystone_etl import cli

SCHEDULES = {
    "daily": ["ingest", "--period", "latest", "--refresh", "async"],
    "weekly": ["ingest", "--period", "previous", "--refresh", "sync"],
}


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run a scheduled leaderboard ingest.")
    parser.add_argument("schedule", choices=sorted(SCHEDULES))
    parser.add_argument("--config", default="config.yaml")
    parser.add_argument("--regions", help="Comma-separated regions (default: all configured)")
    return parser.parse_args()


def _load_env(path: str = ".env") -> None:
    if not os.path.exists(path):
        return
    with open(path, "r", encoding="utf-8") as f:
        for line in f:
            line = line.strip()
            if not line or line.startswith("#") or "=" not in line:
                continue
            key, val = line.split("=", 1)
            os.environ.setdefault(key.strip(), val.strip().strip("\"'"))


def main() -> None:
    args = _parse_args()
    _load_env()
    argv = ["--config", args.config] + SCHEDULES[args.schedule] + ["--owner", f"{args.schedule}-ingest:{os.getpid()}"]
    if args.regions:
        argv += ["--regions", args.regions]
    cli.main(argv)


if __name__ == "__main__":
    main()
