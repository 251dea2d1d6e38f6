#!/usr/bin/env python3
"""Lightweight syntax smoke test runner.

Runs compileall for the repository and a few import-level checks that need
no network access.
"""
from __future__ import annotations

import asyncio
import subprocess
import sys
from datetime import datetime, timezone
from pathlib import Path

REPO_ROOT = Path(__file__).resolve().parent.parent
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))


def _run(cmd: list[str], *, cwd: Path) -> None:
    print("Running:", " ".join(cmd))
    result = subprocess.run(cmd, cwd=cwd)
    if result.returncode != 0:
        sys.exit(result.returncode)


def _smoke_imports() -> None:
    """Ensure critical modules import without side effects or network calls."""

    import reviewhub.aggregator  # noqa: F401
    import reviewhub.analytics  # noqa: F401
    import reviewhub.service  # noqa: F401


def _smoke_ratings() -> None:
    from reviewhub.ratings import normalize_rating

    assert normalize_rating("FIVE") == 5
    assert normalize_rating(" two ") == 2
    assert normalize_rating(4.0) == 4
    assert normalize_rating(True) == 0
    assert normalize_rating("STAR_RATING_UNSPECIFIED") == 0


def _smoke_analytics() -> None:
    """An empty review set must produce a zeroed snapshot, never placeholders."""

    from reviewhub.analytics import compute_analytics

    now = datetime(2026, 1, 1, tzinfo=timezone.utc)
    snap = compute_analytics([], 7, now=now)
    assert snap.total_reviews == 0
    assert snap.average_rating == 0
    assert len(snap.daily_series) == 7


def _smoke_reply_url() -> None:
    from reviewhub.config import load_gbp_config
    from reviewhub.gbp_client import GBPClient

    async def _run() -> None:
        client = GBPClient(load_gbp_config())
        try:
            url = client.reviews_url("accounts/1/", "loc 1")
            assert url.endswith("/accounts/1/locations/loc%201/reviews"), url
        finally:
            await client.aclose()

    asyncio.run(_run())


def main() -> None:
    _run([sys.executable, "-m", "compileall", "-q", str(REPO_ROOT / "reviewhub"), str(REPO_ROOT / "main.py")], cwd=REPO_ROOT)
    _smoke_imports()
    _smoke_ratings()
    _smoke_analytics()
    _smoke_reply_url()


if __name__ == "__main__":
    main()
