#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
import os
import sys
import urllib.error
import urllib.request
from pathlib import Path
from typing import Any


def _load_dotenv(path: Path) -> None:
    if not path.is_file():
        return
    for raw_line in path.read_text(encoding="utf-8").splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        key = key.strip()
        if not key or key in os.environ:
            continue
        parsed = value.strip()
        if parsed and (parsed[0] == parsed[-1]) and parsed[0] in {'"', "'"}:
            parsed = parsed[1:-1]
        os.environ[key] = parsed


def _resolve_api_base_url(explicit_value: str | None) -> str:
    if explicit_value:
        candidate = explicit_value.strip()
    else:
        candidate = os.getenv("MOTALERT_API_BASE_URL", "").strip() or "http://localhost:8000"
    if candidate.endswith("/api/v1"):
        return candidate
    return f"{candidate.rstrip('/')}/api/v1"


def _post_json(url: str, payload: dict[str, Any], *, token: str | None, timeout: int) -> dict[str, Any]:
    headers = {"Accept": "application/json", "Content-Type": "application/json"}
    if token:
        headers["Authorization"] = f"Bearer {token}"
    request = urllib.request.Request(
        url,
        data=json.dumps(payload).encode("utf-8"),
        headers=headers,
        method="POST",
    )
    try:
        with urllib.request.urlopen(request, timeout=timeout) as response:
            return json.loads(response.read().decode("utf-8"))
    except urllib.error.HTTPError as exc:
        detail = exc.read().decode("utf-8", errors="replace")
        raise RuntimeError(f"POST {url} failed with {exc.code}: {detail}") from exc


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Trigger the daily MOT Alert reminder sweep or retry sweep.")
    parser.add_argument("action", choices=("process", "retry"), nargs="?", default="process")
    parser.add_argument(
        "--api-base-url",
        default=None,
        help="Backend base URL, host root (http://localhost:8000) or full prefix (http://localhost:8000/api/v1).",
    )
    parser.add_argument("--cron-secret", default=None, help="Defaults to CRON_SECRET from environment/.env.")
    parser.add_argument("--window-end", default=None, help="ISO timestamp; evaluate every day up to this one.")
    parser.add_argument("--max-age-hours", type=int, default=None, help="Retry window for the retry action.")
    parser.add_argument("--timeout", type=int, default=600)
    return parser.parse_args()


def main() -> int:
    root_dir = Path(__file__).resolve().parents[1]
    _load_dotenv(root_dir / ".env")
    args = parse_args()

    payload: dict[str, Any] = {"action": args.action}
    if args.window_end:
        payload["window_end"] = args.window_end
    if args.max_age_hours is not None:
        payload["max_age_hours"] = args.max_age_hours

    url = f"{_resolve_api_base_url(args.api_base_url)}/reminders"
    token = (args.cron_secret or os.getenv("CRON_SECRET", "")).strip() or None
    try:
        summary = _post_json(url, payload, token=token, timeout=args.timeout)
    except RuntimeError as exc:
        print(str(exc), file=sys.stderr)
        return 1

    print(json.dumps(summary, indent=2))
    if args.action == "process":
        return 1 if summary.get("failed_count") or summary.get("errors") else 0
    return 1 if summary.get("still_failed") else 0


if __name__ == "__main__":
    raise SystemExit(main())
