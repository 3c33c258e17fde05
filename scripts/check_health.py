#!/usr/bin/env python3
"""Post-deploy checks for the custody ledger service.

Liveness and readiness must pass. When ``CUSTODY_CHECK_STATS=1`` the public
stats endpoint must also report a reconciled wallet, and when
``CUSTODY_ADMIN_KEY`` is set no account lock may be older than
``CUSTODY_MAX_LOCK_AGE_SECONDS``.
"""

from __future__ import annotations

import json
import os
import time
from datetime import datetime, timezone
from typing import Any, Callable
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

Validator = Callable[[Any], str]


class CheckFailed(Exception):
    pass


def fail(message: str) -> None:
    print(f"ERROR: {message}")
    raise SystemExit(1)


def normalize_base_url(base_url: str) -> str:
    url = (base_url or "").strip().rstrip("/")
    for suffix in ("/api/v1", "/api"):
        if url.endswith(suffix):
            return url[: -len(suffix)]
    return url


def fetch_json(url: str, *, timeout: int, headers: dict[str, str] | None = None) -> Any:
    request = Request(url, headers={"User-Agent": "custody-healthcheck/1.0", **(headers or {})})
    with urlopen(request, timeout=timeout) as response:
        if response.getcode() != 200:
            raise CheckFailed(f"HTTP {response.getcode()}, expected 200")
        text = response.read().decode("utf-8", "replace")
    try:
        return json.loads(text)
    except json.JSONDecodeError as exc:
        raise CheckFailed("response is not valid JSON") from exc


def expect_status(expected: str) -> Validator:
    def validate(data: Any) -> str:
        actual = data.get("status") if isinstance(data, dict) else None
        if actual != expected:
            raise CheckFailed(f"status mismatch: expected '{expected}', got '{actual}'")
        return f"status={actual}"

    return validate


def expect_reconciled(data: Any) -> str:
    if not isinstance(data, dict):
        raise CheckFailed("stats payload is not an object")
    if data.get("on_chain_balance") is None:
        raise CheckFailed("on-chain balance unavailable")
    if not data.get("reconciled"):
        raise CheckFailed(
            f"ledger total {data.get('internal_total')} does not match on-chain {data.get('on_chain_balance')}"
        )
    return f"internal_total={data.get('internal_total')} active_locks={data.get('active_locks')}"


def expect_no_stale_locks(max_age_seconds: int) -> Validator:
    def validate(data: Any) -> str:
        if not isinstance(data, list):
            raise CheckFailed("lock listing is not a list")
        now = datetime.now(timezone.utc)
        stale = []
        for lock in data:
            acquired = datetime.fromisoformat(str(lock.get("acquired_at")))
            if acquired.tzinfo is None:
                acquired = acquired.replace(tzinfo=timezone.utc)
            if (now - acquired).total_seconds() > max_age_seconds:
                stale.append(f"{lock.get('account_id')}:{lock.get('kind')}")
        if stale:
            raise CheckFailed(f"locks held longer than {max_age_seconds}s: {', '.join(stale)}")
        return f"locks={len(data)}"

    return validate


def run_check(
    url: str,
    label: str,
    validate: Validator,
    *,
    timeout: int,
    retries: int,
    retry_delay: float,
    headers: dict[str, str] | None = None,
) -> None:
    last_error = None
    for attempt in range(retries + 1):
        try:
            summary = validate(fetch_json(url, timeout=timeout, headers=headers))
            print(f"OK: {label} -> {summary}")
            return
        except HTTPError as exc:
            payload = exc.read().decode("utf-8", "replace")
            last_error = f"{label} returned HTTP {exc.code}. Body: {payload}"
        except (URLError, TimeoutError) as exc:
            last_error = f"{label} request failed: {exc}"
        except CheckFailed as exc:
            last_error = f"{label}: {exc}"

        if attempt < retries:
            wait = retry_delay * (attempt + 1)
            print(f"WARN: {last_error} (retry {attempt + 1}/{retries} in {wait:.1f}s)")
            time.sleep(wait)

    fail(last_error or f"{label} failed")


def main() -> None:
    base_url = normalize_base_url(os.getenv("CUSTODY_BASE_URL", ""))
    if not base_url:
        fail("Missing CUSTODY_BASE_URL environment variable.")

    timeout = int(os.getenv("HEALTHCHECK_TIMEOUT_SECONDS", "25"))
    retries = int(os.getenv("HEALTHCHECK_RETRIES", "4"))
    retry_delay = float(os.getenv("HEALTHCHECK_RETRY_DELAY_SECONDS", "4"))
    api_prefix = os.getenv("CUSTODY_API_PREFIX", "/api/v1")
    admin_key = os.getenv("CUSTODY_ADMIN_KEY", "").strip()
    max_lock_age = int(os.getenv("CUSTODY_MAX_LOCK_AGE_SECONDS", "900"))

    print(f"Healthcheck config: base_url={base_url} timeout={timeout}s retries={retries}")
    options = {"timeout": timeout, "retries": retries, "retry_delay": retry_delay}

    run_check(f"{base_url}/healthz", "/healthz", expect_status("ok"), **options)
    run_check(f"{base_url}/readyz", "/readyz", expect_status("ready"), **options)
    if os.getenv("CUSTODY_CHECK_STATS", "").strip() == "1":
        run_check(f"{base_url}{api_prefix}/stats", "stats", expect_reconciled, **options)
    if admin_key:
        run_check(
            f"{base_url}{api_prefix}/admin/locks",
            "admin locks",
            expect_no_stale_locks(max_lock_age),
            headers={"X-Admin-Key": admin_key},
            **options,
        )
    print("SUCCESS: all health checks passed.")


if __name__ == "__main__":
    main()
