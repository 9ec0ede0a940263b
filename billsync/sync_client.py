"""Scheduled trigger for the reconciliation sweep.

Calls the sweep endpoint over HTTP with a fixed number of attempts and a
fixed delay between them. Meant to be run from cron or a scheduler:

    billsync-sync --base-url https://billing.internal
"""

import argparse
import asyncio
import sys
from collections.abc import Awaitable, Callable, Sequence
from typing import Any

import httpx
import structlog
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_fixed,
)

from billsync.config import Settings, get_settings
from billsync.errors import SyncInvocationError
from billsync.utils.logging import configure_logging

logger = structlog.get_logger(__name__)


class SyncClient:
    """HTTP client for ``POST /reconcile/all`` with bounded fixed-delay retry."""

    def __init__(
        self,
        base_url: str,
        endpoint: str = "/reconcile/all",
        timeout: float = 300.0,
        retry_attempts: int = 3,
        retry_delay: float = 5.0,
        api_key: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        if retry_attempts < 1:
            raise ValueError("retry_attempts must be at least 1")

        self.base_url = base_url.rstrip("/")
        self.endpoint = endpoint if endpoint.startswith("/") else f"/{endpoint}"
        self.timeout = timeout
        self.retry_attempts = retry_attempts
        self.retry_delay = retry_delay
        self.attempts = 0
        self._api_key = api_key
        self._transport = transport
        self._sleep = sleep

    @classmethod
    def from_settings(cls, settings: Settings, **overrides: Any) -> "SyncClient":
        """Build a client from settings; keyword arguments take precedence."""
        api_key = settings.operator_api_key
        params: dict[str, Any] = {
            "base_url": settings.sync_base_url,
            "endpoint": settings.sync_endpoint,
            "timeout": settings.sync_timeout_seconds,
            "retry_attempts": settings.sync_retry_attempts,
            "retry_delay": settings.sync_retry_delay_seconds,
            "api_key": api_key.get_secret_value() if api_key else None,
        }
        params.update(overrides)
        return cls(**params)

    @property
    def url(self) -> str:
        return f"{self.base_url}{self.endpoint}"

    def _log_retry(self, retry_state: RetryCallState) -> None:
        error = retry_state.outcome.exception() if retry_state.outcome else None
        logger.warning(
            "sync_attempt_failed",
            attempt=retry_state.attempt_number,
            max_attempts=self.retry_attempts,
            retry_in=self.retry_delay,
            error=str(error),
        )

    async def _invoke(self) -> dict[str, Any]:
        self.attempts += 1
        headers = {"X-API-Key": self._api_key} if self._api_key else {}

        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            response = await client.post(self.url, headers=headers)

        if not response.is_success:
            raise SyncInvocationError(response.status_code, response.text[:500])
        return response.json()

    async def trigger(self) -> dict[str, Any]:
        """
        Invoke the sweep and return its JSON body.

        Non-2xx answers and transport errors are retried up to
        ``retry_attempts`` times in total; after that the last error is
        raised unchanged.
        """
        self.attempts = 0
        logger.info("sync_started", url=self.url, max_attempts=self.retry_attempts)

        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.retry_attempts),
            wait=wait_fixed(self.retry_delay),
            retry=retry_if_exception_type((SyncInvocationError, httpx.HTTPError)),
            before_sleep=self._log_retry,
            sleep=self._sleep,
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                result = await self._invoke()

        logger.info("sync_succeeded", attempts=self.attempts)
        return result


def _log_summary(result: dict[str, Any]) -> None:
    summary = result.get("summary") or {}
    results = result.get("results") or []

    logger.info(
        "sync_summary",
        total=summary.get("totalUsers"),
        succeeded=summary.get("successCount"),
        failed=summary.get("errorCount"),
        updated=summary.get("updatedCount"),
        already_synced=summary.get("alreadySyncedCount"),
        skipped=summary.get("skippedCount"),
        partial=summary.get("partial"),
    )
    for entry in results:
        if entry.get("status") == "updated":
            logger.info(
                "sync_user_updated",
                user_id=entry.get("userId"),
                previous=entry.get("previousData"),
                new=entry.get("newData"),
            )
        elif entry.get("status") == "error":
            logger.warning("sync_user_failed", user_id=entry.get("userId"), error=entry.get("error"))


def _positive_int(value: str) -> int:
    number = int(value)
    if number < 1:
        raise argparse.ArgumentTypeError(f"must be at least 1, got {number}")
    return number


def _non_negative_float(value: str) -> float:
    number = float(value)
    if number < 0:
        raise argparse.ArgumentTypeError(f"must not be negative, got {number}")
    return number


def _parse_args(argv: Sequence[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="billsync-sync",
        description="Trigger a full billing reconciliation sweep.",
    )
    parser.add_argument("--base-url", help="Service base URL (default: SYNC_BASE_URL)")
    parser.add_argument("--attempts", type=_positive_int, help="Total attempts (default: SYNC_RETRY_ATTEMPTS)")
    parser.add_argument("--delay", type=_non_negative_float, help="Seconds between attempts (default: SYNC_RETRY_DELAY_SECONDS)")
    return parser.parse_args(argv)


def main(argv: Sequence[str] | None = None) -> int:
    """Run one sweep; returns the process exit code."""
    args = _parse_args(argv)
    settings = get_settings()
    configure_logging()

    overrides = {
        name: value
        for name, value in (
            ("base_url", args.base_url),
            ("retry_attempts", args.attempts),
            ("retry_delay", args.delay),
        )
        if value is not None
    }
    client = SyncClient.from_settings(settings, **overrides)

    try:
        result = asyncio.run(client.trigger())
    except (SyncInvocationError, httpx.HTTPError, ValueError) as e:
        logger.error("sync_failed", attempts=client.attempts, error=str(e))
        return 1

    _log_summary(result)
    return 0


if __name__ == "__main__":
    sys.exit(main())
