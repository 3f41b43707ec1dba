"""Shared async HTTP transport with retry logic for the upstream clients."""
import asyncio
import logging
import random
from typing import Any, Optional

import aiohttp

from .exceptions import RateLimitError, UpstreamError


def compute_backoff(
    attempt: int,
    base_delay: float,
    multiplier: float,
    max_delay: float,
    jitter_ms: int,
) -> float:
    """Calculate capped exponential backoff with jitter.

    Args:
        attempt: Current retry attempt number (1-indexed)
        base_delay: Delay for the first attempt in seconds
        multiplier: Growth factor per attempt
        max_delay: Upper bound before jitter in seconds
        jitter_ms: Maximum random jitter added, in milliseconds

    Returns:
        Delay in seconds
    """
    delay = min(base_delay * (multiplier ** (attempt - 1)), max_delay)
    jitter = random.uniform(0, jitter_ms / 1000.0)
    return delay + jitter


class ApiTransport:
    """Authenticated JSON/text transport for one upstream base URL.

    Retries 429 (honouring Retry-After), 5xx and network errors.
    Other 4xx responses are raised immediately.
    """

    MAX_RETRY_ATTEMPTS = 6
    RETRY_BASE_DELAY = 0.5  # seconds
    RETRY_MULTIPLIER = 2.0
    RETRY_MAX_DELAY = 30.0  # seconds
    RETRY_JITTER_MS = 250  # milliseconds

    def __init__(
        self,
        base_url: str,
        session: aiohttp.ClientSession,
        headers: Optional[dict[str, str]] = None,
        secrets: Optional[list[Optional[str]]] = None,
        timeout: float = 120.0,
        logger: Optional[logging.Logger] = None,
    ):
        """Initialize transport.

        Args:
            base_url: Upstream base URL without trailing slash
            session: Injected aiohttp ClientSession
            headers: Authentication headers sent with every request (never logged)
            secrets: Values to redact from error messages
            timeout: Total per-request deadline in seconds
            logger: Optional logger instance
        """
        self.base_url = base_url.rstrip("/")
        self.session = session
        self._headers = {"Content-Type": "application/json", **(headers or {})}
        self._secrets = [s for s in (secrets or []) if s]
        self.timeout = timeout
        self.logger = logger or logging.getLogger(__name__)

    def _redact(self, text: str) -> str:
        if not text:
            return text
        for secret in self._secrets:
            text = text.replace(secret, "[REDACTED]")
        return text

    def _calculate_backoff(self, attempt: int) -> float:
        return compute_backoff(
            attempt,
            self.RETRY_BASE_DELAY,
            self.RETRY_MULTIPLIER,
            self.RETRY_MAX_DELAY,
            self.RETRY_JITTER_MS,
        )

    async def request_json(
        self,
        method: str,
        path: str,
        payload: Optional[dict] = None,
        params: Optional[dict] = None,
        retry: bool = True,
    ) -> Any:
        """Execute a request and return the parsed JSON body."""
        return await self._request(method, path, payload, params, retry, as_text=False)

    async def request_text(
        self,
        method: str,
        path: str,
        payload: Optional[dict] = None,
        params: Optional[dict] = None,
        retry: bool = True,
    ) -> str:
        """Execute a request and return the raw response body."""
        return await self._request(method, path, payload, params, retry, as_text=True)

    async def _request(
        self,
        method: str,
        path: str,
        payload: Optional[dict],
        params: Optional[dict],
        retry: bool,
        as_text: bool,
    ) -> Any:
        """Execute request with retry logic.

        Raises:
            RateLimitError: HTTP 429 after max retries
            UpstreamError: On non-retryable errors or max retries exceeded
        """
        url = f"{self.base_url}{path}"

        attempt = 0
        while True:
            attempt += 1

            try:
                timeout = aiohttp.ClientTimeout(total=self.timeout, connect=10)
                async with self.session.request(
                    method,
                    url,
                    json=payload,
                    params=params,
                    headers=self._headers,
                    timeout=timeout,
                ) as resp:
                    if resp.status == 429:
                        retry_after = resp.headers.get("Retry-After")
                        if not retry or attempt > self.MAX_RETRY_ATTEMPTS:
                            body = await resp.text()
                            raise RateLimitError(
                                f"HTTP 429 after {attempt} attempts on {method} {path}: "
                                f"{self._redact(body[:200])}",
                                retry_after=float(retry_after) if retry_after else None,
                            )

                        if retry_after:
                            delay = float(retry_after)
                            self.logger.warning(
                                "HTTP 429 on %s, Retry-After=%ss, attempt=%s",
                                path,
                                delay,
                                attempt,
                            )
                        else:
                            delay = self._calculate_backoff(attempt)
                            self.logger.warning(
                                "HTTP 429 on %s, backoff=%.2fs, attempt=%s",
                                path,
                                delay,
                                attempt,
                            )

                        await asyncio.sleep(delay)
                        continue

                    if 500 <= resp.status < 600:
                        if not retry or attempt > self.MAX_RETRY_ATTEMPTS:
                            body = await resp.text()
                            raise UpstreamError(
                                f"HTTP {resp.status} after {attempt} attempts on {method} {path}: "
                                f"{self._redact(body[:200])}",
                                status=resp.status,
                                retryable=True,
                            )

                        delay = self._calculate_backoff(attempt)
                        self.logger.warning(
                            "HTTP %s on %s, backoff=%.2fs, attempt=%s",
                            resp.status,
                            path,
                            delay,
                            attempt,
                        )
                        await asyncio.sleep(delay)
                        continue

                    if 400 <= resp.status < 500:
                        body = await resp.text()
                        raise UpstreamError(
                            f"HTTP {resp.status} (non-retryable) on {method} {path}: "
                            f"{self._redact(body[:500])}",
                            status=resp.status,
                        )

                    if as_text:
                        return await resp.text()
                    return await resp.json(content_type=None)

            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                if not retry or attempt > self.MAX_RETRY_ATTEMPTS:
                    raise UpstreamError(
                        f"Network error after {attempt} attempts on {method} {path}: "
                        f"{self._redact(str(e))}",
                        retryable=True,
                    ) from e

                delay = self._calculate_backoff(attempt)
                self.logger.warning(
                    "Network error on %s: %s, backoff=%.2fs, attempt=%s",
                    path,
                    self._redact(str(e)),
                    delay,
                    attempt,
                )
                await asyncio.sleep(delay)
                continue
