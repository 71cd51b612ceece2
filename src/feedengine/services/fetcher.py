"""Resilient fetching of feed documents through direct and relayed transports."""

from __future__ import annotations

import json
import logging
import threading
import time
from typing import List, Mapping, Sequence
from urllib.parse import quote

import requests
from bs4 import UnicodeDammit
from requests.adapters import HTTPAdapter
from requests.structures import CaseInsensitiveDict
from requests.utils import get_encoding_from_headers
from urllib3.util.retry import Retry

from feedengine.config import EngineSettings, RelayConfig
from feedengine.errors import FetchCancelledError, FetchError, FetchTimeoutError

__all__ = [
    "CancelToken",
    "DEFAULT_HEADERS",
    "DirectTransport",
    "Fetcher",
    "RelayTransport",
    "Transport",
    "build_session",
    "default_transports",
]

logger = logging.getLogger(__name__)

DEFAULT_HEADERS = {
    "Accept": (
        "application/rss+xml,application/atom+xml,application/rdf+xml,"
        "application/xml;q=0.9,text/xml;q=0.9,text/html;q=0.8,*/*;q=0.7"
    ),
    "Accept-Language": "en-US,en;q=0.9",
    "Accept-Encoding": "gzip, deflate",
    "Connection": "keep-alive",
}

CHUNK_SIZE = 16 * 1024
RETRYABLE_STATUS_CODES = frozenset({408, 425, 429})


class CancelToken:
    """Cooperative cancellation flag shared by every task of one run."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def wait(self, seconds: float) -> bool:
        """Sleep up to ``seconds``; return ``True`` if cancelled meanwhile."""

        if seconds <= 0:
            return self._event.is_set()
        return self._event.wait(seconds)

    def raise_if_cancelled(self, url: str | None = None) -> None:
        if self._event.is_set():
            raise FetchCancelledError(url=url)


class Transport:
    """One network path to a feed. Subclasses rewrite the URL and unwrap the reply."""

    name = "transport"

    def build_url(self, url: str) -> str:
        raise NotImplementedError

    def unwrap(self, body: str, url: str) -> str:
        return body

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.name}>"


class DirectTransport(Transport):
    name = "direct"

    def build_url(self, url: str) -> str:
        return url


class RelayTransport(Transport):
    """A prefix-style relay, optionally returning the payload in a JSON envelope."""

    def __init__(self, config: RelayConfig) -> None:
        self.config = config
        self.name = config.name

    def build_url(self, url: str) -> str:
        return f"{self.config.prefix}{quote(url, safe='')}"

    def unwrap(self, body: str, url: str) -> str:
        if self.config.envelope != "json":
            return body
        try:
            payload = json.loads(body)
        except json.JSONDecodeError as exc:
            raise FetchError(f"Failed to parse {self.name} response: {exc}", url=url) from exc
        contents = payload.get(self.config.envelope_field) if isinstance(payload, dict) else None
        if not isinstance(contents, str):
            raise FetchError(f"No {self.config.envelope_field} in {self.name} response", url=url)
        return contents


def default_transports(settings: EngineSettings) -> List[Transport]:
    transports: List[Transport] = [DirectTransport()]
    transports.extend(RelayTransport(relay) for relay in settings.enabled_relays())
    return transports


def build_session(settings: EngineSettings) -> requests.Session:
    """Return a pooled session; retries are left to :class:`Fetcher`."""

    session = requests.Session()
    session.headers.update(DEFAULT_HEADERS)
    session.headers["User-Agent"] = settings.user_agent
    adapter = HTTPAdapter(
        pool_connections=settings.max_concurrency,
        pool_maxsize=settings.max_concurrency * 2,
        max_retries=Retry(total=0, raise_on_status=False),
    )
    session.mount("https://", adapter)
    session.mount("http://", adapter)
    return session


def _decode(raw: bytes, headers: Mapping[str, str] | None) -> str:
    """Decode with the charset named by the headers, else the one the document declares."""

    headers = CaseInsensitiveDict(headers or {})
    known = []
    if "charset=" in (headers.get("Content-Type") or "").lower():
        known.append(get_encoding_from_headers(headers))
    dammit = UnicodeDammit(raw, known_definite_encodings=known, is_html=False)
    if dammit.unicode_markup is None:
        return raw.decode("utf-8", errors="replace")
    return dammit.unicode_markup


class Fetcher:
    """Fetch raw documents through an ordered list of transports with retry and backoff.

    A round tries every transport in order and fails only when all of them
    failed. Rounds are retried up to ``max_retries`` times with exponential
    backoff. Every wait and every streamed chunk checks the cancel token.
    """

    def __init__(
        self,
        settings: EngineSettings | None = None,
        *,
        session: requests.Session | None = None,
        transports: Sequence[Transport] | None = None,
    ) -> None:
        self.settings = settings or EngineSettings()
        self._session = session or build_session(self.settings)
        self.transports: List[Transport] = (
            list(transports) if transports is not None else default_transports(self.settings)
        )

    def close(self) -> None:
        close = getattr(self._session, "close", None)
        if close is not None:
            close()

    def retry_delay(self, attempt: int) -> float:
        """Delay in seconds after failed round ``attempt`` (1-based)."""

        return self.settings.retry_base_delay * 2 ** (attempt - 1)

    def fetch(
        self,
        url: str,
        *,
        timeout: float | None = None,
        max_retries: int | None = None,
        cancel_token: CancelToken | None = None,
    ) -> str:
        """Return the body of ``url`` as text.

        Raises :class:`FetchError` once every round failed and
        :class:`FetchCancelledError` as soon as ``cancel_token`` fires.
        """

        if timeout is None:
            timeout = self.settings.fetch_timeout
        if max_retries is None:
            max_retries = self.settings.max_retries
        if max_retries < 1:
            raise ValueError(f"max_retries must be at least 1, got {max_retries}")
        token = cancel_token or CancelToken()

        attempt = 0
        while True:
            attempt += 1
            token.raise_if_cancelled(url)
            logger.debug("Fetching %s (attempt %d/%d)", url, attempt, max_retries)
            try:
                body = self._fetch_round(url, timeout=timeout, token=token)
            except FetchCancelledError:
                raise
            except FetchError as exc:
                if not exc.retryable:
                    logger.warning("Not retrying %s: %s", url, exc)
                    raise
                if attempt >= max_retries:
                    logger.error("All attempts failed for %s: %s", url, exc)
                    raise
                delay = self.retry_delay(attempt)
                logger.warning(
                    "Fetch attempt %d/%d for %s failed, retrying in %.1fs: %s",
                    attempt,
                    max_retries,
                    url,
                    delay,
                    exc,
                )
                self._backoff(delay, token)
                continue

            if attempt > 1:
                logger.info("Fetched %s on attempt %d", url, attempt)
            return body

    def fetch_via(
        self,
        transport: Transport,
        url: str,
        *,
        timeout: float | None = None,
        cancel_token: CancelToken | None = None,
    ) -> str:
        """Run a single attempt through ``transport``."""

        if timeout is None:
            timeout = self.settings.fetch_timeout
        token = cancel_token or CancelToken()
        token.raise_if_cancelled(url)

        deadline = time.monotonic() + timeout
        try:
            response = self._session.get(transport.build_url(url), timeout=timeout, stream=True)
        except requests.Timeout as exc:
            raise FetchTimeoutError(f"Request timeout after {timeout:g}s", url=url) from exc
        except requests.RequestException as exc:
            raise FetchError(f"Network error: {exc}", url=url) from exc

        try:
            status = response.status_code
            if status >= 400:
                raise FetchError(
                    f"HTTP {status}: {getattr(response, 'reason', '') or 'error'}",
                    url=url,
                    retryable=status >= 500 or status in RETRYABLE_STATUS_CODES,
                    status_code=status,
                )
            raw = self._read_body(response, url=url, deadline=deadline, timeout=timeout, token=token)
        finally:
            response.close()

        text = transport.unwrap(_decode(raw, getattr(response, "headers", None)), url)
        if not text.strip():
            raise FetchError(f"Empty response received via {transport.name}", url=url)
        return text

    def _fetch_round(self, url: str, *, timeout: float, token: CancelToken) -> str:
        if not self.transports:
            raise FetchError("No transports configured", url=url, retryable=False)

        errors: List[FetchError] = []
        for index, transport in enumerate(self.transports):
            if index and token.wait(self.settings.relay_pause):
                raise FetchCancelledError(url=url)
            try:
                body = self.fetch_via(transport, url, timeout=timeout, cancel_token=token)
            except FetchCancelledError:
                raise
            except FetchError as exc:
                logger.debug("Transport %s failed for %s: %s", transport.name, url, exc)
                errors.append(exc)
                continue
            if index:
                logger.info("Fetched %s via %s", url, transport.name)
            return body

        last = errors[-1]
        raise FetchError(
            f"All transports failed. Last error: {last}",
            url=url,
            retryable=any(error.retryable for error in errors),
            status_code=last.status_code,
        ) from last

    def _read_body(
        self,
        response: requests.Response,
        *,
        url: str,
        deadline: float,
        timeout: float,
        token: CancelToken,
    ) -> bytes:
        chunks: List[bytes] = []
        try:
            for chunk in response.iter_content(chunk_size=CHUNK_SIZE):
                if token.cancelled:
                    raise FetchCancelledError(url=url)
                if time.monotonic() > deadline:
                    raise FetchTimeoutError(f"Request timeout after {timeout:g}s", url=url)
                if chunk:
                    chunks.append(chunk)
        except requests.Timeout as exc:
            raise FetchTimeoutError(f"Request timeout after {timeout:g}s", url=url) from exc
        except requests.RequestException as exc:
            raise FetchError(f"Network error: {exc}", url=url) from exc
        return b"".join(chunks)

    def _backoff(self, delay: float, token: CancelToken) -> None:
        if token.wait(delay):
            raise FetchCancelledError()

