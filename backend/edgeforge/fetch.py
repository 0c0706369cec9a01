"""
HTTP fetching with bounded retry for transient failures.

Used by the font self-hoster, video thumbnail fetcher and image migrator.

Retries on:
  - Network timeouts and connection errors
  - HTTP 429, 500, 502, 503, 504
  - TransientFetchError raised by any collaborator
Does NOT retry on permanent client errors (400, 401, 403, 404).

After the last attempt the error propagates; callers decide whether to
degrade (keep the original asset) or fail.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, Dict, Optional, TypeVar

import requests
from requests.adapters import HTTPAdapter
from tenacity import (
    Retrying,
    before_sleep_log,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Google Fonts serves woff2 only to modern browser user agents
BROWSER_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/126.0.0.0 Safari/537.36"
)

RETRYABLE_STATUS_CODES = (429, 500, 502, 503, 504)


class FetchError(Exception):
    """A fetch failed permanently (or after all retries)."""

    def __init__(self, url: str, reason: str, status: Optional[int] = None):
        self.url = url
        self.reason = reason
        self.status = status
        super().__init__(f"Fetch failed for {url}: {reason}")


class TransientFetchError(FetchError):
    """A fetch failed in a way worth retrying (rate limit, upstream hiccup)."""
    pass


def is_retryable_error(exception: BaseException) -> bool:
    """Return True for transient errors that should be retried."""
    if isinstance(exception, TransientFetchError):
        return True
    if isinstance(exception, (requests.exceptions.Timeout, requests.exceptions.ConnectionError)):
        return True
    if isinstance(exception, requests.exceptions.HTTPError):
        status = exception.response.status_code if exception.response is not None else 0
        return status in RETRYABLE_STATUS_CODES
    return False


def build_retrying(attempts: int = 3, wait_min: float = 1.0, wait_max: float = 30.0) -> Retrying:
    """Retry controller shared by every network collaborator."""
    return Retrying(
        stop=stop_after_attempt(attempts),
        wait=wait_exponential(multiplier=1, min=wait_min, max=wait_max),
        retry=retry_if_exception(is_retryable_error),
        reraise=True,
        before_sleep=before_sleep_log(logger, logging.WARNING),
    )


def call_with_retry(fn: Callable[[], T], retrying: Optional[Retrying] = None) -> T:
    """Run fn under a retry controller (a fresh default one if omitted)."""
    controller = retrying.copy() if retrying is not None else build_retrying()
    return controller(fn)


@dataclass(frozen=True)
class FetchResult:
    url: str
    content: bytes
    content_type: str = ""
    status: int = 200

    @property
    def text(self) -> str:
        return self.content.decode("utf-8", errors="replace")


class Fetcher(ABC):
    """Network collaborator: fetch a URL's body."""

    @abstractmethod
    def fetch(self, url: str, headers: Optional[Dict[str, str]] = None) -> FetchResult:
        """
        Fetch a URL.

        Raises:
            FetchError: On permanent failure or after retries are exhausted
        """
        pass


class HttpFetcher(Fetcher):
    """requests-based fetcher with tenacity retry."""

    def __init__(
        self,
        timeout: float = 15.0,
        attempts: int = 3,
        wait_min: float = 1.0,
        wait_max: float = 30.0,
        session: Optional[requests.Session] = None,
    ):
        self.timeout = timeout
        self._retrying = build_retrying(attempts, wait_min, wait_max)
        self._session = session or self._build_session()

    @staticmethod
    def _build_session() -> requests.Session:
        session = requests.Session()
        adapter = HTTPAdapter(pool_connections=32, pool_maxsize=32)
        session.mount("http://", adapter)
        session.mount("https://", adapter)
        session.headers.update({"User-Agent": BROWSER_USER_AGENT})
        return session

    def _get(self, url: str, headers: Optional[Dict[str, str]]) -> FetchResult:
        response = self._session.get(url, headers=headers, timeout=self.timeout)
        response.raise_for_status()
        return FetchResult(
            url=url,
            content=response.content,
            content_type=response.headers.get("Content-Type", ""),
            status=response.status_code,
        )

    def fetch(self, url: str, headers: Optional[Dict[str, str]] = None) -> FetchResult:
        try:
            return self._retrying.copy()(self._get, url, headers)
        except requests.exceptions.HTTPError as e:
            status = e.response.status_code if e.response is not None else None
            raise FetchError(url, f"HTTP {status}", status=status) from e
        except requests.exceptions.RequestException as e:
            raise FetchError(url, str(e)) from e
