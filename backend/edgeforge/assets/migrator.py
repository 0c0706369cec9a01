"""
Batch image migration into a content store.

Rules:
- Deduplicate by resolved URL BEFORE any transfer
- exists(key) short-circuits to EXISTING (no download, no upload)
- Bounded concurrency via ThreadPoolExecutor
- Transient failures retried per asset (tenacity); a failure is recorded
  on that asset's result and never aborts the batch
- Width/height read from the payload with Pillow when decodable
- If every attempted transfer fails, the subsystem is considered down and
  MigrationSubsystemError is raised
"""

import io
import logging
import mimetypes
import posixpath
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Dict, Iterable, List, Optional, Tuple
from urllib.parse import urlsplit

from PIL import Image, UnidentifiedImageError
from tenacity import (
    Retrying,
    before_sleep_log,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from ..fetch import FetchError, Fetcher, is_retryable_error
from .content_store import ContentStore, storage_key
from .errors import AssetTooLargeError, ContentStoreError, MigrationSubsystemError, TransientStoreError
from .models import ImageRecord, MigrationResult, MigrationStatus

logger = logging.getLogger(__name__)

DEFAULT_CONCURRENCY = 10
DEFAULT_MAX_SIZE_MB = 10

# Returns workspace bytes for a URL the build already holds locally, else None
LocalSource = Callable[[str], Optional[bytes]]
ProgressCallback = Callable[[int, int, str], None]


def is_transient_migration_error(exception: BaseException) -> bool:
    return isinstance(exception, TransientStoreError) or is_retryable_error(exception)


def build_migration_retrying(attempts: int = 3, wait_min: float = 0.5, wait_max: float = 8.0) -> Retrying:
    return Retrying(
        stop=stop_after_attempt(attempts),
        wait=wait_exponential(multiplier=wait_min, min=wait_min, max=wait_max),
        retry=retry_if_exception(is_transient_migration_error),
        reraise=True,
        before_sleep=before_sleep_log(logger, logging.WARNING),
    )


def unique_urls(records: Iterable[ImageRecord]) -> List[str]:
    """Resolved URLs in first-seen order, each once."""
    seen: Dict[str, None] = {}
    for record in records:
        seen.setdefault(record.resolved_url, None)
    return list(seen)


def is_svg_url(url: str) -> bool:
    return urlsplit(url).path.lower().endswith(".svg")


def image_dimensions(data: bytes) -> Tuple[Optional[int], Optional[int]]:
    try:
        with Image.open(io.BytesIO(data)) as img:
            return img.width, img.height
    except (UnidentifiedImageError, OSError, Image.DecompressionBombError):
        return None, None


def _content_type(url: str, fallback: str = "") -> str:
    guessed, _ = mimetypes.guess_type(posixpath.basename(urlsplit(url).path))
    return guessed or fallback or "application/octet-stream"


class _Migration:
    """One migrate_all() invocation; holds its collaborators and counters."""

    def __init__(
        self,
        store: ContentStore,
        fetcher: Fetcher,
        max_size_mb: float,
        retrying: Retrying,
        local_source: Optional[LocalSource],
        on_progress: Optional[ProgressCallback],
        total: int,
    ):
        self.store = store
        self.fetcher = fetcher
        self.max_size_mb = max_size_mb
        self.retrying = retrying
        self.local_source = local_source
        self.on_progress = on_progress
        self.total = total
        self._done = 0
        self._lock = threading.Lock()

    def _progress(self, url: str) -> None:
        with self._lock:
            self._done += 1
            done = self._done
        if self.on_progress is not None:
            self.on_progress(done, self.total, url)

    def _load(self, url: str) -> Tuple[bytes, str]:
        if self.local_source is not None:
            local = self.local_source(url)
            if local is not None:
                return local, _content_type(url)
        response = self.fetcher.fetch(url)
        return response.content, _content_type(url, response.content_type.split(";")[0].strip())

    def _transfer(self, url: str, key: str) -> MigrationResult:
        data, content_type = self._load(url)
        size_mb = len(data) / (1024 * 1024)
        if size_mb > self.max_size_mb:
            raise AssetTooLargeError(url, size_mb, self.max_size_mb)
        width, height = image_dimensions(data)
        delivery = self.store.put(key, data, content_type)
        return MigrationResult(url=url, status=MigrationStatus.MIGRATED, delivery_url=delivery,
                               key=key, width=width, height=height)

    def migrate(self, url: str) -> MigrationResult:
        key = storage_key(url)
        try:
            existing = self.store.exists(key)
            if existing:
                return MigrationResult(url=url, status=MigrationStatus.EXISTING, delivery_url=existing, key=key)
            return self.retrying.copy()(self._transfer, url, key)
        except AssetTooLargeError as e:
            return MigrationResult(url=url, status=MigrationStatus.SKIPPED, delivery_url=url,
                                   key=key, failure_reason=str(e))
        except (FetchError, ContentStoreError) as e:
            logger.warning(f"[Migrator] Failed to migrate {url}: {e}")
            return MigrationResult(url=url, status=MigrationStatus.FAILED, delivery_url=url,
                                   key=key, failure_reason=str(e))
        except Exception as e:
            logger.exception(f"[Migrator] Unexpected error migrating {url}")
            return MigrationResult(url=url, status=MigrationStatus.FAILED, delivery_url=url,
                                   key=key, failure_reason=f"{type(e).__name__}: {e}")
        finally:
            self._progress(url)


def migrate_all(
    records: Iterable[ImageRecord],
    store: ContentStore,
    fetcher: Fetcher,
    concurrency_limit: int = DEFAULT_CONCURRENCY,
    max_size_mb: float = DEFAULT_MAX_SIZE_MB,
    skip_svg: bool = True,
    retrying: Optional[Retrying] = None,
    local_source: Optional[LocalSource] = None,
    on_progress: Optional[ProgressCallback] = None,
) -> List[MigrationResult]:
    """
    Migrate every unique image URL into the content store.

    Args:
        records: Scanned image records (may repeat URLs)
        store: Destination content store
        fetcher: Network fetcher for remote payloads
        concurrency_limit: Maximum simultaneous transfers
        max_size_mb: Payloads above this are skipped
        skip_svg: Leave SVG URLs in place
        retrying: Per-asset retry controller (default: 3 attempts)
        local_source: Lookup for payloads the build already holds
        on_progress: Called as (done, total, url) after each URL

    Returns:
        One MigrationResult per unique resolved URL, first-seen order

    Raises:
        MigrationSubsystemError: If every attempted transfer failed
    """
    urls = unique_urls(records)
    results: Dict[str, MigrationResult] = {}

    pending = []
    for url in urls:
        if skip_svg and is_svg_url(url):
            results[url] = MigrationResult(url=url, status=MigrationStatus.SKIPPED, delivery_url=url,
                                           failure_reason="svg")
        else:
            pending.append(url)

    if pending:
        logger.info(f"[Migrator] Migrating {len(pending)} unique image(s) (concurrency={concurrency_limit})")
        migration = _Migration(
            store=store,
            fetcher=fetcher,
            max_size_mb=max_size_mb,
            retrying=retrying or build_migration_retrying(),
            local_source=local_source,
            on_progress=on_progress,
            total=len(pending),
        )
        with ThreadPoolExecutor(max_workers=max(1, concurrency_limit), thread_name_prefix="migrate") as pool:
            for url, result in zip(pending, pool.map(migration.migrate, pending)):
                results[url] = result

    ordered = [results[url] for url in urls]
    counts = {status: 0 for status in MigrationStatus}
    for result in ordered:
        counts[result.status] += 1
    logger.info(
        f"[Migrator] Complete: {counts[MigrationStatus.MIGRATED]} migrated, "
        f"{counts[MigrationStatus.EXISTING]} existing, {counts[MigrationStatus.SKIPPED]} skipped, "
        f"{counts[MigrationStatus.FAILED]} failed"
    )

    attempted = len(ordered) - counts[MigrationStatus.SKIPPED]
    if attempted and counts[MigrationStatus.FAILED] == attempted:
        raise MigrationSubsystemError("every transfer failed", failed=attempted, total=len(ordered))
    return ordered
