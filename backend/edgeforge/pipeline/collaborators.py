"""
Pipeline collaborator interfaces.

The orchestrator calls out to two collaborators whose implementations are
outside the core:

- Crawler: supplies {page path, html, assets} per page, called once per build
- Deployer: publishes the finalized output tree and returns a public URL

Local implementations are provided for development and tests.
"""

import logging
import shutil
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Sequence

from .errors import CrawlError, DeployError
from .models import Build, BuildScope

logger = logging.getLogger(__name__)


@dataclass
class CrawledAsset:
    """A static asset referenced by a page, keyed by its site-relative path."""

    path: str  # e.g. "css/style.css" (no leading slash)
    content: bytes
    url: str = ""
    content_type: str = ""


@dataclass
class CrawledPage:
    path: str  # Site-relative page path, e.g. "/" or "/about/"
    html: str
    url: str = ""
    assets: List[CrawledAsset] = field(default_factory=list)


class Crawler(ABC):
    """Abstract crawl collaborator."""

    @abstractmethod
    def crawl(self, site_url: str, scope: BuildScope, pages: Sequence[str]) -> List[CrawledPage]:
        """
        Crawl a site.

        Args:
            site_url: Site origin
            scope: full / partial / single_page
            pages: Page paths to crawl for partial and single_page scopes

        Raises:
            CrawlError: If the site cannot be crawled
        """
        pass


class Deployer(ABC):
    """Abstract deployment collaborator."""

    @abstractmethod
    def deploy(self, output_dir: Path, build: Build) -> str:
        """
        Publish an output tree.

        Returns:
            Public URL of the deployment

        Raises:
            DeployError: If the tree cannot be published
        """
        pass


class StaticCrawler(Crawler):
    """
    Crawler over pre-fetched pages, keyed by site URL.

    partial and single_page scopes return only the requested paths
    (single_page: the first one).
    """

    def __init__(self, sites: Optional[Dict[str, List[CrawledPage]]] = None):
        self.sites: Dict[str, List[CrawledPage]] = dict(sites or {})

    def add_page(self, site_url: str, page: CrawledPage) -> None:
        self.sites.setdefault(site_url, []).append(page)

    def crawl(self, site_url: str, scope: BuildScope, pages: Sequence[str]) -> List[CrawledPage]:
        if site_url not in self.sites:
            raise CrawlError(site_url, "site not reachable")
        crawled = self.sites[site_url]
        if scope == BuildScope.FULL:
            return list(crawled)
        wanted = list(pages)[:1] if scope == BuildScope.SINGLE_PAGE else list(pages)
        return [p for p in crawled if p.path in wanted]


class LocalDirectoryDeployer(Deployer):
    """
    Copies the output tree to <target_root>/<site_id>/<build_id>/.

    The returned URL is <base_url>/<site_id>/<build_id>/, or a file:// URI
    when no base_url is given.
    """

    def __init__(self, target_root: Path, base_url: Optional[str] = None):
        self.target_root = Path(target_root)
        self.base_url = base_url.rstrip("/") if base_url else None

    def deploy(self, output_dir: Path, build: Build) -> str:
        destination = self.target_root / build.site_id / build.id
        try:
            if destination.exists():
                shutil.rmtree(destination)
            shutil.copytree(output_dir, destination)
        except OSError as e:
            raise DeployError(build.id, str(e)) from e

        if self.base_url is None:
            url = destination.resolve().as_uri() + "/"
        else:
            url = f"{self.base_url}/{build.site_id}/{build.id}/"
        logger.info(f"[Deployer] Build {build.id} deployed to {url}")
        return url
