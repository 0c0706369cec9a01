"""
Per-site build workspaces.

A site's workspace directory is exclusive to one build at a time. The
manager tracks holders in memory; a build must acquire the workspace before
touching it and release it when it ends (success, failure or cancellation).

Layout:
    <root>/<site_id>/work/<tree>/pages/...   snapshot of the working pages
    <root>/<site_id>/work/<tree>/files/...   snapshot of the working assets
    <root>/<site_id>/output/                 finalized tree handed to the deployer

Work trees are snapshots named after the checkpoint they belong to ("crawl",
then one per stage). A snapshot is written under a staging name and renamed
into place once complete; older snapshots are pruned only after the
checkpoint that supersedes them is saved, so a checkpoint always points at an
intact tree.
"""

import logging
import os
import posixpath
import shutil
import tempfile
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Dict, Iterator, List, Optional

from .errors import WorkspaceBusyError, WorkspaceError

logger = logging.getLogger(__name__)

STAGING_PREFIX = ".staging-"


def page_output_path(page_path: str) -> str:
    """
    Output file for a site-relative page path.

    "/" -> "index.html", "/about/" -> "about/index.html",
    "/blog/post.html" -> "blog/post.html"
    """
    path = posixpath.normpath("/" + page_path.split("?", 1)[0].split("#", 1)[0]).lstrip("/")
    if path in ("", "."):
        return "index.html"
    if posixpath.splitext(path)[1] in (".html", ".htm"):
        return path
    return posixpath.join(path, "index.html")


class Workspace:
    """File access scoped to one site's workspace directory."""

    def __init__(self, site_id: str, root: Path):
        self.site_id = site_id
        self.root = Path(root)
        self.work_dir = self.root / "work"
        self.output_dir = self.root / "output"

    def _resolve(self, base: Path, rel_path: str) -> Path:
        target = (base / rel_path.lstrip("/")).resolve()
        if base.resolve() not in target.parents:
            raise WorkspaceError(self.site_id, f"path escapes workspace: {rel_path}")
        return target

    def _tree(self, tree: str) -> Path:
        if not tree or "/" in tree or "\\" in tree or tree.startswith("."):
            raise WorkspaceError(self.site_id, f"invalid work tree name: {tree!r}")
        return self.work_dir / tree

    def _write(self, base: Path, rel_path: str, data: bytes) -> None:
        target = self._resolve(base, rel_path)
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp = tempfile.mkstemp(dir=target.parent, prefix=".write-")
            with os.fdopen(fd, "wb") as f:
                f.write(data)
            os.replace(tmp, target)
        except OSError as e:
            raise WorkspaceError(self.site_id, str(e)) from e

    # Work trees

    def prepare(self) -> None:
        """Create an empty work directory (discarding every previous tree)."""
        try:
            if self.work_dir.exists():
                shutil.rmtree(self.work_dir)
            self.work_dir.mkdir(parents=True)
        except OSError as e:
            raise WorkspaceError(self.site_id, str(e)) from e

    def has_work_tree(self, tree: str) -> bool:
        base = self._tree(tree)
        return (base / "pages").is_dir() and (base / "files").is_dir()

    def write_work_tree(self, tree: str, pages: Dict[str, str], files: Dict[str, bytes]) -> None:
        """
        Write a complete snapshot of pages (keyed by page path) and files
        (keyed by rel path) as the named tree, replacing any tree of that name.

        Raises:
            WorkspaceError: If the snapshot cannot be written
        """
        final = self._tree(tree)
        staging = self.work_dir / f"{STAGING_PREFIX}{tree}"
        try:
            if staging.exists():
                shutil.rmtree(staging)
            (staging / "pages").mkdir(parents=True)
            (staging / "files").mkdir(parents=True)
        except OSError as e:
            raise WorkspaceError(self.site_id, str(e)) from e
        for page_path, html in pages.items():
            self._write(staging / "pages", page_output_path(page_path), html.encode("utf-8"))
        for rel_path, data in files.items():
            self._write(staging / "files", rel_path, data)
        try:
            if final.exists():
                shutil.rmtree(final)
            os.replace(staging, final)
        except OSError as e:
            raise WorkspaceError(self.site_id, str(e)) from e
        logger.debug(f"[Workspace] Site {self.site_id} wrote work tree {tree} "
                     f"({len(pages)} page(s), {len(files)} file(s))")

    def prune_work_trees(self, keep: str) -> None:
        """Delete every work tree (and leftover staging directory) except keep."""
        keep_dir = self._tree(keep)
        if not self.work_dir.is_dir():
            return
        for entry in self.work_dir.iterdir():
            if entry != keep_dir and entry.is_dir():
                shutil.rmtree(entry, ignore_errors=True)

    def read_page(self, tree: str, page_path: str) -> str:
        return self._resolve(self._tree(tree) / "pages", page_output_path(page_path)).read_text(encoding="utf-8")

    def read_file(self, tree: str, rel_path: str) -> Optional[bytes]:
        target = self._resolve(self._tree(tree) / "files", rel_path)
        return target.read_bytes() if target.is_file() else None

    def list_files(self, tree: str) -> List[str]:
        base = self._tree(tree) / "files"
        if not base.is_dir():
            return []
        return sorted(p.relative_to(base).as_posix() for p in base.rglob("*") if p.is_file())

    # Output

    def write_output(self, pages: Dict[str, str], files: Dict[str, bytes]) -> Path:
        """
        Write the finalized tree (pages keyed by page path, files by rel path).

        Returns:
            The output directory
        """
        try:
            if self.output_dir.exists():
                shutil.rmtree(self.output_dir)
            self.output_dir.mkdir(parents=True)
        except OSError as e:
            raise WorkspaceError(self.site_id, str(e)) from e
        for rel_path, data in files.items():
            self._write(self.output_dir, rel_path, data)
        for page_path, html in pages.items():
            self._write(self.output_dir, page_output_path(page_path), html.encode("utf-8"))
        return self.output_dir


class WorkspaceManager:
    """Hands out per-site workspaces and enforces one holder per site."""

    def __init__(self, root: Path):
        self.root = Path(root)
        self._holders: Dict[str, str] = {}
        self._lock = threading.Lock()

    def holder(self, site_id: str) -> Optional[str]:
        with self._lock:
            return self._holders.get(site_id)

    def acquire(self, site_id: str, build_id: str) -> Workspace:
        """
        Raises:
            WorkspaceBusyError: If another build holds the site's workspace
        """
        with self._lock:
            current = self._holders.get(site_id)
            if current is not None and current != build_id:
                raise WorkspaceBusyError(site_id, current)
            self._holders[site_id] = build_id
        logger.debug(f"[Workspace] Site {site_id} acquired by build {build_id}")
        return Workspace(site_id, self.root / site_id)

    def release(self, site_id: str, build_id: Optional[str] = None) -> bool:
        """
        Release a site's workspace. With build_id, only that holder is released.

        Returns:
            True if a holder was released
        """
        with self._lock:
            current = self._holders.get(site_id)
            if current is None or (build_id is not None and current != build_id):
                return False
            del self._holders[site_id]
        logger.debug(f"[Workspace] Site {site_id} released by build {current}")
        return True

    @contextmanager
    def hold(self, site_id: str, build_id: str) -> Iterator[Workspace]:
        workspace = self.acquire(site_id, build_id)
        try:
            yield workspace
        finally:
            self.release(site_id, build_id)

    def remove(self, site_id: str) -> bool:
        """
        Delete a site's workspace directory if no build holds it.

        Returns:
            True if the directory was removed (or did not exist)
        """
        if self.holder(site_id) is not None:
            return False
        shutil.rmtree(self.root / site_id, ignore_errors=True)
        return True
