"""
Manifest builder: turns selected item paths into the line-oriented file
list consumed by ``rclone --files-from``.

Each job attempt gets one manifest named after its job id. The file is
written atomically, and removal is retried so that a transient filesystem
error does not leave the manifest behind.
"""

import asyncio
import logging
import os
import posixpath
import re
import tempfile
import time
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence, Set
from urllib.parse import unquote

from drive_migrator.errors import EmptyManifestError
from drive_migrator.utils import log_with_context

logger = logging.getLogger(__name__)

MANIFEST_PREFIX = "manifest_"
MANIFEST_SUFFIX = ".txt"

# Graph API item paths, e.g. "/drive/root:/Documents" or "/drives/b!x/root:/a"
_GRAPH_ROOT_RE = re.compile(r"^/?drives?(?:/[^/]+)?/root:", re.IGNORECASE)


def canonicalize_path(path: str, remote_names: Sequence[str] = ("onedrive",)) -> Optional[str]:
    """Canonicalize one source path.

    Strips Graph API root prefixes and ``<remote>:`` prefixes, normalizes
    separators to ``/``, collapses ``.`` and duplicate separators, and drops
    the leading slash. Returns None for paths that are empty, contain a line
    break, or escape the source root.
    """
    if not isinstance(path, str):
        return None

    candidate = path.strip()
    if not candidate or "\n" in candidate or "\r" in candidate:
        return None

    graph_match = _GRAPH_ROOT_RE.match(candidate)
    if graph_match:
        # Graph reports parent paths percent-encoded
        candidate = unquote(candidate[graph_match.end():])
    else:
        for remote in remote_names:
            if candidate.lower().startswith(f"{remote.lower()}:"):
                candidate = candidate[len(remote) + 1:]
                break

    candidate = candidate.replace("\\", "/").lstrip("/")
    if not candidate:
        return None
    candidate = posixpath.normpath(candidate)

    if candidate == ".":
        return None
    if candidate == ".." or candidate.startswith("../"):
        return None
    return candidate


def canonicalize_items(items: Iterable[str], remote_names: Sequence[str] = ("onedrive",)) -> List[str]:
    """Canonicalize and deduplicate item paths, keeping first-seen order.

    Raises:
        EmptyManifestError: If no usable path remains
    """
    seen: Set[str] = set()
    canonical: List[str] = []
    dropped = 0

    for item in items or []:
        path = canonicalize_path(item, remote_names)
        if path is None:
            dropped += 1
            continue
        if path in seen:
            continue
        seen.add(path)
        canonical.append(path)

    if dropped:
        logger.warning(f"Dropped {dropped} unusable item path(s) from manifest input")

    if not canonical:
        raise EmptyManifestError("No items to migrate")

    return canonical


class ManifestBuilder:
    """Writes and removes per-job manifest files."""

    def __init__(
        self,
        manifest_dir: str,
        remote_names: Sequence[str] = ("onedrive",),
        cleanup_retry_attempts: int = 3,
        cleanup_retry_delay: float = 0.1,
    ):
        self.manifest_dir = Path(manifest_dir)
        self.remote_names = tuple(remote_names)
        self.cleanup_retry_attempts = max(1, cleanup_retry_attempts)
        self.cleanup_retry_delay = cleanup_retry_delay

        self.manifest_dir.mkdir(parents=True, exist_ok=True)

        self.metrics: Dict[str, int] = {
            "manifests_created": 0,
            "manifests_removed": 0,
            "removal_failures": 0,
            "orphans_removed": 0,
        }

    def canonicalize(self, items: Iterable[str]) -> List[str]:
        return canonicalize_items(items, self.remote_names)

    def manifest_path(self, job_id: str) -> Path:
        return self.manifest_dir / f"{MANIFEST_PREFIX}{job_id}{MANIFEST_SUFFIX}"

    def build(self, job_id: str, items: Iterable[str]) -> str:
        """Write the manifest for a job attempt and return its path.

        Args:
            job_id: Job fingerprint; names the manifest file
            items: Source paths (canonicalized again, so raw input is accepted)

        Raises:
            EmptyManifestError: If no usable path remains
        """
        paths = self.canonicalize(items)
        target = self.manifest_path(job_id)
        content = "\n".join(paths) + "\n"

        fd, tmp_path = tempfile.mkstemp(
            prefix=f".{MANIFEST_PREFIX}", suffix=".tmp", dir=str(self.manifest_dir), text=True
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8", newline="\n") as f:
                f.write(content)
            os.replace(tmp_path, target)
        except BaseException:
            if os.path.exists(tmp_path):
                os.remove(tmp_path)
            raise

        self.metrics["manifests_created"] += 1
        log_with_context(
            logger,
            logging.DEBUG,
            "Wrote manifest",
            {"job_id": job_id, "path": str(target), "items": len(paths)},
        )
        return str(target)

    async def remove(self, manifest_path: Optional[str]) -> bool:
        """Delete a manifest, retrying with exponential backoff.

        Returns:
            True if the file is gone afterwards
        """
        if not manifest_path:
            return True

        for attempt in range(self.cleanup_retry_attempts):
            try:
                if os.path.exists(manifest_path):
                    os.remove(manifest_path)
                    self.metrics["manifests_removed"] += 1
                    log_with_context(
                        logger, logging.DEBUG, "Removed manifest", {"path": manifest_path}
                    )
                return True
            except OSError as e:
                log_with_context(
                    logger,
                    logging.WARNING,
                    f"Manifest removal attempt {attempt + 1} failed",
                    {
                        "path": manifest_path,
                        "attempt": attempt + 1,
                        "max_attempts": self.cleanup_retry_attempts,
                        "error": str(e),
                    },
                )
                if attempt < self.cleanup_retry_attempts - 1:
                    await asyncio.sleep(self.cleanup_retry_delay * (2 ** attempt))

        self.metrics["removal_failures"] += 1
        log_with_context(
            logger,
            logging.ERROR,
            "Failed to remove manifest after all retries",
            {"path": manifest_path},
        )
        return False

    def cleanup_orphaned_manifests(
        self, max_age_seconds: float, active_job_ids: Iterable[str] = ()
    ) -> int:
        """Remove manifests left behind by an earlier host process.

        Args:
            max_age_seconds: Only files older than this are removed
            active_job_ids: Job ids whose manifests must be kept

        Returns:
            Number of manifests removed
        """
        keep = {self.manifest_path(job_id).name for job_id in active_job_ids}
        now = time.time()
        removed = 0

        for file_path in self.manifest_dir.glob(f"{MANIFEST_PREFIX}*{MANIFEST_SUFFIX}"):
            if file_path.name in keep or not file_path.is_file():
                continue
            try:
                if now - file_path.stat().st_mtime < max_age_seconds:
                    continue
                file_path.unlink()
                removed += 1
                log_with_context(
                    logger, logging.INFO, "Removed orphaned manifest", {"path": str(file_path)}
                )
            except OSError as e:
                log_with_context(
                    logger,
                    logging.WARNING,
                    "Failed to remove orphaned manifest",
                    {"path": str(file_path), "error": str(e)},
                )

        self.metrics["orphans_removed"] += removed
        return removed
