"""Persistent credential records, one per principal."""

import json
import logging
import os
import tempfile
import threading
from pathlib import Path
from typing import Dict, List, Optional

from pydantic import ValidationError

from drive_migrator.types import CredentialRecord

logger = logging.getLogger(__name__)


class CredentialStore:
    """JSON file backed store of credential records.

    The file is rewritten atomically on every change and created with
    owner-only permissions. Records handed out are copies.
    """

    def __init__(self, path: Optional[str] = None):
        """
        Args:
            path: Backing file; None keeps records in memory only
        """
        self.path = Path(path) if path else None
        self._records: Dict[str, CredentialRecord] = {}
        self._lock = threading.RLock()
        self._load()

    def get(self, principal: str) -> Optional[CredentialRecord]:
        with self._lock:
            record = self._records.get(principal)
            return record.model_copy() if record else None

    def put(self, record: CredentialRecord) -> None:
        with self._lock:
            self._records[record.principal] = record.model_copy()
            self._save()

    def delete(self, principal: str) -> bool:
        with self._lock:
            if self._records.pop(principal, None) is None:
                return False
            self._save()
            return True

    def principals(self) -> List[str]:
        with self._lock:
            return sorted(self._records)

    def records(self) -> List[CredentialRecord]:
        with self._lock:
            return [self._records[p].model_copy() for p in sorted(self._records)]

    def _load(self) -> None:
        if self.path is None or not self.path.exists():
            return

        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            backup = self.path.with_name(self.path.name + ".corrupt")
            logger.error(f"Unreadable credential store {self.path}, moving it to {backup}: {e}")
            try:
                os.replace(self.path, backup)
            except OSError as move_error:
                logger.error(f"Failed to move unreadable credential store: {move_error}")
            return

        for principal, data in (raw or {}).items():
            try:
                self._records[principal] = CredentialRecord.model_validate({**data, "principal": principal})
            except (ValidationError, TypeError) as e:
                logger.warning(f"Skipping invalid credential record for {principal}: {e}")

        logger.info(f"Loaded {len(self._records)} credential record(s) from {self.path}")

    def _save(self) -> None:
        if self.path is None:
            return

        payload = {
            principal: record.model_dump(mode="json", exclude={"principal"})
            for principal, record in self._records.items()
        }
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(prefix=f".{self.path.name}.", suffix=".tmp", dir=str(self.path.parent))
        try:
            os.chmod(tmp_path, 0o600)
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(payload, f, indent=2)
            os.replace(tmp_path, self.path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.remove(tmp_path)
            raise
