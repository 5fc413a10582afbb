import json
import logging
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)


class LocalAdvisoryStore:
    """Per-controller memory of the last processed session.

    Lives only on the controller's own host (optionally in a small JSON file so
    it survives a restart) and is never shared. It is a fast local hint; the
    shared record and the finalizer's claim row remain authoritative.
    """

    def __init__(self, path: Optional[Path] = None):
        self.path = Path(path) if path else None
        self.session_processed = False
        self.last_session_id: Optional[str] = None
        self._load()

    @classmethod
    def for_controller(cls, directory: Optional[str], controller_id: str) -> "LocalAdvisoryStore":
        if not directory:
            return cls()
        return cls(Path(directory) / f"{controller_id}.json")

    def _load(self):
        if not self.path or not self.path.exists():
            return
        try:
            data = json.loads(self.path.read_text())
        except (OSError, ValueError) as e:
            logger.warning(f"Ignoring unreadable advisory state {self.path}: {e}")
            return
        self.session_processed = bool(data.get("session_processed", False))
        self.last_session_id = data.get("last_session_id")

    def _save(self):
        if not self.path:
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(json.dumps({
            "session_processed": self.session_processed,
            "last_session_id": self.last_session_id,
        }))

    def is_processed(self, session_id: Optional[str]) -> bool:
        return self.session_processed and session_id is not None and self.last_session_id == session_id

    def begin(self, session_id: str):
        self.session_processed = False
        self.last_session_id = session_id
        self._save()

    def mark_processed(self, session_id: str):
        self.session_processed = True
        self.last_session_id = session_id
        self._save()

    def clear(self):
        self.session_processed = False
        self.last_session_id = None
        self._save()
