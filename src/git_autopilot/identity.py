import json
import logging
import threading
import uuid
from dataclasses import dataclass
from pathlib import Path

from .constants import APP_NAME
from .paths import get_identity_path
from .state import now_iso, write_json_atomic

logger = logging.getLogger(APP_NAME)


@dataclass(frozen=True)
class Identity:
    """An anonymous installation identity.

    Attributes:
        id (str): A random UUID4, stable for the life of the installation.
        created (str): ISO timestamp of first use.
    """

    id: str
    created: str


class IdentityStore:
    """Lazily creates and persists the anonymous identity.

    One instance is built per process and handed to whatever needs it (the
    signer, the status command) rather than read through a module global.
    """

    def __init__(self, path: Path | None = None):
        self.path = path or get_identity_path()
        self._cached: Identity | None = None
        self._lock = threading.Lock()

    def get(self) -> Identity:
        """Returns the identity, creating and saving one on first use.

        A corrupt identity file is replaced with a fresh identity.
        """
        with self._lock:
            if self._cached is None:
                self._cached = self._load() or self._create()
            return self._cached

    def _load(self) -> Identity | None:
        if not self.path.exists():
            return None
        try:
            data = json.loads(self.path.read_text())
            ident = Identity(id=str(uuid.UUID(data["id"])), created=str(data.get("created", "")))
        except (OSError, ValueError, KeyError, TypeError, AttributeError) as e:
            logger.warning(f"Corrupt identity file {self.path} ({e}). Regenerating.")
            return None
        return ident

    def _create(self) -> Identity:
        ident = Identity(id=str(uuid.uuid4()), created=now_iso())
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            write_json_atomic(self.path, {"id": ident.id, "created": ident.created})
        except OSError as e:
            # The id still works for this session; it just won't be stable.
            logger.warning(f"Could not persist identity to {self.path}: {e}")
        return ident
