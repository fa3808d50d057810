"""State store — JSON snapshot of every epoch, keyed by admin.

The store writes the whole snapshot atomically (temp file + rename) so a
crash mid-write leaves the previous snapshot intact.
"""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Dict, Optional

from epochshare.models.epoch import Epoch


class StateStore:
    """Persists and restores epochs.

    Usage:
        store = StateStore(Path("data/state.json"))
        store.save_epochs(epochs)
        epochs = store.load_epochs()
    """

    SCHEMA_VERSION = 1

    def __init__(self, storage_path: Optional[Path] = None) -> None:
        self._storage_path = storage_path

    @property
    def storage_path(self) -> Optional[Path]:
        return self._storage_path

    def load_epochs(self) -> Dict[str, Epoch]:
        if self._storage_path is None or not self._storage_path.exists():
            return {}
        data = json.loads(self._storage_path.read_text(encoding="utf-8"))
        version = data.get("schema_version")
        if version != self.SCHEMA_VERSION:
            raise ValueError(
                f"Unsupported state schema version {version!r} "
                f"(expected {self.SCHEMA_VERSION})"
            )
        epochs = {}
        for admin, raw in data.get("epochs", {}).items():
            epoch = Epoch.from_dict(raw)
            if epoch.admin != admin:
                raise ValueError(
                    f"State corrupted: epoch keyed by {admin} belongs to {epoch.admin}"
                )
            epochs[admin] = epoch
        return epochs

    def save_epochs(self, epochs: Dict[str, Epoch]) -> None:
        if self._storage_path is None:
            return
        payload = {
            "schema_version": self.SCHEMA_VERSION,
            "epochs": {admin: e.to_dict() for admin, e in sorted(epochs.items())},
        }
        self._storage_path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self._storage_path.with_suffix(self._storage_path.suffix + ".tmp")
        tmp.write_text(json.dumps(payload, indent=2, sort_keys=True), encoding="utf-8")
        os.replace(tmp, self._storage_path)
