from __future__ import annotations

import json
from pathlib import Path

from .errors import PromptRegistryError
from .materialize import write_json_atomic
from .models import InstalledBundleRecord
from .paths import PathResolver

RECORDS_FILENAME = "installed.json"
SCHEMA_VERSION = 1


class RecordStore:
    """``installed.json``: the authoritative list of installed bundles for one scope."""

    def __init__(self, path: Path) -> None:
        self.path = path

    @classmethod
    def for_scope(cls, resolver: PathResolver, scope: str) -> RecordStore:
        return cls(resolver.storage_root(scope) / RECORDS_FILENAME)

    def load(self) -> dict[str, InstalledBundleRecord]:
        if not self.path.exists():
            return {}
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
        except ValueError as e:
            raise PromptRegistryError(f"Install records {self.path} are not valid JSON: {e}") from e
        bundles = raw.get("bundles") if isinstance(raw, dict) else None
        if not isinstance(bundles, dict):
            return {}
        out: dict[str, InstalledBundleRecord] = {}
        for bundle_id, item in sorted(bundles.items()):
            if isinstance(item, dict):
                out[bundle_id] = InstalledBundleRecord.from_dict({**item, "bundle_id": bundle_id})
        return out

    def get(self, bundle_id: str) -> InstalledBundleRecord | None:
        return self.load().get(bundle_id)

    def put(self, record: InstalledBundleRecord) -> None:
        records = self.load()
        records[record.bundle_id] = record
        self._save(records)

    def remove(self, bundle_id: str) -> bool:
        records = self.load()
        if records.pop(bundle_id, None) is None:
            return False
        self._save(records)
        return True

    def _save(self, records: dict[str, InstalledBundleRecord]) -> None:
        payload = {
            "schema_version": SCHEMA_VERSION,
            "bundles": {bid: records[bid].to_dict() for bid in sorted(records)},
        }
        write_json_atomic(self.path, payload)
