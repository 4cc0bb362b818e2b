"""CapabilityLibrary — read-only lookup over the capability catalogue.

Default: read from the bundled JSON snapshot (capabilities.snapshot.json),
loaded lazily on first access. Callers may instead pass their own entries
(the API accepts a catalogue in the request body).

A lookup miss is logged and answered with None; the pipeline never fails
because an id is unknown to the catalogue.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Iterable

from pydantic import Field, ValidationError

from workflow_builder_agent.pipeline.models import ConfigField, WireModel

logger = logging.getLogger("workflow_builder_agent.catalogue")

BUNDLED_SNAPSHOT = Path(__file__).parent / "capabilities.snapshot.json"


class CapabilityDescriptor(WireModel):
    id: str
    name: str
    type: str = "action"  # trigger | action | transform
    category: str = ""
    description: str = ""
    config_schema: dict[str, ConfigField] = Field(default_factory=dict)
    outputs: list[dict[str, Any]] = Field(default_factory=list)


class CapabilityLibrary:
    """Read-only id → CapabilityDescriptor lookup.

    Lifecycle:
      - Snapshot is loaded lazily on first lookup.
      - Entries that fail validation are skipped with a warning.
      - Lookups fall back to a case-insensitive match before reporting a miss.
    """

    def __init__(
        self,
        snapshot_path: Path | None = None,
        entries: Iterable[dict[str, Any] | CapabilityDescriptor] | None = None,
    ) -> None:
        self._snapshot_path = snapshot_path or BUNDLED_SNAPSHOT
        self._index: dict[str, CapabilityDescriptor] = {}
        self._lower_index: dict[str, str] = {}
        self._loaded = False
        if entries is not None:
            self._ingest(entries, source="caller")
            self._loaded = True

    @classmethod
    def from_entries(cls, entries: Iterable[dict[str, Any] | CapabilityDescriptor]) -> CapabilityLibrary:
        return cls(entries=entries)

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    def _ingest(self, entries: Iterable[dict[str, Any] | CapabilityDescriptor], source: str) -> None:
        for raw in entries:
            if isinstance(raw, CapabilityDescriptor):
                entry = raw
            else:
                try:
                    entry = CapabilityDescriptor.model_validate(raw)
                except ValidationError as exc:
                    logger.warning(
                        "[CapabilityLibrary] Skipping invalid %s entry %r: %s",
                        source, raw.get("id") if isinstance(raw, dict) else raw, exc.errors()[:1],
                    )
                    continue
            self._index[entry.id] = entry
            self._lower_index[entry.id.lower()] = entry.id

    def _load(self) -> None:
        """Load snapshot into the memory index. Idempotent; called lazily."""
        if self._loaded:
            return
        self._loaded = True

        if not self._snapshot_path.exists():
            logger.warning("[CapabilityLibrary] Snapshot not found at %s", self._snapshot_path)
            return

        raw = json.loads(self._snapshot_path.read_text(encoding="utf-8"))
        entries = raw.values() if isinstance(raw, dict) else raw
        self._ingest(entries, source="snapshot")
        logger.info(
            "[CapabilityLibrary] Loaded %d capabilities from %s",
            len(self._index), self._snapshot_path.name,
        )

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def get(self, capability_id: str) -> CapabilityDescriptor | None:
        """Return the descriptor for capability_id, or None (logged) when absent."""
        self._load()
        entry = self._index.get(capability_id)
        if entry is not None:
            return entry
        canonical = self._lower_index.get((capability_id or "").lower())
        if canonical is not None:
            logger.debug("[CapabilityLibrary] Case-insensitive match %r → %r", capability_id, canonical)
            return self._index[canonical]
        logger.warning("[CapabilityLibrary] Capability %r not found in catalogue", capability_id)
        return None

    def contains(self, capability_id: str) -> bool:
        self._load()
        return capability_id in self._index or (capability_id or "").lower() in self._lower_index

    def all(self) -> list[CapabilityDescriptor]:
        self._load()
        return list(self._index.values())

    def __len__(self) -> int:
        self._load()
        return len(self._index)

    # ------------------------------------------------------------------
    # Prompt rendering
    # ------------------------------------------------------------------

    def prompt_view(self) -> str:
        """Render the catalogue as compact text blocks for collaborator prompts."""
        blocks = []
        for entry in self.all():
            lines = [f"{entry.type.upper()}: {entry.name} (ID: {entry.id})", f"  {entry.description}"]
            fields = [k for k, f in entry.config_schema.items() if not f.is_credential_bound]
            if fields:
                lines.append(f"  Config: {', '.join(fields)}")
            if entry.outputs:
                lines.append(f"  Outputs: {', '.join(o.get('name', '') for o in entry.outputs)}")
            blocks.append("\n".join(lines))
        return "\n\n".join(blocks)
