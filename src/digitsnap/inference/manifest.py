from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Final

_SCHEMA_VERSIONS: Final[tuple[str, ...]] = ("v1",)
_REQUIRED: Final[tuple[str, ...]] = (
    "schema_version",
    "model_id",
    "arch",
    "version",
    "preprocess_hash",
)


@dataclass(frozen=True)
class ModelManifest:
    """Metadata stored next to ``model.pt`` describing how to build and feed it."""

    schema_version: str
    model_id: str
    arch: str
    n_classes: int
    version: str
    created_at: datetime
    preprocess_hash: str
    temperature: float

    @staticmethod
    def from_path(path: Path) -> ModelManifest:
        return ModelManifest.from_json(path.read_text(encoding="utf-8"))

    @staticmethod
    def from_json(s: str) -> ModelManifest:
        obj: object = json.loads(s)
        if not isinstance(obj, dict):
            raise ValueError("manifest must be a JSON object")
        return ModelManifest.from_dict({str(k): v for k, v in obj.items()})

    @staticmethod
    def from_dict(d: dict[str, object]) -> ModelManifest:
        fields = {k: str(d.get(k, "")).strip() for k in _REQUIRED}
        missing = [k for k, v in fields.items() if not v]
        if missing:
            raise ValueError(f"manifest is missing required fields: {', '.join(missing)}")
        if fields["schema_version"] not in _SCHEMA_VERSIONS:
            raise ValueError("unsupported manifest schema version")
        n_classes = int(str(d.get("n_classes", 10)))
        temperature = float(str(d.get("temperature", 1.0)))
        if n_classes < 2:
            raise ValueError("n_classes must be >= 2")
        if temperature <= 0.0:
            raise ValueError("temperature must be > 0")
        created_raw = str(d.get("created_at", "")).strip()
        created = datetime.fromisoformat(created_raw) if created_raw else datetime.now(UTC)
        return ModelManifest(
            schema_version=fields["schema_version"],
            model_id=fields["model_id"],
            arch=fields["arch"],
            n_classes=n_classes,
            version=fields["version"],
            created_at=created,
            preprocess_hash=fields["preprocess_hash"],
            temperature=temperature,
        )

    def to_dict(self) -> dict[str, object]:
        return {
            "schema_version": self.schema_version,
            "model_id": self.model_id,
            "arch": self.arch,
            "n_classes": self.n_classes,
            "version": self.version,
            "created_at": self.created_at.isoformat(),
            "preprocess_hash": self.preprocess_hash,
            "temperature": self.temperature,
        }
