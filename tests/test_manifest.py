from __future__ import annotations

from datetime import UTC, datetime

import pytest

from digitsnap.inference.manifest import ModelManifest


def _valid() -> dict[str, object]:
    return {
        "schema_version": "v1",
        "model_id": "mnist_resnet18_v1",
        "arch": "resnet18",
        "n_classes": 10,
        "version": "1.0.0",
        "created_at": datetime.now(UTC).isoformat(),
        "preprocess_hash": "v1/orient+gray+invbin+bicubic28+unit",
        "temperature": 1.0,
    }


def test_manifest_round_trip_dict() -> None:
    man = ModelManifest.from_dict(_valid())
    assert man.model_id == "mnist_resnet18_v1"
    assert man.n_classes == 10
    assert ModelManifest.from_dict(man.to_dict()) == man


@pytest.mark.parametrize(
    ("key", "value"),
    [
        ("model_id", ""),
        ("schema_version", "v9"),
        ("n_classes", 1),
        ("temperature", 0.0),
    ],
)
def test_manifest_invalid_values_raise(key: str, value: object) -> None:
    d = _valid()
    d[key] = value
    with pytest.raises(ValueError):
        ModelManifest.from_dict(d)


def test_manifest_from_json_requires_object() -> None:
    with pytest.raises(ValueError):
        ModelManifest.from_json("[1, 2, 3]")
