from __future__ import annotations

import base64
import io
from dataclasses import replace

from _engines import FixedModel, make_ready_engine, one_hot_probs
from fastapi.testclient import TestClient
from PIL import Image

from digitsnap.api.app import create_app
from digitsnap.config import ModelConfig, SecurityConfig, Settings
from digitsnap.inference.engine import InferenceEngine


def _png_bytes(size: int = 64) -> bytes:
    img = Image.new("L", (size, size), 255)
    for y in range(16, 48):
        for x in range(28, 36):
            img.putpixel((x, y), 0)
    b = io.BytesIO()
    img.save(b, format="PNG")
    return b.getvalue()


def _client(settings: Settings, probs: list[float] | None = None) -> TestClient:
    if probs is None:
        app = create_app(settings, engine_provider=lambda: InferenceEngine(settings))
    else:
        eng = make_ready_engine(settings, FixedModel(probs))
        app = create_app(settings, engine_provider=lambda: eng)
    return TestClient(app)


def test_health_ready_and_model_routes() -> None:
    s = Settings.defaults()
    client = _client(s, one_hot_probs(2, 0.8))
    assert client.get("/healthz").json() == {"status": "ok"}
    ready = client.get("/readyz").json()
    assert ready["status"] == "ready" and ready["model_id"] == "test_model"
    active = client.get("/v1/models/active").json()
    assert active["model_loaded"] is True
    assert active["arch"] == "resnet18"


def test_not_ready_reports_state() -> None:
    client = _client(Settings.defaults())
    assert client.get("/readyz").json()["status"] == "not_ready"
    assert client.get("/v1/models/active").json() == {"model_loaded": False, "model_id": None}


def test_classify_success_returns_label_and_image() -> None:
    client = _client(Settings.defaults(), one_hot_probs(7, 0.93))
    r = client.post("/v1/classify", files={"file": ("d.png", _png_bytes(), "image/png")})
    assert r.status_code == 200
    body = r.json()
    assert body["status"] == "digit"
    assert body["digit"] == 7
    assert body["label"] == "Predicted digit: 7"
    assert body["confidence_text"] == "Confidence: 93.00%"
    png = base64.b64decode(body["preprocessed_png_b64"])
    assert Image.open(io.BytesIO(png)).size in ((28, 28), (112, 112))
    assert "x-request-id" in {k.lower() for k in r.headers}


def test_classify_not_a_digit() -> None:
    client = _client(Settings.defaults(), [0.1] * 10)
    r = client.post(
        "/v1/classify?visualize=false",
        files={"file": ("d.png", _png_bytes(), "image/png")},
    )
    assert r.status_code == 200
    body = r.json()
    assert body["status"] == "not_a_digit"
    assert body["digit"] is None
    assert body["preprocessed_png_b64"] is None


def test_classify_without_model_is_503() -> None:
    client = _client(Settings.defaults())
    r = client.post("/v1/classify", files={"file": ("d.png", _png_bytes(), "image/png")})
    assert r.status_code == 503
    assert r.json()["code"] == "model_not_loaded"


def test_classify_rejects_bad_inputs() -> None:
    client = _client(Settings.defaults(), one_hot_probs(1, 0.9))
    r1 = client.post("/v1/classify", files={"file": ("x.txt", b"hello", "text/plain")})
    assert r1.status_code == 415
    r2 = client.post("/v1/classify", files={"file": ("x.png", b"not a png", "image/png")})
    assert r2.status_code == 400
    assert r2.json()["code"] == "invalid_image"
    r3 = client.post(
        "/v1/classify",
        files={"file": ("d.png", _png_bytes(), "image/png")},
        data={"extra": "1"},
    )
    assert r3.status_code == 400
    assert r3.json()["code"] == "malformed_multipart"


def test_classify_dimension_limit() -> None:
    s = replace(Settings.defaults(), model=ModelConfig(max_image_side_px=32))
    client = _client(s, one_hot_probs(1, 0.9))
    r = client.post("/v1/classify", files={"file": ("d.png", _png_bytes(64), "image/png")})
    assert r.status_code == 400
    assert r.json()["code"] == "bad_dimensions"


def test_api_key_required_when_configured() -> None:
    s = replace(Settings.defaults(), security=SecurityConfig(api_key="k1"))
    client = _client(s, one_hot_probs(1, 0.9))
    files = {"file": ("d.png", _png_bytes(), "image/png")}
    assert client.post("/v1/classify", files=files).status_code == 401
    ok = client.post("/v1/classify", files=files, headers={"X-Api-Key": "k1"})
    assert ok.status_code == 200
