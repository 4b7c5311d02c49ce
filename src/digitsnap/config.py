from __future__ import annotations

import os
import tomllib
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Final

_DEFAULT_CONFIG_PATH: Final[Path] = Path("config/digitsnap.toml")


@dataclass(frozen=True)
class AppConfig:
    threads: int = 1
    port: int = 8081


@dataclass(frozen=True)
class PipelineConfig:
    threshold: int = 128
    target_size: int = 28
    reject_below_percent: float = 20.0
    confidence_decimals: int = 2
    visualize_max_kb: int = 16


@dataclass(frozen=True)
class ModelConfig:
    model_dir: Path = Path("./models")
    active_model: str = "mnist_resnet18_v1"
    predict_timeout_seconds: int = 5
    max_image_mb: int = 8
    max_image_side_px: int = 8192


@dataclass(frozen=True)
class SecurityConfig:
    # Empty string disables the check
    api_key: str = ""


@dataclass(frozen=True)
class Settings:
    app: AppConfig
    pipeline: PipelineConfig
    model: ModelConfig
    security: SecurityConfig

    @staticmethod
    def _toml_path() -> Path:
        env_val = os.getenv("DIGITSNAP_CONFIG")
        if env_val:
            return Path(env_val)
        return _DEFAULT_CONFIG_PATH

    @classmethod
    def defaults(cls) -> Settings:
        return cls(
            app=AppConfig(),
            pipeline=PipelineConfig(),
            model=ModelConfig(),
            security=SecurityConfig(),
        )

    @classmethod
    def load(cls) -> Settings:
        # Load env first, then override from TOML if present.
        base = cls(
            app=_load_app_from_env(),
            pipeline=_load_pipeline_from_env(),
            model=_load_model_from_env(),
            security=_load_security_from_env(),
        )
        cfg_path = cls._toml_path()
        if not cfg_path.exists():
            _validate_pipeline(base.pipeline)
            return base
        try:
            raw: object = tomllib.loads(cfg_path.read_text(encoding="utf-8"))
        except OSError as exc:
            raise RuntimeError(f"Failed to read config TOML: {cfg_path}") from exc
        except tomllib.TOMLDecodeError as exc:
            raise RuntimeError(f"Invalid TOML config: {cfg_path}") from exc
        out = cls(
            app=_merge_app(base.app, _toml_table(raw, "app")),
            pipeline=_merge_pipeline(base.pipeline, _toml_table(raw, "pipeline")),
            model=_merge_model(base.model, _toml_table(raw, "model")),
            security=_merge_security(base.security, _toml_table(raw, "security")),
        )
        _validate_pipeline(out.pipeline)
        return out


def _load_app_from_env() -> AppConfig:
    a = AppConfig()
    th = os.getenv("APP__THREADS")
    pt = os.getenv("APP__PORT")
    if th is not None and th.isdigit():
        a = replace(a, threads=int(th))
    if pt is not None and pt.isdigit():
        p = int(pt)
        if not (1 <= p <= 65535):
            raise RuntimeError("APP__PORT out of range")
        a = replace(a, port=p)
    return a


def _load_pipeline_from_env() -> PipelineConfig:
    c = PipelineConfig()
    th = os.getenv("PIPELINE__THRESHOLD")
    ts = os.getenv("PIPELINE__TARGET_SIZE")
    rj = os.getenv("PIPELINE__REJECT_BELOW_PERCENT")
    dc = os.getenv("PIPELINE__CONFIDENCE_DECIMALS")
    vk = os.getenv("PIPELINE__VISUALIZE_MAX_KB")
    if th is not None:
        c = replace(c, threshold=int(th))
    if ts is not None:
        c = replace(c, target_size=int(ts))
    if rj is not None:
        c = replace(c, reject_below_percent=float(rj))
    if dc is not None:
        c = replace(c, confidence_decimals=int(dc))
    if vk is not None:
        c = replace(c, visualize_max_kb=int(vk))
    return c


def _load_model_from_env() -> ModelConfig:
    m = ModelConfig()
    md = os.getenv("MODEL__MODEL_DIR")
    am = os.getenv("MODEL__ACTIVE_MODEL")
    to = os.getenv("MODEL__PREDICT_TIMEOUT_SECONDS")
    mb = os.getenv("MODEL__MAX_IMAGE_MB")
    mx = os.getenv("MODEL__MAX_IMAGE_SIDE_PX")
    if md:
        m = replace(m, model_dir=Path(md))
    if am:
        m = replace(m, active_model=am)
    if to is not None:
        m = replace(m, predict_timeout_seconds=int(to))
    if mb is not None:
        m = replace(m, max_image_mb=int(mb))
    if mx is not None:
        m = replace(m, max_image_side_px=int(mx))
    return m


def _load_security_from_env() -> SecurityConfig:
    s = SecurityConfig()
    key = os.getenv("SECURITY__API_KEY")
    if key is not None:
        s = replace(s, api_key=key)
    return s


def _merge_app(base: AppConfig, data: dict[str, object]) -> AppConfig:
    out = base
    if "threads" in data:
        out = replace(out, threads=int(str(data["threads"])))
    if "port" in data:
        port = int(str(data["port"]))
        if not (1 <= port <= 65535):
            raise RuntimeError("port out of range")
        out = replace(out, port=port)
    return out


def _merge_pipeline(base: PipelineConfig, data: dict[str, object]) -> PipelineConfig:
    out = base
    if "threshold" in data:
        out = replace(out, threshold=int(str(data["threshold"])))
    if "target_size" in data:
        out = replace(out, target_size=int(str(data["target_size"])))
    if "reject_below_percent" in data:
        out = replace(out, reject_below_percent=float(str(data["reject_below_percent"])))
    if "confidence_decimals" in data:
        out = replace(out, confidence_decimals=int(str(data["confidence_decimals"])))
    if "visualize_max_kb" in data:
        out = replace(out, visualize_max_kb=int(str(data["visualize_max_kb"])))
    return out


def _merge_model(base: ModelConfig, data: dict[str, object]) -> ModelConfig:
    out = base
    if "model_dir" in data:
        out = replace(out, model_dir=Path(str(data["model_dir"])))
    if "active_model" in data:
        out = replace(out, active_model=str(data["active_model"]))
    if "predict_timeout_seconds" in data:
        out = replace(out, predict_timeout_seconds=int(str(data["predict_timeout_seconds"])))
    if "max_image_mb" in data:
        out = replace(out, max_image_mb=int(str(data["max_image_mb"])))
    if "max_image_side_px" in data:
        out = replace(out, max_image_side_px=int(str(data["max_image_side_px"])))
    return out


def _merge_security(base: SecurityConfig, data: dict[str, object]) -> SecurityConfig:
    out = base
    api_key_val = data.get("api_key")
    if isinstance(api_key_val, str):
        out = replace(out, api_key=api_key_val)
    enabled = data.get("api_key_enabled")
    if isinstance(enabled, bool) and not enabled:
        out = replace(out, api_key="")
    return out


def _toml_table(raw: object, key: str) -> dict[str, object]:
    if isinstance(raw, dict):
        tab: object = raw.get(key, {})
        if isinstance(tab, dict):
            return {str(k): v for k, v in tab.items()}
    return {}


def _validate_pipeline(p: PipelineConfig) -> None:
    if not (0 <= p.threshold <= 255):
        raise RuntimeError("pipeline threshold must be within [0, 255]")
    if p.target_size < 1:
        raise RuntimeError("pipeline target_size must be >= 1")
    if p.confidence_decimals < 0:
        raise RuntimeError("pipeline confidence_decimals must be >= 0")


@dataclass(frozen=True)
class Limits:
    max_bytes: int
    max_side_px: int

    @staticmethod
    def from_settings(s: Settings) -> Limits:
        return Limits(
            max_bytes=int(s.model.max_image_mb) * 1024 * 1024,
            max_side_px=int(s.model.max_image_side_px),
        )
