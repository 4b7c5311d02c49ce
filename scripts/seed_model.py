from __future__ import annotations

import argparse
import json
import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

import torch

from digitsnap.inference.engine import build_fresh_state_dict
from digitsnap.inference.manifest import ModelManifest
from digitsnap.preprocess import PreprocessOptions, preprocess_signature


@dataclass(frozen=True)
class SeedArgs:
    model_id: str
    to_dir: Path
    target_size: int
    force: bool


def parse_args(argv: list[str] | None = None) -> SeedArgs:
    ap = argparse.ArgumentParser(description="Write an untrained ResNet-18 model and manifest")
    ap.add_argument("--model-id", default="mnist_resnet18_v1", help="Model id folder name")
    ap.add_argument("--to-dir", default="./models", help="Models root directory")
    ap.add_argument("--target-size", type=int, default=28, help="Input side length")
    ap.add_argument("--force", action="store_true", help="Overwrite existing artifacts")
    a = ap.parse_args(argv)
    return SeedArgs(
        model_id=str(a.model_id),
        to_dir=Path(str(a.to_dir)),
        target_size=int(a.target_size),
        force=bool(a.force),
    )


def write_seed(args: SeedArgs) -> Path:
    dst = args.to_dir / args.model_id
    model_path = dst / "model.pt"
    manifest_path = dst / "manifest.json"
    if not args.force and (model_path.exists() or manifest_path.exists()):
        raise SystemExit(f"Artifacts already present in {dst.as_posix()} (use --force)")
    manifest = ModelManifest(
        schema_version="v1",
        model_id=args.model_id,
        arch="resnet18",
        n_classes=10,
        version="0.0.0",
        created_at=datetime.now(UTC),
        preprocess_hash=preprocess_signature(PreprocessOptions(target_size=args.target_size)),
        temperature=1.0,
    )
    dst.mkdir(parents=True, exist_ok=True)
    torch.save(build_fresh_state_dict("resnet18", 10), model_path.as_posix())
    manifest_path.write_text(json.dumps(manifest.to_dict(), indent=2), encoding="utf-8")
    logging.getLogger("digitsnap").info(
        "seed_model_written model_id=%s dst=%s", args.model_id, dst.as_posix()
    )
    return dst


def main(argv: list[str] | None = None) -> None:  # pragma: no cover - tiny glue
    from digitsnap.logging import init_logging

    init_logging()
    write_seed(parse_args(argv))


if __name__ == "__main__":
    main()
