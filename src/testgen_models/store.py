"""Filesystem layout for model artifacts."""

from __future__ import annotations

import os
import tempfile
from pathlib import Path

from .models import ModelDescriptor, PrecisionLevel

STAGING_PREFIX = ".staging-"
BACKUP_SUFFIX = ".backup"


class ArtifactStore:
    """Knows where a model's files live under the base directory.

    Layout::

        <base_dir>/<model_name>/pytorch_model.bin
        <base_dir>/<model_name>/config.json
        <base_dir>/<model_name>/tokenizer.json
        <base_dir>/<model_name>/pytorch_model.fp16.bin   (derived variants)
        <base_dir>/<model_name>/pytorch_model.bin.backup (corrupt evidence)
        <base_dir>/.staging-XXXX/                        (in-progress downloads)
    """

    def __init__(self, base_dir: Path) -> None:
        self.base_dir = Path(base_dir)

    def ensure_base_dir(self) -> Path:
        self.base_dir.mkdir(parents=True, exist_ok=True)
        return self.base_dir

    def model_dir(self, descriptor: ModelDescriptor) -> Path:
        root = descriptor.storage_root or self.base_dir
        return Path(root) / descriptor.name

    def file_path(self, descriptor: ModelDescriptor, filename: str) -> Path:
        return self.model_dir(descriptor) / filename

    def weights_path(self, descriptor: ModelDescriptor) -> Path:
        return self.file_path(descriptor, descriptor.weights_file)

    def variant_path(self, descriptor: ModelDescriptor, precision: PrecisionLevel) -> Path:
        """Path of a derived variant, e.g. ``pytorch_model.int8.bin``."""
        stem = Path(descriptor.weights_file).stem
        return self.model_dir(descriptor) / f"{stem}.{precision.suffix}.bin"

    def exists(self, path: Path) -> bool:
        return path.is_file()

    def size(self, path: Path) -> int:
        """Size in bytes, or -1 when the file is missing."""
        try:
            return path.stat().st_size
        except FileNotFoundError:
            return -1

    def is_plausible(self, path: Path, min_bytes: int) -> bool:
        return self.size(path) > min_bytes

    def weights_plausible(self, descriptor: ModelDescriptor, min_bytes: int) -> bool:
        return self.is_plausible(self.weights_path(descriptor), min_bytes)

    def missing_files(self, descriptor: ModelDescriptor) -> list[str]:
        return [f for f in descriptor.required_files if not self.exists(self.file_path(descriptor, f))]

    def is_complete(self, descriptor: ModelDescriptor, min_weights_bytes: int) -> bool:
        """All required files present and the weights above the plausibility floor."""
        return not self.missing_files(descriptor) and self.weights_plausible(descriptor, min_weights_bytes)

    def backup(self, path: Path) -> Path:
        """Move ``path`` aside as ``<name>.backup`` without clobbering older evidence."""
        target = path.with_name(path.name + BACKUP_SUFFIX)
        n = 0
        while target.exists():
            n += 1
            target = path.with_name(f"{path.name}{BACKUP_SUFFIX}.{n}")
        os.replace(path, target)
        return target

    def create_staging_dir(self, descriptor: ModelDescriptor) -> Path:
        """Fresh private staging directory on the same filesystem as the model."""
        root = Path(descriptor.storage_root or self.base_dir)
        root.mkdir(parents=True, exist_ok=True)
        return Path(tempfile.mkdtemp(prefix=STAGING_PREFIX, dir=root))

    def list_variants(self, descriptor: ModelDescriptor) -> dict[PrecisionLevel, Path]:
        found: dict[PrecisionLevel, Path] = {}
        for level in PrecisionLevel:
            if level is PrecisionLevel.FP32:
                continue
            path = self.variant_path(descriptor, level)
            if path.is_file():
                found[level] = path
        return found
