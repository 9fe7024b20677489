"""Configuration loading and startup validation."""

from __future__ import annotations

import json
import sys
from pathlib import Path
from typing import Any, Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings

from .models import ModelCatalog, PrecisionLevel


class AcquisitionSettings(BaseSettings):
    model_config = {"env_prefix": "TESTGEN_MODELS_ACQUISITION_"}

    min_weights_bytes: int = Field(
        default=1_000_000,
        description="Weights files at or below this size are treated as corrupt.",
    )
    max_attempts: int = Field(default=3, ge=1, description="Download attempts per file.")
    backoff_initial: float = Field(default=5.0, ge=0, description="Seconds before the first retry.")
    backoff_factor: float = Field(default=2.0, ge=1, description="Backoff multiplier per failed attempt.")
    connect_timeout: float = Field(default=30.0, gt=0)
    read_timeout: float = Field(default=60.0, gt=0)
    chunk_size: int = Field(default=1024 * 1024, gt=0, description="Streaming chunk size in bytes.")
    user_agent: str = "testgen-models/0.1"


class PrecisionSettings(BaseSettings):
    model_config = {"env_prefix": "TESTGEN_MODELS_PRECISION_"}

    enabled: bool = Field(default=True, description="Load a reduced-precision variant of language models.")
    level: PrecisionLevel = PrecisionLevel.FP16
    converter: Literal["numpy", "subprocess"] = Field(
        default="numpy",
        description="Conversion toolchain (in-process numpy | separate interpreter).",
    )
    chunk_elements: int = Field(default=1 << 20, ge=64, description="Elements per quantized tensor.")
    subprocess_timeout: float = Field(default=1800.0, gt=0)

    @field_validator("level", mode="before")
    @classmethod
    def _parse_level(cls, value: Any) -> PrecisionLevel:
        return PrecisionLevel.parse(value)


class LoadSettings(BaseSettings):
    model_config = {"env_prefix": "TESTGEN_MODELS_LOAD_"}

    wait_timeout: float = Field(default=30.0, gt=0, description="Bound on waiting for another caller's load.")
    smoke_test_prompt: str = "Hello, this is a test"
    smoke_test_max_tokens: int = Field(default=20, gt=0)
    smoke_test_timeout: float = Field(default=60.0, gt=0)
    shutdown_timeout: float = Field(default=120.0, ge=0)
    startup_models: list[str] = Field(default_factory=list, description="Model keys warmed up at startup.")


class EngineSettings(BaseSettings):
    model_config = {"env_prefix": "TESTGEN_MODELS_ENGINE_"}

    num_threads: int = Field(default=1, ge=1)
    use_gpu: bool = False
    memory_limit_mb: int = Field(default=4096, gt=0)
    device: str = "cpu"


class Settings(BaseSettings):
    model_config = {"env_prefix": "TESTGEN_MODELS_"}

    base_dir: Path = Field(
        default=Path("models"),
        description="Root directory holding one sub-directory per model.",
    )
    catalog_path: Path | None = Field(
        default=None,
        description="Path to a JSON model catalog; the built-in catalog is used when unset.",
    )
    language_model: str = Field(default="gpt2-medium", description="Name of the text-generation model.")
    embeddings_model: str = "all-MiniLM-L6-v2"
    generation_enabled: bool = True
    log_level: str = "INFO"
    acquisition: AcquisitionSettings = Field(default_factory=AcquisitionSettings)
    precision: PrecisionSettings = Field(default_factory=PrecisionSettings)
    loading: LoadSettings = Field(default_factory=LoadSettings)
    engine: EngineSettings = Field(default_factory=EngineSettings)


def load_catalog(path: Path | None) -> ModelCatalog:
    """Load and validate the model catalog, falling back to the built-in one."""
    if path is None:
        return ModelCatalog()
    if not path.exists():
        print(f"FATAL: catalog file not found: {path}", file=sys.stderr)
        sys.exit(1)
    with open(path) as f:
        data = json.load(f)
    if "MODELS" not in data:
        print(f"FATAL: missing required key 'MODELS' in {path}", file=sys.stderr)
        sys.exit(1)
    return ModelCatalog(data["MODELS"])


def get_settings() -> Settings:
    """Create and validate settings. Fails fast on invalid state."""
    return Settings()
