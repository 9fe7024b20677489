"""Model catalog and core data types."""

from __future__ import annotations

from enum import Enum
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, field_validator

ModelKey = str


class Role(str, Enum):
    LANGUAGE = "language"
    EMBEDDINGS = "embeddings"


class ModelStatus(str, Enum):
    NOT_LOADED = "NOT_LOADED"
    LOADING = "LOADING"
    LOADED = "LOADED"
    FAILED = "FAILED"


class PrecisionLevel(str, Enum):
    FP32 = "FP32"
    FP16 = "FP16"
    INT8 = "INT8"
    INT4 = "INT4"

    @property
    def bits(self) -> int:
        return {"FP32": 32, "FP16": 16, "INT8": 8, "INT4": 4}[self.value]

    @property
    def suffix(self) -> str:
        return self.value.lower()

    @classmethod
    def parse(cls, value: str | PrecisionLevel) -> PrecisionLevel:
        if isinstance(value, PrecisionLevel):
            return value
        try:
            return cls(value.strip().upper())
        except ValueError:
            choices = ", ".join(level.value for level in cls)
            raise ValueError(f"Unknown precision level {value!r} (expected one of {choices})") from None


def model_key(role: Role | str, name: str) -> ModelKey:
    """Derive the registry key for a model, e.g. ``language-gpt2-medium``."""
    role_value = role.value if isinstance(role, Role) else role
    return f"{role_value}-{name}"


class ModelDescriptor(BaseModel):
    """Immutable description of a model and the files it needs."""

    model_config = ConfigDict(frozen=True)

    name: str
    role: Role
    source_url: str
    weights_file: str = "pytorch_model.bin"
    config_file: str = "config.json"
    tokenizer_file: str = "tokenizer.json"
    storage_root: Path | None = None

    @field_validator("name")
    @classmethod
    def _name_is_path_safe(cls, value: str) -> str:
        if not value or "/" in value or "\\" in value or value in (".", ".."):
            raise ValueError(f"Model name {value!r} cannot be used as a directory name")
        return value

    @field_validator("source_url")
    @classmethod
    def _strip_trailing_slash(cls, value: str) -> str:
        return value.rstrip("/")

    @property
    def key(self) -> ModelKey:
        return model_key(self.role, self.name)

    @property
    def required_files(self) -> tuple[str, ...]:
        """Weights first, then the auxiliary files."""
        return (self.weights_file, self.config_file, self.tokenizer_file)

    @property
    def auxiliary_files(self) -> tuple[str, ...]:
        return (self.config_file, self.tokenizer_file)

    def file_url(self, filename: str) -> str:
        return f"{self.source_url}/{filename}"


class QuantizedVariant(BaseModel):
    """A reduced-precision copy of a model's weights."""

    model_config = ConfigDict(frozen=True)

    source_key: ModelKey
    precision: PrecisionLevel
    path: Path
    size_bytes: int
    source_size_bytes: int

    @property
    def reduction_ratio(self) -> float:
        if self.size_bytes == 0:
            return 0.0
        return self.source_size_bytes / self.size_bytes


DEFAULT_MODELS: list[dict[str, Any]] = [
    {
        "name": "gpt2-medium",
        "role": "language",
        "source_url": "https://huggingface.co/gpt2-medium/resolve/main",
    },
    {
        "name": "all-MiniLM-L6-v2",
        "role": "embeddings",
        "source_url": "https://huggingface.co/sentence-transformers/all-MiniLM-L6-v2/resolve/main",
    },
]


class ModelCatalog:
    """In-memory catalog of model descriptors loaded from static configuration."""

    def __init__(self, raw_models: list[dict[str, Any]] | None = None) -> None:
        entries = DEFAULT_MODELS if raw_models is None else raw_models
        self.models: list[ModelDescriptor] = [ModelDescriptor.model_validate(m) for m in entries]
        self._by_key: dict[ModelKey, ModelDescriptor] = {}
        for m in self.models:
            if m.key in self._by_key:
                raise ValueError(f"Duplicate model key in catalog: {m.key}")
            self._by_key[m.key] = m

    def by_key(self, key: ModelKey) -> ModelDescriptor | None:
        return self._by_key.get(key)

    def by_name(self, name: str, role: Role | str | None = None) -> ModelDescriptor | None:
        for m in self.models:
            if m.name == name and (role is None or m.role == Role(role)):
                return m
        return None

    def by_role(self, role: Role | str) -> list[ModelDescriptor]:
        return [m for m in self.models if m.role == Role(role)]

    def keys(self) -> list[ModelKey]:
        return [m.key for m in self.models]

    def __contains__(self, key: object) -> bool:
        return key in self._by_key

    def __len__(self) -> int:
        return len(self.models)
