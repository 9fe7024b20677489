"""Derives FP16/INT8/INT4 variants of model weights."""

from __future__ import annotations

import json
import os
import struct
import subprocess
import sys
import threading
import uuid
from collections.abc import Iterator, Sequence
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

import numpy as np

from .acquisition import AcquisitionPipeline
from .exceptions import ModelNotConfiguredError, QuantizationError
from .logging import log_event
from .models import ModelCatalog, ModelDescriptor, ModelKey, PrecisionLevel, QuantizedVariant
from .store import ArtifactStore

MAGIC = b"TGQV"
FORMAT_VERSION = 1
_HEADER_LEN = struct.Struct("<I")
_FP16_MAX = float(np.finfo(np.float16).max)
MIN_CHUNK_ELEMENTS = 64

LEVEL_DESCRIPTIONS: dict[str, str] = {
    "FP32": "Full precision (32-bit floating point)",
    "FP16": "Half precision (16-bit floating point)",
    "INT8": "8-bit integer quantization (4x smaller)",
    "INT4": "4-bit integer quantization (8x smaller)",
}


@runtime_checkable
class Converter(Protocol):
    """External toolchain boundary: write ``target`` at ``precision`` from ``source``."""

    def convert(self, source: Path, target: Path, precision: PrecisionLevel) -> None: ...


# ---------------------------------------------------------------------------
# Variant container format
# ---------------------------------------------------------------------------

def _write_header(f: Any, header: dict[str, Any]) -> None:
    raw = json.dumps(header, separators=(",", ":")).encode("utf-8")
    f.write(MAGIC)
    f.write(_HEADER_LEN.pack(len(raw)))
    f.write(raw)


def is_variant(path: Path) -> bool:
    with open(path, "rb") as f:
        return f.read(len(MAGIC)) == MAGIC


def read_variant_header(path: Path) -> tuple[dict[str, Any], int]:
    """Return the JSON header and the payload offset of a variant file."""
    with open(path, "rb") as f:
        if f.read(len(MAGIC)) != MAGIC:
            raise ValueError(f"{path} is not a quantized variant")
        (length,) = _HEADER_LEN.unpack(f.read(_HEADER_LEN.size))
        header = json.loads(f.read(length).decode("utf-8"))
    return header, len(MAGIC) + _HEADER_LEN.size + length


def _chunk_bounds(elements: int, chunk_elements: int) -> Iterator[tuple[int, int]]:
    for start in range(0, elements, chunk_elements):
        yield start, min(start + chunk_elements, elements)


def _scale_count(header: dict[str, Any]) -> int:
    """Scaled formats carry one packed <f4 scale per chunk ahead of the payload."""
    if header["precision"] == "FP16":
        return 0
    return -(-header["elements"] // header["chunk_elements"])


def _pack_int4(q: np.ndarray) -> np.ndarray:
    nibbles = (q.astype(np.int8) & 0x0F).astype(np.uint8)
    if nibbles.size % 2:
        nibbles = np.append(nibbles, np.uint8(0))
    return nibbles[0::2] | (nibbles[1::2] << 4)


def _unpack_int4(packed: np.ndarray, count: int) -> np.ndarray:
    nibbles = np.empty(packed.size * 2, dtype=np.int16)
    nibbles[0::2] = packed & 0x0F
    nibbles[1::2] = packed >> 4
    nibbles = np.where(nibbles > 7, nibbles - 16, nibbles)
    return nibbles[:count].astype(np.int8)


def _iter_variant(path: Path) -> Iterator[np.ndarray]:
    header, offset = read_variant_header(path)
    precision = header["precision"]
    elements = header["elements"]
    chunk_elements = header["chunk_elements"]
    data = np.memmap(path, dtype=np.uint8, mode="r", offset=offset)
    pos = 4 * _scale_count(header)
    scales = np.frombuffer(data[:pos].tobytes(), dtype="<f4")
    for i, (start, end) in enumerate(_chunk_bounds(elements, chunk_elements)):
        n = end - start
        if precision == "FP16":
            raw = data[pos:pos + 2 * n]
            pos += 2 * n
            yield np.frombuffer(raw.tobytes(), dtype="<f2").astype(np.float32)
        elif precision == "INT8":
            raw = data[pos:pos + n]
            pos += n
            yield np.frombuffer(raw.tobytes(), dtype=np.int8).astype(np.float32) * np.float32(scales[i])
        elif precision == "INT4":
            size = (n + 1) // 2
            raw = np.frombuffer(data[pos:pos + size].tobytes(), dtype=np.uint8)
            pos += size
            yield _unpack_int4(raw, n).astype(np.float32) * np.float32(scales[i])
        else:
            raise ValueError(f"Unsupported variant precision {precision!r} in {path}")


def dequantize(path: Path) -> np.ndarray:
    """Reconstruct float32 weights from a variant file."""
    chunks = list(_iter_variant(path))
    if not chunks:
        return np.zeros(0, dtype=np.float32)
    return np.concatenate(chunks)


# ---------------------------------------------------------------------------
# Converters
# ---------------------------------------------------------------------------

class NumpyConverter:
    """In-process converter built on numpy.

    The weights payload is read as a flat little-endian float32 stream and
    processed in fixed-size chunks, each treated as one tensor with its own
    scale. Sources that are themselves variants (INT8 feeding INT4) are
    dequantized chunk by chunk first.
    """

    def __init__(self, chunk_elements: int = 1 << 20) -> None:
        if chunk_elements < MIN_CHUNK_ELEMENTS:
            raise ValueError(f"chunk_elements must be at least {MIN_CHUNK_ELEMENTS}")
        self.chunk_elements = chunk_elements

    def convert(self, source: Path, target: Path, precision: PrecisionLevel) -> None:
        if precision is PrecisionLevel.FP32:
            raise ValueError("FP32 is the source precision; nothing to convert")

        source_size = source.stat().st_size
        from_variant = is_variant(source)
        if from_variant:
            src_header, _ = read_variant_header(source)
            elements = src_header["elements"]
            chunk_elements = src_header["chunk_elements"]
            source_precision = src_header["precision"]
            source_size = src_header.get("source_size", source_size)
        else:
            elements = source_size // 4
            chunk_elements = self.chunk_elements
            source_precision = "FP32"
        if elements == 0:
            raise ValueError(f"{source} holds no float32 values")

        def chunks() -> Iterator[np.ndarray]:
            if from_variant:
                return _iter_variant(source)
            return self._iter_float32(source, elements)

        scales = np.zeros(0, dtype="<f4")
        if precision is not PrecisionLevel.FP16:
            limit = 127.0 if precision is PrecisionLevel.INT8 else 7.0
            found: list[float] = []
            for chunk in chunks():
                amax = float(np.max(np.abs(chunk))) if chunk.size else 0.0
                if precision is PrecisionLevel.INT4:
                    # two-stage: scale from the int8 reconstruction
                    amax = float(np.max(np.abs(self._int8_roundtrip(chunk))))
                found.append(amax / limit if amax > 0 else 0.0)
            scales = np.asarray(found, dtype="<f4")

        header = {
            "format": FORMAT_VERSION,
            "precision": precision.value,
            "source_precision": source_precision,
            "elements": elements,
            "chunk_elements": chunk_elements,
            "source_size": source_size,
        }
        with open(target, "wb") as f:
            _write_header(f, header)
            f.write(scales.tobytes())
            for i, chunk in enumerate(chunks()):
                f.write(self._encode(chunk, precision, float(scales[i]) if scales.size else 0.0).tobytes())
            f.flush()
            os.fsync(f.fileno())

    def _iter_float32(self, source: Path, elements: int) -> Iterator[np.ndarray]:
        data = np.memmap(source, dtype="<f4", mode="r", shape=(elements,))
        for start, end in _chunk_bounds(elements, self.chunk_elements):
            yield np.nan_to_num(np.asarray(data[start:end], dtype=np.float32), nan=0.0, posinf=0.0, neginf=0.0)

    @staticmethod
    def _int8_roundtrip(chunk: np.ndarray) -> np.ndarray:
        amax = float(np.max(np.abs(chunk))) if chunk.size else 0.0
        if amax == 0:
            return np.zeros_like(chunk)
        scale = amax / 127.0
        return np.clip(np.rint(chunk / scale), -127, 127) * np.float32(scale)

    def _encode(self, chunk: np.ndarray, precision: PrecisionLevel, scale: float) -> np.ndarray:
        if precision is PrecisionLevel.FP16:
            return np.clip(chunk, -_FP16_MAX, _FP16_MAX).astype("<f2")
        if precision is PrecisionLevel.INT8:
            if scale == 0:
                return np.zeros(chunk.size, dtype=np.int8)
            return np.clip(np.rint(chunk / scale), -127, 127).astype(np.int8)
        staged = self._int8_roundtrip(chunk)
        if scale == 0:
            return _pack_int4(np.zeros(chunk.size, dtype=np.int8))
        return _pack_int4(np.clip(np.rint(staged / scale), -8, 7).astype(np.int8))


class SubprocessConverter:
    """Runs the conversion in a separate interpreter (``python -m testgen_models.convert``)."""

    def __init__(
        self,
        command: Sequence[str] | None = None,
        timeout: float = 1800.0,
        chunk_elements: int = 1 << 20,
    ) -> None:
        self.command = list(command) if command else [sys.executable, "-m", "testgen_models.convert"]
        self.timeout = timeout
        self.chunk_elements = chunk_elements

    def convert(self, source: Path, target: Path, precision: PrecisionLevel) -> None:
        cmd = [
            *self.command,
            str(source),
            str(target),
            precision.value,
            "--chunk-elements",
            str(self.chunk_elements),
        ]
        proc = subprocess.run(cmd, capture_output=True, text=True, timeout=self.timeout)
        if proc.returncode != 0:
            raise RuntimeError(f"converter exited with status {proc.returncode}: {proc.stderr.strip()}")


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------

class PrecisionReducer:
    """Derives and caches reduced-precision variants, converting each pair at most once."""

    def __init__(
        self,
        store: ArtifactStore,
        catalog: ModelCatalog,
        acquisition: AcquisitionPipeline,
        converter: Converter | None = None,
    ) -> None:
        self.store = store
        self.catalog = catalog
        self.acquisition = acquisition
        self.converter: Converter = converter or NumpyConverter()
        self._variants: dict[tuple[ModelKey, PrecisionLevel], QuantizedVariant] = {}
        self._pair_locks: dict[tuple[ModelKey, PrecisionLevel], threading.Lock] = {}
        self._lock = threading.Lock()

    def reduce(self, key: ModelKey, precision: PrecisionLevel | str) -> QuantizedVariant:
        precision = PrecisionLevel.parse(precision)
        descriptor = self._descriptor(key)

        cached = self._cached(key, precision)
        if cached is not None:
            return cached

        with self._pair_lock(key, precision):
            cached = self._cached(key, precision)
            if cached is not None:
                return cached

            if precision is PrecisionLevel.FP32:
                self._ensure_source(descriptor)
                path = self.store.weights_path(descriptor)
                source_size = self.store.size(path)
            else:
                path = self.store.variant_path(descriptor, precision)
                if path.is_file():
                    log_event("variant_found", model=key, precision=precision.value, path=str(path))
                else:
                    if precision is PrecisionLevel.INT4:
                        input_path = self.reduce(key, PrecisionLevel.INT8).path
                    else:
                        self._ensure_source(descriptor)
                        input_path = self.store.weights_path(descriptor)
                    self._convert(descriptor, input_path, path, precision)
                source_size = self._source_size(descriptor, path)

            variant = QuantizedVariant(
                source_key=key,
                precision=precision,
                path=path,
                size_bytes=self.store.size(path),
                source_size_bytes=source_size,
            )
            with self._lock:
                self._variants[(key, precision)] = variant
            return variant

    def cached_variants(self, key: ModelKey) -> list[QuantizedVariant]:
        with self._lock:
            return [v for (k, _), v in self._variants.items() if k == key]

    def discard(self, key: ModelKey, precision: PrecisionLevel | str) -> bool:
        """Delete a derived variant file; the source weights are never touched."""
        precision = PrecisionLevel.parse(precision)
        if precision is PrecisionLevel.FP32:
            return False
        descriptor = self._descriptor(key)
        path = self.store.variant_path(descriptor, precision)
        with self._pair_lock(key, precision):
            with self._lock:
                self._variants.pop((key, precision), None)
            if path.is_file():
                path.unlink()
                log_event("variant_discarded", model=key, precision=precision.value)
                return True
        return False

    def available_levels(self) -> dict[str, str]:
        return dict(LEVEL_DESCRIPTIONS)

    def estimate_savings(self, key: ModelKey) -> dict[str, int]:
        """Estimated bytes saved per level, acquiring the source first if needed."""
        descriptor = self._descriptor(key)
        self._ensure_source(descriptor)
        size = self.store.size(self.store.weights_path(descriptor))
        return {
            "FP32": 0,
            "FP16": size - size // 2,
            "INT8": size - size // 4,
            "INT4": size - size // 8,
        }

    def _descriptor(self, key: ModelKey) -> ModelDescriptor:
        descriptor = self.catalog.by_key(key)
        if descriptor is None:
            raise ModelNotConfiguredError(key)
        return descriptor

    def _pair_lock(self, key: ModelKey, precision: PrecisionLevel) -> threading.Lock:
        with self._lock:
            return self._pair_locks.setdefault((key, precision), threading.Lock())

    def _cached(self, key: ModelKey, precision: PrecisionLevel) -> QuantizedVariant | None:
        with self._lock:
            variant = self._variants.get((key, precision))
            if variant is None:
                return None
            if not variant.path.is_file():
                del self._variants[(key, precision)]
                log_event("variant_invalidated", model=key, precision=precision.value, path=str(variant.path))
                return None
        log_event("variant_cached", model=key, precision=precision.value, level="debug")
        return variant

    def _source_size(self, descriptor: ModelDescriptor, variant_path: Path) -> int:
        """Size of the full-precision weights, read from the variant header when they are gone."""
        weights = self.store.weights_path(descriptor)
        if self.store.exists(weights):
            return self.store.size(weights)
        if is_variant(variant_path):
            header, _ = read_variant_header(variant_path)
            return int(header.get("source_size", 0))
        return 0

    def _ensure_source(self, descriptor: ModelDescriptor) -> None:
        if not self.store.weights_plausible(descriptor, self.acquisition.settings.min_weights_bytes):
            log_event("variant_source_missing", model=descriptor.key)
            self.acquisition.acquire(descriptor)

    def _convert(self, descriptor: ModelDescriptor, source: Path, target: Path, precision: PrecisionLevel) -> None:
        key = descriptor.key
        tmp = target.with_name(f".{target.name}.{uuid.uuid4().hex[:8]}.tmp")
        log_event("conversion_started", model=key, precision=precision.value, source=str(source))
        try:
            self.converter.convert(source, tmp, precision)
            os.replace(tmp, target)
        except QuantizationError:
            raise
        except Exception as exc:
            log_event("conversion_failed", model=key, level="error", precision=precision.value, error=str(exc))
            raise QuantizationError(
                f"Converting {key} to {precision.value} failed: {exc}",
                key=key,
                precision=precision.value,
            ) from exc
        finally:
            tmp.unlink(missing_ok=True)

        source_size = self._source_size(descriptor, target)
        size = self.store.size(target)
        log_event(
            "variant_created",
            model=key,
            precision=precision.value,
            path=str(target),
            size=size,
            source_size=source_size,
            reduction=round(source_size / size, 2) if size > 0 else None,
        )
