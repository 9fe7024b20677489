"""Inference engine boundary and the registry-owned handle type."""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

from .config import EngineSettings
from .exceptions import HandleClosedError
from .models import ModelDescriptor, ModelKey, PrecisionLevel


@runtime_checkable
class TextModel(Protocol):
    """What an engine hands back: something that can generate and be closed."""

    def generate(self, prompt: str, max_tokens: int) -> str: ...

    def close(self) -> None: ...


@dataclass(frozen=True)
class EngineOptions:
    """Explicit engine configuration; never applied through process environment."""

    num_threads: int = 1
    use_gpu: bool = False
    memory_limit_mb: int = 4096
    device: str = "cpu"

    @classmethod
    def from_settings(cls, settings: EngineSettings) -> EngineOptions:
        return cls(
            num_threads=settings.num_threads,
            use_gpu=settings.use_gpu,
            memory_limit_mb=settings.memory_limit_mb,
            device=settings.device,
        )


@dataclass(frozen=True)
class LoadRequest:
    descriptor: ModelDescriptor
    model_dir: Path
    weights_path: Path
    precision: PrecisionLevel = PrecisionLevel.FP32
    options: EngineOptions = field(default_factory=EngineOptions)


@runtime_checkable
class InferenceEngine(Protocol):
    def load(self, request: LoadRequest) -> TextModel: ...


class LoadedHandle:
    """Exclusively owned reference to an inference-ready model.

    Generation and close are serialised, so closing waits for an in-flight
    ``generate`` call. Closing twice, or generating after close, raises
    HandleClosedError.
    """

    def __init__(self, key: ModelKey, model: TextModel, precision: PrecisionLevel, weights_path: Path) -> None:
        self.key = key
        self.precision = precision
        self.weights_path = weights_path
        self.loaded_at = time.time()
        self._model = model
        self._lock = threading.Lock()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def generate(self, prompt: str, max_tokens: int) -> str:
        with self._lock:
            if self._closed:
                raise HandleClosedError(f"Handle for {self.key!r} is closed", key=self.key)
            return self._model.generate(prompt, max_tokens)

    def close(self) -> None:
        with self._lock:
            if self._closed:
                raise HandleClosedError(f"Handle for {self.key!r} was already released", key=self.key)
            self._closed = True
            self._model.close()

    def __repr__(self) -> str:
        state = "closed" if self._closed else "open"
        return f"LoadedHandle({self.key!r}, {self.precision.value}, {state})"


# ---------------------------------------------------------------------------
# Transformers engine
# ---------------------------------------------------------------------------

class _TransformersModel:
    def __init__(self, model: Any, tokenizer: Any, device: str) -> None:
        self.model = model
        self.tokenizer = tokenizer
        self.device = device

    def generate(self, prompt: str, max_tokens: int) -> str:
        import torch  # type: ignore

        inputs = self.tokenizer(prompt, return_tensors="pt").to(self.device)
        with torch.no_grad():
            output = self.model.generate(
                **inputs,
                max_new_tokens=max_tokens,
                do_sample=False,
                pad_token_id=self.tokenizer.eos_token_id,
            )
        new_tokens = output[0][inputs["input_ids"].shape[1]:]
        return self.tokenizer.decode(new_tokens, skip_special_tokens=True)

    def close(self) -> None:
        self.model = None
        self.tokenizer = None
        if self.device.startswith("cuda"):
            import torch  # type: ignore

            torch.cuda.empty_cache()


class TransformersEngine:
    """Loads a HuggingFace-format model directory with transformers/torch."""

    def load(self, request: LoadRequest) -> TextModel:
        """Reads the full-precision checkpoint in ``model_dir``.

        ``weights_path`` is advisory here: the reduced variant file is not read,
        ``precision`` instead picks the torch dtype or dynamic quantization.
        """
        import torch  # type: ignore
        from transformers import AutoModelForCausalLM, AutoTokenizer  # type: ignore

        options = request.options
        device = options.device
        if options.use_gpu and torch.cuda.is_available():
            device = "cuda:0" if device == "cpu" else device
        torch.set_num_threads(options.num_threads)

        dtype = torch.float16 if request.precision is PrecisionLevel.FP16 else torch.float32
        if device == "cpu" and dtype is torch.float16:
            # half precision matmuls are unsupported on many CPU builds
            dtype = torch.float32

        tokenizer = AutoTokenizer.from_pretrained(str(request.model_dir))
        model = AutoModelForCausalLM.from_pretrained(
            str(request.model_dir),
            torch_dtype=dtype,
            low_cpu_mem_usage=True,
        )
        if request.precision in (PrecisionLevel.INT8, PrecisionLevel.INT4) and device == "cpu":
            # torch has no 4-bit dynamic quantization; INT4 runs as int8
            model = torch.quantization.quantize_dynamic(model, {torch.nn.Linear}, dtype=torch.qint8)
        model.to(device)
        model.eval()
        return _TransformersModel(model, tokenizer, device)
