"""Shared test fixtures."""

from __future__ import annotations

import threading
from collections.abc import Iterator
from pathlib import Path

import httpx
import numpy as np
import pytest

from testgen_models.acquisition import AcquisitionPipeline
from testgen_models.config import AcquisitionSettings, LoadSettings, PrecisionSettings, Settings
from testgen_models.engines import LoadRequest
from testgen_models.models import ModelCatalog, ModelDescriptor
from testgen_models.precision import NumpyConverter, PrecisionReducer
from testgen_models.registry import ModelRegistry
from testgen_models.store import ArtifactStore

LANGUAGE_KEY = "language-tiny-gpt"
EMBEDDINGS_KEY = "embeddings-tiny-embed"
MIN_WEIGHTS_BYTES = 1000
CONFIG_JSON = b'{"model_type": "gpt2", "n_layer": 2}'
TOKENIZER_JSON = b'{"version": "1.0", "model": {"type": "BPE"}}'


def make_weights(count: int = 16384) -> bytes:
    return np.linspace(-2.0, 2.0, count, dtype=np.float32).astype("<f4").tobytes()


def install_model(store: ArtifactStore, descriptor: ModelDescriptor, weights: bytes | None = None) -> Path:
    """Place a complete set of files for ``descriptor`` on disk."""
    model_dir = store.model_dir(descriptor)
    model_dir.mkdir(parents=True, exist_ok=True)
    (model_dir / descriptor.weights_file).write_bytes(make_weights() if weights is None else weights)
    (model_dir / descriptor.config_file).write_bytes(CONFIG_JSON)
    (model_dir / descriptor.tokenizer_file).write_bytes(TOKENIZER_JSON)
    return model_dir


class BrokenStream(httpx.SyncByteStream):
    """Yields part of a body, then drops the connection."""

    def __init__(self, data: bytes) -> None:
        self.data = data

    def __iter__(self) -> Iterator[bytes]:
        yield self.data
        raise httpx.ReadError("connection reset by peer")


class ShortStream(httpx.SyncByteStream):
    """Ends cleanly before the advertised Content-Length."""

    def __init__(self, data: bytes) -> None:
        self.data = data

    def __iter__(self) -> Iterator[bytes]:
        yield self.data


class FakeHub:
    """In-memory model host served through httpx.MockTransport.

    ``fail(filename, *actions)`` queues per-request misbehaviour: an int
    status code, ``"connect"`` for a refused connection, ``"drop"`` for a
    mid-transfer disconnect, ``"short"`` for a body that ends before its
    Content-Length, or raw bytes to serve instead of the real file.
    """

    def __init__(self, files: dict[str, bytes]) -> None:
        self.files = dict(files)
        self.failures: dict[str, list[object]] = {}
        self.requests: list[str] = []
        self._lock = threading.Lock()

    def fail(self, filename: str, *actions: object) -> None:
        self.failures.setdefault(filename, []).extend(actions)

    def count(self, filename: str) -> int:
        return sum(1 for path in self.requests if path.endswith("/" + filename))

    def handler(self, request: httpx.Request) -> httpx.Response:
        name = request.url.path.rsplit("/", 1)[-1]
        with self._lock:
            self.requests.append(request.url.path)
            queue = self.failures.get(name)
            action = queue.pop(0) if queue else None
        body = self.files.get(name)
        if action == "connect":
            raise httpx.ConnectError("connection refused", request=request)
        if action == "drop" and body is not None:
            return httpx.Response(
                200,
                headers={"Content-Length": str(len(body))},
                stream=BrokenStream(body[: len(body) // 2]),
            )
        if action == "short" and body is not None:
            return httpx.Response(
                200,
                headers={"Content-Length": str(len(body))},
                stream=ShortStream(body[: len(body) // 2]),
            )
        if isinstance(action, int):
            return httpx.Response(action)
        if isinstance(action, bytes):
            return httpx.Response(200, content=action)
        if body is None:
            return httpx.Response(404)
        return httpx.Response(200, content=body)

    def client(self) -> httpx.Client:
        return httpx.Client(transport=httpx.MockTransport(self.handler))


class FakeModel:
    def __init__(self, output: str | Exception = "generated text") -> None:
        self.output = output
        self.prompts: list[str] = []
        self.closes = 0

    def generate(self, prompt: str, max_tokens: int) -> str:
        self.prompts.append(prompt)
        if isinstance(self.output, Exception):
            raise self.output
        return self.output

    def close(self) -> None:
        self.closes += 1


class FakeEngine:
    """Counts loads; ``gate`` holds every load until it is set."""

    def __init__(self) -> None:
        self.loads = 0
        self.requests: list[LoadRequest] = []
        self.models: list[FakeModel] = []
        self.error: Exception | None = None
        self.output: str | Exception = "generated text"
        self.gate: threading.Event | None = None
        self.started = threading.Event()
        self._lock = threading.Lock()

    def load(self, request: LoadRequest) -> FakeModel:
        with self._lock:
            self.loads += 1
            self.requests.append(request)
        self.started.set()
        if self.gate is not None:
            self.gate.wait(10)
        if self.error is not None:
            raise self.error
        model = FakeModel(self.output)
        self.models.append(model)
        return model


class CountingConverter(NumpyConverter):
    def __init__(self, chunk_elements: int = 1024) -> None:
        super().__init__(chunk_elements)
        self.calls: list[str] = []

    def convert(self, source: Path, target: Path, precision) -> None:  # type: ignore[override]
        self.calls.append(precision.value)
        super().convert(source, target, precision)


@pytest.fixture()
def settings(tmp_path: Path) -> Settings:
    return Settings(
        base_dir=tmp_path / "models",
        acquisition=AcquisitionSettings(min_weights_bytes=MIN_WEIGHTS_BYTES, chunk_size=4096),
        precision=PrecisionSettings(level="FP16", chunk_elements=1024),
        loading=LoadSettings(wait_timeout=5.0, smoke_test_timeout=5.0, shutdown_timeout=5.0),
    )


@pytest.fixture()
def catalog() -> ModelCatalog:
    return ModelCatalog(
        [
            {"name": "tiny-gpt", "role": "language", "source_url": "https://models.test/tiny-gpt/"},
            {"name": "tiny-embed", "role": "embeddings", "source_url": "https://models.test/tiny-embed"},
        ]
    )


@pytest.fixture()
def language_model(catalog: ModelCatalog) -> ModelDescriptor:
    descriptor = catalog.by_key(LANGUAGE_KEY)
    assert descriptor is not None
    return descriptor


@pytest.fixture()
def store(settings: Settings) -> ArtifactStore:
    return ArtifactStore(settings.base_dir)


@pytest.fixture()
def hub() -> FakeHub:
    return FakeHub(
        {
            "pytorch_model.bin": make_weights(),
            "config.json": CONFIG_JSON,
            "tokenizer.json": TOKENIZER_JSON,
        }
    )


@pytest.fixture()
def sleeps() -> list[float]:
    return []


@pytest.fixture()
def acquisition(store: ArtifactStore, settings: Settings, hub: FakeHub, sleeps: list[float]) -> Iterator[AcquisitionPipeline]:
    client = hub.client()
    yield AcquisitionPipeline(store, settings.acquisition, client=client, sleep=sleeps.append)
    client.close()


@pytest.fixture()
def converter() -> CountingConverter:
    return CountingConverter()


@pytest.fixture()
def reducer(
    store: ArtifactStore,
    catalog: ModelCatalog,
    acquisition: AcquisitionPipeline,
    converter: CountingConverter,
) -> PrecisionReducer:
    return PrecisionReducer(store, catalog, acquisition, converter)


@pytest.fixture()
def engine() -> FakeEngine:
    return FakeEngine()


@pytest.fixture()
def registry(
    settings: Settings,
    catalog: ModelCatalog,
    acquisition: AcquisitionPipeline,
    engine: FakeEngine,
    reducer: PrecisionReducer,
) -> Iterator[ModelRegistry]:
    reg = ModelRegistry(settings, catalog, acquisition, engine, reducer=reducer)
    yield reg
    if engine.gate is not None:
        engine.gate.set()
    reg.shutdown()
