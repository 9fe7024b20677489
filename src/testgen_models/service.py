"""Wires settings, storage, pipelines and the registry into one service object."""

from __future__ import annotations

import time
from collections.abc import Callable

import httpx

from .acquisition import AcquisitionPipeline
from .config import PrecisionSettings, Settings, get_settings, load_catalog
from .engines import InferenceEngine, TransformersEngine
from .facade import TextGenerationFacade
from .logging import log_event, set_log_level
from .models import ModelCatalog
from .precision import Converter, NumpyConverter, PrecisionReducer, SubprocessConverter
from .registry import ModelRegistry, TransitionListener
from .store import ArtifactStore


def build_converter(settings: PrecisionSettings) -> Converter:
    if settings.converter == "subprocess":
        return SubprocessConverter(timeout=settings.subprocess_timeout, chunk_elements=settings.chunk_elements)
    return NumpyConverter(settings.chunk_elements)


class ModelService:
    """Owns every long-lived component; ``close()`` releases them in order."""

    def __init__(
        self,
        settings: Settings | None = None,
        catalog: ModelCatalog | None = None,
        engine: InferenceEngine | None = None,
        client: httpx.Client | None = None,
        sleep: Callable[[float], None] = time.sleep,
        converter: Converter | None = None,
        on_transition: TransitionListener | None = None,
    ) -> None:
        self.settings = settings if settings is not None else get_settings()
        set_log_level(self.settings.log_level)
        self.catalog = catalog if catalog is not None else load_catalog(self.settings.catalog_path)
        self.store = ArtifactStore(self.settings.base_dir)
        self.acquisition = AcquisitionPipeline(self.store, self.settings.acquisition, client=client, sleep=sleep)
        self.reducer = PrecisionReducer(
            self.store,
            self.catalog,
            self.acquisition,
            converter or build_converter(self.settings.precision),
        )
        self.registry = ModelRegistry(
            self.settings,
            self.catalog,
            self.acquisition,
            engine or TransformersEngine(),
            reducer=self.reducer,
            on_transition=on_transition,
        )
        self.facade = TextGenerationFacade(self.registry)

    def __enter__(self) -> ModelService:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def start(self) -> None:
        """Create the base directory and warm up the configured startup models."""
        self.store.ensure_base_dir()
        outcome = self.registry.warm_up()
        if outcome:
            log_event("warm_up_complete", models={k: v.value for k, v in outcome.items()})

    def close(self) -> None:
        self.registry.shutdown()
        self.acquisition.close()
