"""Text generation facade used by upstream test-generation code."""

from __future__ import annotations

from enum import Enum

from .exceptions import (
    GenerationError,
    HandleClosedError,
    ModelDisabledError,
    ModelError,
    ModelNotConfiguredError,
)
from .logging import log_event
from .models import ModelKey, ModelStatus, Role, model_key
from .registry import ModelRegistry

DEFAULT_MAX_TOKENS = 1000


class Availability(str, Enum):
    READY = "READY"
    INITIALIZING = "INITIALIZING"
    FAILED = "FAILED"
    NOT_LOADED = "NOT_LOADED"
    NOT_CONFIGURED = "NOT_CONFIGURED"
    DISABLED = "DISABLED"


_BY_STATUS = {
    ModelStatus.LOADED: Availability.READY,
    ModelStatus.LOADING: Availability.INITIALIZING,
    ModelStatus.FAILED: Availability.FAILED,
    ModelStatus.NOT_LOADED: Availability.NOT_LOADED,
}


class TextGenerationFacade:
    """Turns a prompt into text via whichever language model is configured.

    Callers distinguish "not configured", "still initializing" and
    "permanently failed" by the exception type so they can fall back.
    """

    def __init__(self, registry: ModelRegistry, default_key: ModelKey | None = None) -> None:
        self.registry = registry
        settings = registry.settings
        self.default_key = default_key or model_key(Role.LANGUAGE, settings.language_model)

    def generate_text(
        self,
        prompt: str,
        max_tokens: int = DEFAULT_MAX_TOKENS,
        key: ModelKey | None = None,
        timeout: float | None = None,
    ) -> str:
        if max_tokens <= 0:
            raise ValueError("max_tokens must be positive")
        key = self._resolve(key)

        retried = False
        while True:
            handle = self.registry.ensure_loaded(key, timeout=timeout)
            try:
                return handle.generate(prompt, max_tokens)
            except HandleClosedError:
                if retried:
                    raise
                retried = True
                log_event("handle_reresolved", model=key, level="warning")
            except ModelError:
                raise
            except Exception as exc:
                log_event("generation_failed", model=key, level="error", error=str(exc))
                raise GenerationError(f"Generation with {key} failed: {exc}", key=key) from exc

    def model_ready(self, key: ModelKey | None = None) -> bool:
        return self.availability(key) is Availability.READY

    def availability(self, key: ModelKey | None = None) -> Availability:
        key = key or self.default_key
        if not self.registry.settings.generation_enabled:
            return Availability.DISABLED
        if key not in self.registry.catalog:
            return Availability.NOT_CONFIGURED
        return _BY_STATUS[self.registry.status(key)]

    def _resolve(self, key: ModelKey | None) -> ModelKey:
        key = key or self.default_key
        if not self.registry.settings.generation_enabled:
            raise ModelDisabledError(key)
        if key not in self.registry.catalog:
            raise ModelNotConfiguredError(key)
        return key
