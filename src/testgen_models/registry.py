"""Model status state machine and single-flight loading."""

from __future__ import annotations

import concurrent.futures
import threading
import time
from collections.abc import Callable, Iterable
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass

from .acquisition import AcquisitionPipeline
from .config import Settings
from .engines import EngineOptions, InferenceEngine, LoadedHandle, LoadRequest
from .exceptions import (
    AcquisitionError,
    IntegrityError,
    InvalidTransitionError,
    LoadError,
    LoadTimeout,
    ModelError,
    ModelNotConfiguredError,
    QuantizationError,
    RegistryClosedError,
    SmokeTestError,
)
from .logging import log_event
from .models import ModelCatalog, ModelDescriptor, ModelKey, ModelStatus, PrecisionLevel, Role
from .precision import PrecisionReducer

TransitionListener = Callable[[ModelKey, ModelStatus, ModelStatus], None]

# FAILED -> NOT_LOADED is reachable only through unload(), which clears the failure record.
_ALLOWED: dict[ModelStatus, frozenset[ModelStatus]] = {
    ModelStatus.NOT_LOADED: frozenset({ModelStatus.LOADING}),
    ModelStatus.LOADING: frozenset({ModelStatus.LOADED, ModelStatus.FAILED}),
    ModelStatus.LOADED: frozenset({ModelStatus.NOT_LOADED}),
    ModelStatus.FAILED: frozenset({ModelStatus.LOADING, ModelStatus.NOT_LOADED}),
}


@dataclass(frozen=True)
class ModelStatusInfo:
    key: ModelKey
    status: ModelStatus
    error: str | None = None
    precision: PrecisionLevel | None = None
    loaded_at: float | None = None


class ModelRegistry:
    """Single authority for "is this model ready, and give me a handle".

    One lock guards the status map, the handle cache and the in-flight table.
    The caller that moves a key into LOADING owns that load attempt and
    publishes its outcome through a Future; concurrent callers wait on it.
    """

    def __init__(
        self,
        settings: Settings,
        catalog: ModelCatalog,
        acquisition: AcquisitionPipeline,
        engine: InferenceEngine,
        reducer: PrecisionReducer | None = None,
        on_transition: TransitionListener | None = None,
    ) -> None:
        self.settings = settings
        self.catalog = catalog
        self.acquisition = acquisition
        self.engine = engine
        self.reducer = reducer
        self._on_transition = on_transition
        self._lock = threading.Lock()
        self._status: dict[ModelKey, ModelStatus] = {}
        self._handles: dict[ModelKey, LoadedHandle] = {}
        self._inflight: dict[ModelKey, Future[LoadedHandle]] = {}
        self._errors: dict[ModelKey, ModelError] = {}
        self._notices: list[tuple[ModelKey, ModelStatus, ModelStatus]] = []
        self._closed = False

    def __enter__(self) -> ModelRegistry:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.shutdown()

    # ------------------------------------------------------------------
    # reads
    # ------------------------------------------------------------------

    def status(self, key: ModelKey) -> ModelStatus:
        return self._status.get(key, ModelStatus.NOT_LOADED)

    def is_ready(self, key: ModelKey) -> bool:
        return self.status(key) is ModelStatus.LOADED

    def last_error(self, key: ModelKey) -> ModelError | None:
        return self._errors.get(key)

    def loaded_keys(self) -> list[ModelKey]:
        with self._lock:
            return list(self._handles)

    def snapshot(self) -> dict[ModelKey, ModelStatusInfo]:
        """Status of every catalogued or previously touched model."""
        with self._lock:
            keys = list(dict.fromkeys([*self.catalog.keys(), *self._status]))
            result: dict[ModelKey, ModelStatusInfo] = {}
            for key in keys:
                handle = self._handles.get(key)
                error = self._errors.get(key)
                result[key] = ModelStatusInfo(
                    key=key,
                    status=self._status.get(key, ModelStatus.NOT_LOADED),
                    error=str(error) if error is not None else None,
                    precision=handle.precision if handle else None,
                    loaded_at=handle.loaded_at if handle else None,
                )
            return result

    # ------------------------------------------------------------------
    # ensure_loaded
    # ------------------------------------------------------------------

    def ensure_loaded(self, key: ModelKey, timeout: float | None = None) -> LoadedHandle:
        """Return a ready handle, loading the model if nobody else is.

        Raises ModelNotConfiguredError for unknown keys, LoadTimeout when a
        concurrent load outlasts ``timeout``, and a ModelLoadFailure subclass
        when the load attempt fails.
        """
        descriptor = self.catalog.by_key(key)
        if descriptor is None:
            raise ModelNotConfiguredError(key)
        wait_timeout = self.settings.loading.wait_timeout if timeout is None else timeout
        deadline = time.monotonic() + wait_timeout

        while True:
            owner = False
            with self._lock:
                if self._closed:
                    raise RegistryClosedError(key)
                status = self._status.get(key, ModelStatus.NOT_LOADED)
                if status is ModelStatus.LOADED:
                    return self._handles[key]
                if status is ModelStatus.LOADING:
                    future = self._inflight[key]
                else:
                    future = Future()
                    self._inflight[key] = future
                    self._set_status(key, ModelStatus.LOADING)
                    owner = True
            self._notify()

            if owner:
                return self._run_load(descriptor, future)

            remaining = max(deadline - time.monotonic(), 0.0)
            try:
                handle = future.result(timeout=remaining)
            except concurrent.futures.TimeoutError:
                log_event("load_wait_timeout", model=key, level="warning", timeout=wait_timeout)
                raise LoadTimeout(key, wait_timeout) from None
            if not handle.closed:
                return handle
            # unloaded between completion and wake-up; resolve again

    def _run_load(self, descriptor: ModelDescriptor, future: Future[LoadedHandle]) -> LoadedHandle:
        key = descriptor.key
        started = time.monotonic()
        log_event("load_started", model=key)
        try:
            handle = self._load(descriptor)
        except ModelError as exc:
            self._fail(key, future, exc, started)
            raise
        except Exception as exc:
            error = LoadError(f"Unexpected failure loading {key}: {exc}", key=key)
            error.__cause__ = exc
            self._fail(key, future, error, started)
            raise error from exc
        except BaseException:
            self._fail(key, future, LoadError(f"Load of {key} was interrupted", key=key), started)
            raise

        with self._lock:
            self._inflight.pop(key, None)
            closed = self._closed
            if closed:
                error = RegistryClosedError(key)
                self._errors[key] = error
                self._set_status(key, ModelStatus.FAILED)
            else:
                self._handles[key] = handle
                self._errors.pop(key, None)
                self._set_status(key, ModelStatus.LOADED)
        self._notify()

        if closed:
            log_event("load_discarded", model=key, reason="registry shut down")
            self._close_quietly(key, handle)
            future.set_exception(error)
            raise error

        future.set_result(handle)
        log_event(
            "load_succeeded",
            model=key,
            precision=handle.precision.value,
            seconds=round(time.monotonic() - started, 3),
        )
        return handle

    def _fail(self, key: ModelKey, future: Future[LoadedHandle], error: ModelError, started: float) -> None:
        with self._lock:
            self._inflight.pop(key, None)
            self._errors[key] = error
            self._set_status(key, ModelStatus.FAILED)
        self._notify()
        future.set_exception(error)
        log_event(
            "load_failed",
            model=key,
            level="error",
            error_type=type(error).__name__,
            error=str(error),
            seconds=round(time.monotonic() - started, 3),
        )

    def _load(self, descriptor: ModelDescriptor) -> LoadedHandle:
        key = descriptor.key
        store = self.acquisition.store

        if not self.acquisition.is_present(descriptor):
            try:
                self.acquisition.acquire(descriptor)
            except ModelError:
                raise
            except Exception as exc:
                raise AcquisitionError(f"Acquiring {key} failed: {exc}", key=key) from exc

        try:
            self.acquisition.verify(descriptor)
        except OSError as exc:
            raise IntegrityError(f"Cannot read artifacts of {key}: {exc}", key=key) from exc

        precision = PrecisionLevel.FP32
        weights_path = store.weights_path(descriptor)
        if self._wants_reduction(descriptor):
            level = self.settings.precision.level
            try:
                variant = self.reducer.reduce(key, level)  # type: ignore[union-attr]
            except ModelError:
                raise
            except Exception as exc:
                raise QuantizationError(
                    f"Reducing {key} to {level.value} failed: {exc}", key=key, precision=level.value
                ) from exc
            precision = variant.precision
            weights_path = variant.path

        request = LoadRequest(
            descriptor=descriptor,
            model_dir=store.model_dir(descriptor),
            weights_path=weights_path,
            precision=precision,
            options=EngineOptions.from_settings(self.settings.engine),
        )
        try:
            model = self.engine.load(request)
        except Exception as exc:
            raise LoadError(f"Engine failed to load {key}: {exc}", key=key) from exc

        handle = LoadedHandle(key, model, precision, weights_path)
        self._smoke_test(handle)
        return handle

    def _wants_reduction(self, descriptor: ModelDescriptor) -> bool:
        cfg = self.settings.precision
        return (
            self.reducer is not None
            and cfg.enabled
            and cfg.level is not PrecisionLevel.FP32
            and descriptor.role is Role.LANGUAGE
        )

    def _smoke_test(self, handle: LoadedHandle) -> None:
        """One trial inference; the handle is released if it fails."""
        cfg = self.settings.loading
        key = handle.key
        executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="smoke-test")
        try:
            future = executor.submit(handle.generate, cfg.smoke_test_prompt, cfg.smoke_test_max_tokens)
            try:
                output = future.result(timeout=cfg.smoke_test_timeout)
            except concurrent.futures.TimeoutError as exc:
                # the stuck generation still holds the handle; release it once it returns
                threading.Thread(target=self._close_quietly, args=(key, handle), daemon=True).start()
                raise SmokeTestError(
                    f"Smoke test for {key} timed out after {cfg.smoke_test_timeout:.1f}s", key=key
                ) from exc
            except Exception as exc:
                self._close_quietly(key, handle)
                raise SmokeTestError(f"Smoke test for {key} failed: {exc}", key=key) from exc
        finally:
            executor.shutdown(wait=False)

        if not isinstance(output, str) or not output.strip():
            self._close_quietly(key, handle)
            raise SmokeTestError(f"Smoke test for {key} returned no text", key=key)
        log_event("smoke_test_passed", model=key, output=output.strip()[:80])

    # ------------------------------------------------------------------
    # unload / shutdown
    # ------------------------------------------------------------------

    def unload(self, key: ModelKey) -> None:
        """Close and drop the cached handle, or clear a failure record.

        Unloading an absent key is a no-op; an in-flight load is not cancelled.
        """
        with self._lock:
            handle = self._handles.pop(key, None)
            status = self._status.get(key, ModelStatus.NOT_LOADED)
            if status in (ModelStatus.LOADED, ModelStatus.FAILED):
                self._errors.pop(key, None)
                self._set_status(key, ModelStatus.NOT_LOADED)
        self._notify()
        if handle is None:
            log_event("unload_skipped", model=key, status=self.status(key).value, level="debug")
            return
        self._close_quietly(key, handle)
        log_event("unload", model=key)

    def shutdown(self) -> None:
        """Let in-flight loads settle, then close every cached handle."""
        with self._lock:
            self._closed = True
            pending = list(self._inflight.values())
        log_event("shutdown_started", in_flight=len(pending))
        if pending:
            _, not_done = concurrent.futures.wait(pending, timeout=self.settings.loading.shutdown_timeout)
            if not_done:
                log_event("shutdown_abandoned_loads", level="warning", count=len(not_done))

        with self._lock:
            handles = list(self._handles.items())
            self._handles.clear()
            for key, _ in handles:
                self._set_status(key, ModelStatus.NOT_LOADED)
        self._notify()
        for key, handle in handles:
            self._close_quietly(key, handle)
        log_event("shutdown_complete", unloaded=[key for key, _ in handles])

    def warm_up(self, keys: Iterable[ModelKey] | None = None) -> dict[ModelKey, ModelStatus]:
        """Load startup models, recording failures instead of raising them."""
        targets = list(keys) if keys is not None else list(self.settings.loading.startup_models)
        for key in targets:
            try:
                self.ensure_loaded(key)
            except ModelError as exc:
                log_event("warm_up_failed", model=key, level="warning", error=str(exc))
        return {key: self.status(key) for key in targets}

    # ------------------------------------------------------------------
    # internals
    # ------------------------------------------------------------------

    def _set_status(self, key: ModelKey, new: ModelStatus) -> None:
        """Caller must hold ``self._lock`` and call ``_notify`` after releasing it."""
        current = self._status.get(key, ModelStatus.NOT_LOADED)
        if new not in _ALLOWED[current]:
            raise InvalidTransitionError(key, current.value, new.value)
        self._status[key] = new
        log_event("registry_transition", model=key, level="debug", old=current.value, new=new.value)
        if self._on_transition is not None:
            self._notices.append((key, current, new))

    def _notify(self) -> None:
        """Deliver queued transitions outside the lock; listener errors are logged, not raised."""
        if self._on_transition is None:
            return
        with self._lock:
            notices, self._notices = self._notices, []
        for key, old, new in notices:
            try:
                self._on_transition(key, old, new)
            except Exception as exc:
                log_event(
                    "transition_listener_failed",
                    model=key,
                    level="error",
                    old=old.value,
                    new=new.value,
                    error=str(exc),
                )

    def _close_quietly(self, key: ModelKey, handle: LoadedHandle) -> None:
        try:
            handle.close()
        except Exception as exc:
            log_event("handle_close_failed", model=key, level="error", error=str(exc))
