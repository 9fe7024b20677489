"""Typed errors raised by the model lifecycle subsystem."""

from __future__ import annotations


class ModelError(Exception):
    """Base exception for all model lifecycle errors."""

    def __init__(self, message: str, *, key: str | None = None) -> None:
        self.key = key
        super().__init__(message)


class ModelNotConfiguredError(ModelError):
    """No descriptor exists for the requested model key."""

    def __init__(self, key: str) -> None:
        super().__init__(f"Model {key!r} is not configured", key=key)


class ModelDisabledError(ModelNotConfiguredError):
    """Local text generation is switched off in settings."""

    def __init__(self, key: str) -> None:
        ModelError.__init__(self, f"Text generation is disabled (model {key!r})", key=key)


class ModelLoadFailure(ModelError):
    """A load attempt failed permanently; the key is now FAILED."""


class AcquisitionError(ModelLoadFailure):
    """Network or storage failure while acquiring source files."""


class IntegrityError(ModelLoadFailure):
    """A downloaded or cached file failed plausibility checks."""

    def __init__(self, message: str, *, key: str | None = None, path: str | None = None) -> None:
        self.path = path
        super().__init__(message, key=key)


class LoadError(ModelLoadFailure):
    """The inference engine failed to initialize from valid files."""


class SmokeTestError(ModelLoadFailure):
    """The engine initialized but failed its trial inference."""


class QuantizationError(ModelLoadFailure):
    """The precision-reduction toolchain failed."""

    def __init__(self, message: str, *, key: str | None = None, precision: str | None = None) -> None:
        self.precision = precision
        super().__init__(message, key=key)


class LoadTimeout(ModelError):
    """Waiting for another caller's in-flight load exceeded its bound."""

    def __init__(self, key: str, timeout: float) -> None:
        self.timeout = timeout
        super().__init__(f"Timed out after {timeout:.1f}s waiting for {key!r} to load", key=key)


class HandleClosedError(ModelError):
    """A loaded handle was used or released after it was closed."""


class GenerationError(ModelError):
    """A ready model failed while generating text."""


class InvalidTransitionError(ModelError):
    """A status change outside the permitted state machine was attempted."""

    def __init__(self, key: str, current: str, target: str) -> None:
        self.current = current
        self.target = target
        super().__init__(f"Invalid status transition for {key!r}: {current} -> {target}", key=key)


class RegistryClosedError(ModelError):
    """The registry was shut down and accepts no more loads."""

    def __init__(self, key: str | None = None) -> None:
        super().__init__("Model registry has been shut down", key=key)
