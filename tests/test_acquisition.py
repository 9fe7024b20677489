"""Tests for the acquisition pipeline."""

from __future__ import annotations

import os
from pathlib import Path

import pytest

from testgen_models.acquisition import AcquisitionPipeline
from testgen_models.exceptions import AcquisitionError, IntegrityError
from testgen_models.models import ModelDescriptor
from testgen_models.store import STAGING_PREFIX, ArtifactStore

from conftest import CONFIG_JSON, MIN_WEIGHTS_BYTES, TOKENIZER_JSON, FakeHub, install_model, make_weights


def _staging_dirs(store: ArtifactStore) -> list:
    if not store.base_dir.exists():
        return []
    return [p for p in store.base_dir.iterdir() if p.name.startswith(STAGING_PREFIX)]


def test_fresh_acquire_downloads_all_files(
    acquisition: AcquisitionPipeline, store: ArtifactStore, language_model: ModelDescriptor, hub: FakeHub
) -> None:
    acquisition.acquire(language_model)

    assert sorted(hub.requests) == [
        "/tiny-gpt/config.json",
        "/tiny-gpt/pytorch_model.bin",
        "/tiny-gpt/tokenizer.json",
    ]
    assert store.weights_path(language_model).read_bytes() == make_weights()
    assert store.is_complete(language_model, MIN_WEIGHTS_BYTES)
    assert _staging_dirs(store) == []


def test_present_model_skips_network(
    acquisition: AcquisitionPipeline, store: ArtifactStore, language_model: ModelDescriptor, hub: FakeHub
) -> None:
    install_model(store, language_model)
    acquisition.acquire(language_model)
    assert hub.requests == []


def test_only_missing_auxiliary_files_fetched(
    acquisition: AcquisitionPipeline, store: ArtifactStore, language_model: ModelDescriptor, hub: FakeHub
) -> None:
    install_model(store, language_model)
    store.file_path(language_model, "config.json").unlink()

    acquisition.acquire(language_model)

    assert hub.requests == ["/tiny-gpt/config.json"]
    assert store.is_complete(language_model, MIN_WEIGHTS_BYTES)


def test_small_weights_backed_up_and_replaced(
    acquisition: AcquisitionPipeline, store: ArtifactStore, language_model: ModelDescriptor
) -> None:
    install_model(store, language_model, weights=b"\1" * 500)

    acquisition.acquire(language_model)

    backup = store.model_dir(language_model) / "pytorch_model.bin.backup"
    assert backup.read_bytes() == b"\1" * 500
    assert store.size(store.weights_path(language_model)) == len(make_weights())


def test_transient_failure_retried_with_backoff(
    acquisition: AcquisitionPipeline,
    store: ArtifactStore,
    language_model: ModelDescriptor,
    hub: FakeHub,
    sleeps: list[float],
) -> None:
    hub.fail("pytorch_model.bin", "connect", 503)

    acquisition.acquire(language_model)

    assert hub.count("pytorch_model.bin") == 3
    assert sleeps == [5.0, 10.0]
    assert store.is_complete(language_model, MIN_WEIGHTS_BYTES)


def test_retry_budget_exhausted(
    acquisition: AcquisitionPipeline,
    store: ArtifactStore,
    language_model: ModelDescriptor,
    hub: FakeHub,
    sleeps: list[float],
) -> None:
    hub.fail("pytorch_model.bin", "connect", "connect", "connect")

    with pytest.raises(AcquisitionError) as exc_info:
        acquisition.acquire(language_model)

    assert exc_info.value.key == "language-tiny-gpt"
    assert hub.count("pytorch_model.bin") == 3
    assert sleeps == [5.0, 10.0]
    assert not store.weights_path(language_model).exists()
    assert _staging_dirs(store) == []


def test_mid_transfer_failure_never_leaves_truncated_file(
    acquisition: AcquisitionPipeline,
    store: ArtifactStore,
    language_model: ModelDescriptor,
    hub: FakeHub,
) -> None:
    hub.fail("pytorch_model.bin", "drop", "drop", "drop")

    with pytest.raises(AcquisitionError):
        acquisition.acquire(language_model)

    weights = store.weights_path(language_model)
    assert not weights.exists()
    assert _staging_dirs(store) == []


def test_failure_keeps_prior_valid_auxiliary_files(
    acquisition: AcquisitionPipeline,
    store: ArtifactStore,
    language_model: ModelDescriptor,
    hub: FakeHub,
) -> None:
    install_model(store, language_model)
    store.file_path(language_model, "tokenizer.json").unlink()
    hub.fail("tokenizer.json", 500, 500, 500)

    with pytest.raises(AcquisitionError):
        acquisition.acquire(language_model)

    assert store.weights_path(language_model).read_bytes() == make_weights()
    assert not store.file_path(language_model, "tokenizer.json").exists()


def test_weights_not_promoted_when_auxiliary_file_fails(
    acquisition: AcquisitionPipeline,
    store: ArtifactStore,
    language_model: ModelDescriptor,
    hub: FakeHub,
) -> None:
    hub.fail("tokenizer.json", 404, 404, 404)

    with pytest.raises(AcquisitionError):
        acquisition.acquire(language_model)

    assert store.missing_files(language_model) == list(language_model.required_files)


def test_implausible_download_raises_integrity_error(
    acquisition: AcquisitionPipeline,
    store: ArtifactStore,
    language_model: ModelDescriptor,
    hub: FakeHub,
) -> None:
    hub.files["pytorch_model.bin"] = b"<html>rate limited</html>"

    with pytest.raises(IntegrityError):
        acquisition.acquire(language_model)

    assert hub.count("pytorch_model.bin") == 3
    assert not store.weights_path(language_model).exists()


def test_implausible_download_then_recovery(
    acquisition: AcquisitionPipeline,
    store: ArtifactStore,
    language_model: ModelDescriptor,
    hub: FakeHub,
) -> None:
    hub.fail("pytorch_model.bin", b"too small")

    acquisition.acquire(language_model)

    assert hub.count("pytorch_model.bin") == 2
    assert store.weights_plausible(language_model, MIN_WEIGHTS_BYTES)


def test_verify_accepts_complete_model(
    acquisition: AcquisitionPipeline, store: ArtifactStore, language_model: ModelDescriptor
) -> None:
    install_model(store, language_model)
    acquisition.verify(language_model)


def test_verify_rejects_missing_file(acquisition: AcquisitionPipeline, language_model: ModelDescriptor) -> None:
    with pytest.raises(IntegrityError, match="missing"):
        acquisition.verify(language_model)


def test_verify_rejects_invalid_json(
    acquisition: AcquisitionPipeline, store: ArtifactStore, language_model: ModelDescriptor
) -> None:
    install_model(store, language_model)
    store.file_path(language_model, "config.json").write_text("{not json")
    with pytest.raises(IntegrityError, match="valid JSON") as exc_info:
        acquisition.verify(language_model)
    assert exc_info.value.path is not None


def test_short_body_retried_as_truncated(
    acquisition: AcquisitionPipeline,
    store: ArtifactStore,
    language_model: ModelDescriptor,
    hub: FakeHub,
    sleeps: list[float],
) -> None:
    hub.fail("pytorch_model.bin", "short")

    acquisition.acquire(language_model)

    assert hub.count("pytorch_model.bin") == 2
    assert sleeps == [5.0]
    assert store.weights_path(language_model).read_bytes() == make_weights()


def test_short_body_never_promoted(
    acquisition: AcquisitionPipeline, store: ArtifactStore, language_model: ModelDescriptor, hub: FakeHub
) -> None:
    hub.fail("pytorch_model.bin", "short", "short", "short")

    with pytest.raises(AcquisitionError, match="Truncated"):
        acquisition.acquire(language_model)

    assert not store.weights_path(language_model).exists()


def test_small_weights_refetch_leaves_valid_auxiliary_files_alone(
    acquisition: AcquisitionPipeline,
    store: ArtifactStore,
    language_model: ModelDescriptor,
    hub: FakeHub,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    install_model(store, language_model, weights=b"\1" * 500)
    weights = store.weights_path(language_model)
    real_replace = os.replace

    def failing_replace(src, dst) -> None:
        if Path(dst) == weights:
            raise OSError("disk full")
        real_replace(src, dst)

    monkeypatch.setattr(os, "replace", failing_replace)

    with pytest.raises(AcquisitionError):
        acquisition.acquire(language_model)

    assert hub.requests == ["/tiny-gpt/pytorch_model.bin"]
    assert store.file_path(language_model, "config.json").read_bytes() == CONFIG_JSON
    assert store.file_path(language_model, "tokenizer.json").read_bytes() == TOKENIZER_JSON
    assert _staging_dirs(store) == []
