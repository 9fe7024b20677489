"""Atomic, retried download of model artifacts."""

from __future__ import annotations

import json
import os
import shutil
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path

import httpx

from .config import AcquisitionSettings
from .exceptions import AcquisitionError, IntegrityError
from .logging import log_event
from .models import ModelDescriptor
from .store import ArtifactStore


@dataclass
class DownloadJob:
    descriptor: ModelDescriptor
    staging_dir: Path
    pending: list[str]
    attempt: int = 0
    backoff: float = 0.0
    promoted: list[Path] = field(default_factory=list)
    job_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])


def build_client(settings: AcquisitionSettings) -> httpx.Client:
    """HTTP client with explicit connect/read timeouts."""
    timeout = httpx.Timeout(settings.read_timeout, connect=settings.connect_timeout)
    return httpx.Client(
        timeout=timeout,
        follow_redirects=True,
        headers={"User-Agent": settings.user_agent},
    )


class AcquisitionPipeline:
    """Gets every required file of a model onto local storage, or nothing at all."""

    def __init__(
        self,
        store: ArtifactStore,
        settings: AcquisitionSettings,
        client: httpx.Client | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.store = store
        self.settings = settings
        self._owns_client = client is None
        self._client = client if client is not None else build_client(settings)
        self._sleep = sleep

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    def is_present(self, descriptor: ModelDescriptor) -> bool:
        return self.store.is_complete(descriptor, self.settings.min_weights_bytes)

    # ------------------------------------------------------------------
    # acquire
    # ------------------------------------------------------------------

    def acquire(self, descriptor: ModelDescriptor) -> None:
        """Download whatever the model is missing.

        Raises AcquisitionError on network/storage failure and IntegrityError
        when every attempt produced an implausibly small weights file.
        """
        key = descriptor.key
        min_bytes = self.settings.min_weights_bytes
        weights = self.store.weights_path(descriptor)

        # Valid files already on disk are never re-fetched or replaced.
        pending = [
            f for f in descriptor.auxiliary_files
            if not self.store.exists(self.store.file_path(descriptor, f))
        ]
        if not self.store.weights_plausible(descriptor, min_bytes):
            pending.insert(0, descriptor.weights_file)
        if not pending:
            log_event("acquisition_skipped", model=key, reason="present", level="debug")
            return

        try:
            self.store.model_dir(descriptor).mkdir(parents=True, exist_ok=True)
            if self.store.exists(weights) and descriptor.weights_file in pending:
                size = self.store.size(weights)
                backup = self.store.backup(weights)
                log_event(
                    "artifact_backed_up",
                    model=key,
                    level="warning",
                    path=str(weights),
                    backup=str(backup),
                    size=size,
                    min_bytes=min_bytes,
                )
            staging = self.store.create_staging_dir(descriptor)
        except OSError as exc:
            raise AcquisitionError(f"Cannot prepare storage for {key}: {exc}", key=key) from exc

        job = DownloadJob(descriptor=descriptor, staging_dir=staging, pending=pending)
        log_event("acquisition_started", model=key, job_id=job.job_id, files=pending)
        try:
            for filename in job.pending:
                self._download_with_retry(job, filename)
            self._promote(job)
        except OSError as exc:
            self._discard_promoted(job)
            log_event("acquisition_failed", model=key, job_id=job.job_id, level="error", error=str(exc))
            raise AcquisitionError(f"Storage failure acquiring {key}: {exc}", key=key) from exc
        except BaseException as exc:
            self._discard_promoted(job)
            log_event("acquisition_failed", model=key, job_id=job.job_id, level="error", error=str(exc))
            raise
        finally:
            shutil.rmtree(job.staging_dir, ignore_errors=True)

        log_event("acquisition_complete", model=key, job_id=job.job_id, files=job.pending)

    def _download_with_retry(self, job: DownloadJob, filename: str) -> None:
        descriptor = job.descriptor
        key = descriptor.key
        url = descriptor.file_url(filename)
        target = job.staging_dir / filename
        is_weights = filename == descriptor.weights_file
        max_attempts = self.settings.max_attempts

        job.attempt = 0
        job.backoff = self.settings.backoff_initial
        last_error: Exception | None = None

        while job.attempt < max_attempts:
            job.attempt += 1
            try:
                log_event("download_started", model=key, file=filename, url=url, attempt=job.attempt)
                size = self._fetch(url, target, key, filename)
                if is_weights and size <= self.settings.min_weights_bytes:
                    raise IntegrityError(
                        f"Downloaded {filename} for {key} is implausibly small: "
                        f"{size} bytes (minimum {self.settings.min_weights_bytes})",
                        key=key,
                        path=str(target),
                    )
                log_event("download_complete", model=key, file=filename, size=size, attempt=job.attempt)
                return
            except (httpx.HTTPError, IntegrityError) as exc:
                target.unlink(missing_ok=True)
                last_error = exc
                if job.attempt >= max_attempts:
                    break
                log_event(
                    "download_retry",
                    model=key,
                    level="warning",
                    file=filename,
                    attempt=job.attempt,
                    backoff=job.backoff,
                    error=str(exc),
                )
                self._sleep(job.backoff)
                job.backoff *= self.settings.backoff_factor

        if isinstance(last_error, IntegrityError):
            raise last_error
        raise AcquisitionError(
            f"Failed to download {filename} for {key} after {job.attempt} attempts: {last_error}",
            key=key,
        ) from last_error

    def _fetch(self, url: str, target: Path, key: str, filename: str) -> int:
        """Stream one remote file into ``target``; returns bytes written."""
        written = 0
        with self._client.stream("GET", url) as response:
            response.raise_for_status()
            total = int(response.headers.get("Content-Length") or 0)
            next_mark = 10
            with open(target, "wb") as f:
                for chunk in response.iter_bytes(self.settings.chunk_size):
                    f.write(chunk)
                    written += len(chunk)
                    if total:
                        percent = written * 100 // total
                        if percent >= next_mark:
                            log_event(
                                "download_progress",
                                model=key,
                                level="debug",
                                file=filename,
                                percent=min(percent, 100),
                            )
                            next_mark = (percent // 10 + 1) * 10
                f.flush()
                os.fsync(f.fileno())
            if total and written < total:
                raise httpx.ReadError(
                    f"Truncated transfer: {written} of {total} bytes",
                    request=response.request,
                )
        return written

    def _promote(self, job: DownloadJob) -> None:
        """Move staged files into place, weights last so presence implies completeness."""
        descriptor = job.descriptor
        ordered = sorted(job.pending, key=lambda f: f == descriptor.weights_file)
        for filename in ordered:
            final = self.store.file_path(descriptor, filename)
            os.replace(job.staging_dir / filename, final)
            job.promoted.append(final)

    def _discard_promoted(self, job: DownloadJob) -> None:
        for path in job.promoted:
            try:
                path.unlink(missing_ok=True)
            except OSError as exc:
                log_event("discard_failed", model=job.descriptor.key, level="error", path=str(path), error=str(exc))
        job.promoted.clear()

    # ------------------------------------------------------------------
    # verification
    # ------------------------------------------------------------------

    def verify(self, descriptor: ModelDescriptor) -> None:
        """Plausibility checks on the final files. Raises IntegrityError."""
        key = descriptor.key
        for filename in descriptor.required_files:
            path = self.store.file_path(descriptor, filename)
            if not self.store.exists(path):
                raise IntegrityError(f"{filename} missing for {key}: {path}", key=key, path=str(path))

        weights = self.store.weights_path(descriptor)
        size = self.store.size(weights)
        if size <= self.settings.min_weights_bytes:
            raise IntegrityError(
                f"{descriptor.weights_file} for {key} is too small: {size} bytes "
                f"(minimum {self.settings.min_weights_bytes})",
                key=key,
                path=str(weights),
            )

        for filename in descriptor.auxiliary_files:
            path = self.store.file_path(descriptor, filename)
            if self.store.size(path) == 0:
                raise IntegrityError(f"{filename} for {key} is empty", key=key, path=str(path))
            try:
                json.loads(path.read_text(encoding="utf-8"))
            except (ValueError, UnicodeDecodeError) as exc:
                raise IntegrityError(f"{filename} for {key} is not valid JSON: {exc}", key=key, path=str(path)) from exc

        log_event("artifacts_verified", model=key, weights_size=size, level="debug")
