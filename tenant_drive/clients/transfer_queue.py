"""Client-side transfer queue driving single-shot and multipart uploads.

Jobs run one at a time. A multipart job uploads its parts in fixed batches of
``concurrency`` on a thread pool; each batch finishes completely before the
next one is dispatched. Once a multipart session exists, any failure or
cancellation aborts it remotely. Finished jobs are kept for inspection up to
``TransferConfig.retain_finished_jobs``, oldest dropped first.
"""

from __future__ import annotations

import logging
import math
import mimetypes
import threading
import uuid
from collections import deque
from concurrent.futures import ThreadPoolExecutor, as_completed
from pathlib import Path
from typing import Deque, Dict, List, Optional, Set, Union

from ..config import ObservabilityConfig, TransferConfig
from ..errors import TenantDriveError, TransferError
from ..models import (
    PartRange,
    TransferDestination,
    TransferDirection,
    TransferJob,
    TransferPart,
    TransferStatus,
)
from ..telemetry import TelemetryCollector
from .transfer_client import TransferAPIClient

logger = logging.getLogger(__name__)

MULTIPART = "multipart"
SINGLE = "single"


def plan_parts(size: int, part_size: int) -> List[PartRange]:
    """Partition ``[0, size)`` into consecutive ranges of ``part_size`` bytes."""
    if part_size <= 0:
        raise ValueError("part_size must be positive")
    total_parts = math.ceil(size / part_size)
    return [
        PartRange(part_number=index + 1, start=index * part_size, end=min(size, (index + 1) * part_size))
        for index in range(total_parts)
    ]


def choose_strategy(size: int, threshold: int) -> str:
    return MULTIPART if size >= threshold else SINGLE


class _Cancelled(Exception):
    pass


class TransferQueue:
    def __init__(
        self,
        client: TransferAPIClient,
        config: Optional[TransferConfig] = None,
        telemetry: Optional[TelemetryCollector] = None,
    ) -> None:
        self.client = client
        self.config = config or TransferConfig()
        self.telemetry = telemetry or TelemetryCollector(ObservabilityConfig())
        self._jobs: Dict[str, TransferJob] = {}
        self._pending: Deque[str] = deque()
        self._cancel_requested: Set[str] = set()
        self._committing: Set[str] = set()
        self._lock = threading.Lock()
        self._run_lock = threading.Lock()
        self._active_job: Optional[str] = None
        self._wakeup = threading.Event()
        self._stop = threading.Event()
        self._worker: Optional[threading.Thread] = None

    # Queue management ------------------------------------------------------

    def enqueue(
        self,
        source: Union[Path, str, bytes],
        destination: TransferDestination,
        *,
        name: Optional[str] = None,
        content_type: Optional[str] = None,
    ) -> str:
        if isinstance(source, bytes):
            if not name:
                raise ValueError("name is required when uploading raw bytes")
            total_size = len(source)
        else:
            source = Path(source)
            if not source.is_file():
                raise FileNotFoundError(source)
            total_size = source.stat().st_size
            name = name or source.name
        job = TransferJob(
            job_id=str(uuid.uuid4()),
            direction=TransferDirection.UPLOAD,
            source=source,
            destination=destination,
            name=name,
            total_size=total_size,
            content_type=content_type or mimetypes.guess_type(name)[0] or "application/octet-stream",
        )
        return self._submit(job)

    def enqueue_download(self, bucket_id: str, key: str, target: Union[Path, str]) -> str:
        job = TransferJob(
            job_id=str(uuid.uuid4()),
            direction=TransferDirection.DOWNLOAD,
            source=key,
            destination=TransferDestination(bucket_id=bucket_id, key=key),
            name=Path(key).name,
            total_size=0,
            target=Path(target),
        )
        return self._submit(job)

    def get(self, job_id: str) -> Optional[TransferJob]:
        with self._lock:
            return self._jobs.get(job_id)

    def jobs(self) -> List[TransferJob]:
        with self._lock:
            return list(self._jobs.values())

    def pending(self) -> List[str]:
        with self._lock:
            return list(self._pending)

    @property
    def active_job_id(self) -> Optional[str]:
        with self._lock:
            return self._active_job

    def cancel(self, job_id: str) -> bool:
        """Cancel a pending or running job; returns ``False`` for unknown or finished jobs.

        A pending job is aborted at once. A running job stops at its next
        checkpoint: before each part batch, before finalizing a multipart
        session, around a single-shot PUT and around a download. Multipart
        sessions are aborted remotely. Once a job is finalizing (completing
        the session, registering the file or writing the download) it can no
        longer be cancelled.
        """
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.status.is_terminal or job_id in self._committing:
                return False
            if job_id in self._pending:
                self._pending.remove(job_id)
                job.status = TransferStatus.ABORTED
                job.error = "cancelled"
                return True
            self._cancel_requested.add(job_id)
        logger.info("Cancellation requested for active job %s", job_id)
        return True

    def forget(self, job_id: str) -> bool:
        """Drop a finished job from the queue's history."""
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None or not job.status.is_terminal:
                return False
            del self._jobs[job_id]
            return True

    # Execution -------------------------------------------------------------

    def process_next(self) -> Optional[TransferJob]:
        with self._run_lock:
            with self._lock:
                if not self._pending:
                    return None
                job = self._jobs[self._pending.popleft()]
                self._active_job = job.job_id
                job.status = TransferStatus.UPLOADING
            try:
                if job.direction == TransferDirection.DOWNLOAD:
                    self._run_download(job)
                elif choose_strategy(job.total_size, self.config.multipart_threshold) == MULTIPART:
                    self._run_multipart(job)
                else:
                    self._run_single(job)
                job.status = TransferStatus.COMPLETE
                job.progress_percent = 100
                self.telemetry.emit_metric("transfer.completed", 1, {"direction": job.direction.value})
            except _Cancelled:
                job.status = TransferStatus.ABORTED
                job.error = "cancelled"
                logger.info("Transfer %s (%s) cancelled", job.job_id, job.name)
            except (TenantDriveError, OSError) as exc:
                self._fail(job, getattr(exc, "message", None) or str(exc))
            except Exception as exc:  # any other client failure still ends the job
                logger.exception("Transfer %s (%s) crashed", job.job_id, job.name)
                self._fail(job, f"{type(exc).__name__}: {exc}")
            finally:
                with self._lock:
                    self._active_job = None
                    self._cancel_requested.discard(job.job_id)
                    self._committing.discard(job.job_id)
                    self._prune_finished()
            return job

    def run_pending(self) -> List[TransferJob]:
        processed = []
        while True:
            job = self.process_next()
            if job is None:
                return processed
            processed.append(job)

    def start(self, poll_interval: float = 0.5) -> None:
        if self._worker and self._worker.is_alive():
            return
        self._stop.clear()
        self._worker = threading.Thread(
            target=self._work, args=(poll_interval,), name="transfer-queue", daemon=True
        )
        self._worker.start()

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop.set()
        self._wakeup.set()
        if self._worker:
            self._worker.join(timeout)
            self._worker = None

    # Strategies ------------------------------------------------------------

    def _run_single(self, job: TransferJob) -> None:
        dest = job.destination
        presigned = self.client.presign(
            dest.bucket_id,
            "upload",
            name=job.name,
            parent_id=dest.parent_id,
            content_type=job.content_type,
        )
        job.key = presigned["key"]
        data = self._read_range(job, PartRange(part_number=1, start=0, end=job.total_size))
        self._check_cancelled(job)
        self.client.put_bytes(presigned["url"], data, job.content_type)
        # A cancel landing here leaves the stored object unregistered.
        self._commit(job)
        self.client.register_file(
            dest.bucket_id,
            job.name,
            job.total_size,
            key=job.key,
            mime_type=job.content_type,
            parent_id=dest.parent_id,
        )

    def _run_multipart(self, job: TransferJob) -> None:
        dest = job.destination
        session = self.client.initiate(dest.bucket_id, job.name, job.content_type, dest.parent_id)
        job.upload_id = session["uploadId"]
        job.key = session["key"]
        try:
            self._upload_parts(job)
            self._commit(job)
            job.parts.sort(key=lambda part: part.part_number)
            self.client.complete(
                dest.bucket_id,
                job.key,
                job.upload_id,
                job.parts,
                name=job.name,
                size=job.total_size,
                mime_type=job.content_type,
                parent_id=dest.parent_id,
            )
        except Exception:
            self._abort_remote(job)
            raise

    def _upload_parts(self, job: TransferJob) -> None:
        ranges = plan_parts(job.total_size, self.config.part_size)
        concurrency = max(1, self.config.concurrency)
        completed = 0
        with ThreadPoolExecutor(max_workers=concurrency, thread_name_prefix="transfer-part") as pool:
            for offset in range(0, len(ranges), concurrency):
                self._check_cancelled(job)
                batch = ranges[offset : offset + concurrency]
                futures = [pool.submit(self._upload_part, job, part_range) for part_range in batch]
                failure: Optional[Exception] = None
                for future in as_completed(futures):
                    try:
                        part = future.result()
                    except Exception as exc:
                        failure = failure or exc
                        continue
                    job.parts.append(part)
                    completed += 1
                    job.progress_percent = round(completed / len(ranges) * 100)
                if failure is not None:
                    raise TransferError(f"Part upload failed: {getattr(failure, 'message', failure)}") from failure

    def _run_download(self, job: TransferJob) -> None:
        presigned = self.client.presign(job.destination.bucket_id, "download", key=job.destination.key)
        self._check_cancelled(job)
        data = self.client.get_bytes(presigned["url"])
        self._commit(job)
        job.total_size = len(data)
        target = job.target or Path(job.name)
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(data)

    # Helpers ---------------------------------------------------------------

    def _upload_part(self, job: TransferJob, part_range: PartRange) -> TransferPart:
        url = self.client.sign_part(job.destination.bucket_id, job.key, job.upload_id, part_range.part_number)
        data = self._read_range(job, part_range)
        etag = self.client.put_bytes(url, data)
        self.telemetry.emit_metric("transfer.part_uploaded", part_range.length, {"job_id": job.job_id})
        return TransferPart(part_number=part_range.part_number, etag=etag)

    def _abort_remote(self, job: TransferJob) -> None:
        if not job.upload_id or not job.key:
            return
        try:
            self.client.abort(job.destination.bucket_id, job.key, job.upload_id)
        except Exception as exc:
            logger.warning("Abort of upload %s failed: %s", job.upload_id, getattr(exc, "message", exc))

    @staticmethod
    def _read_range(job: TransferJob, part_range: PartRange) -> bytes:
        if isinstance(job.source, bytes):
            return job.source[part_range.start : part_range.end]
        with Path(job.source).open("rb") as handle:
            handle.seek(part_range.start)
            data = handle.read(part_range.length)
        if len(data) != part_range.length:
            raise TransferError(f"{job.name} changed size while uploading")
        return data

    def _submit(self, job: TransferJob) -> str:
        with self._lock:
            self._jobs[job.job_id] = job
            self._pending.append(job.job_id)
        self._wakeup.set()
        return job.job_id

    def _check_cancelled(self, job: TransferJob) -> None:
        with self._lock:
            cancelled = job.job_id in self._cancel_requested
        if cancelled:
            raise _Cancelled()

    def _commit(self, job: TransferJob) -> None:
        """Last cancellation checkpoint; from here on ``cancel`` returns ``False``."""
        with self._lock:
            if job.job_id in self._cancel_requested:
                raise _Cancelled()
            self._committing.add(job.job_id)

    def _fail(self, job: TransferJob, message: str) -> None:
        job.status = TransferStatus.ERROR
        job.error = message
        logger.warning("Transfer %s (%s) failed: %s", job.job_id, job.name, message)
        self.telemetry.emit_metric("transfer.failed", 1, {"direction": job.direction.value})

    def _prune_finished(self) -> None:
        # Caller holds self._lock.
        finished = [job_id for job_id, job in self._jobs.items() if job.status.is_terminal]
        for job_id in finished[: max(0, len(finished) - self.config.retain_finished_jobs)]:
            del self._jobs[job_id]

    def _work(self, poll_interval: float) -> None:
        while not self._stop.is_set():
            if self.process_next() is None:
                self._wakeup.wait(poll_interval)
                self._wakeup.clear()
