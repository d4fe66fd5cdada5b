"""In-process transcode worker.

A FIFO ``asyncio.Queue`` drained by exactly one consumer task, so at most
one transcode runs in the process at any time. Each job downloads the raw
upload, re-probes and re-validates it, packages encrypted HLS, uploads the
result and records the outcome on the pitch.
"""

import asyncio
import logging
import os
import shutil
import time
from contextlib import asynccontextmanager
from typing import AsyncIterator, Callable, Optional

from pitchstream.core.config import settings
from pitchstream.core.logging import job_log_context, log_error, log_info, log_warning
from pitchstream.core.metrics import (
    MEDIA_PROBE_FAILURES_TOTAL,
    TRANSCODE_JOB_DURATION_SECONDS,
    TRANSCODE_JOBS_TOTAL,
    TRANSCODE_QUEUE_DEPTH,
    TRANSCODE_WORKER_BUSY,
)
from pitchstream.core.storage import ObjectStorage, StorageError, get_storage
from pitchstream.core.tracing import create_span, record_exception
from pitchstream.modules.pitch.collaborators import HttpSubscriptionLookup, SubscriptionLookup
from pitchstream.modules.pitch.models import ProcessingState
from pitchstream.modules.pitch.repository import PitchRepository
from pitchstream.modules.pitch.service import enforce_entitlement, hls_job_prefix
from pitchstream.modules.transcoding.ffmpeg import HLSTranscoder
from pitchstream.modules.transcoding.probe import MediaInspector, ProbeError
from pitchstream.modules.transcoding.schemas import TranscodeJob, WorkerStatus

logger = logging.getLogger(__name__)


@asynccontextmanager
async def database_repository_scope() -> AsyncIterator[PitchRepository]:
    """Open a session for one job."""
    from pitchstream.core.database import async_session_maker

    async with async_session_maker() as session:
        yield PitchRepository(session)


class TranscodeWorker:
    """Single-flight transcode job runner."""

    def __init__(
        self,
        storage: ObjectStorage,
        transcoder: HLSTranscoder,
        subscriptions: SubscriptionLookup,
        inspector: Optional[MediaInspector] = None,
        repository_scope: Callable = database_repository_scope,
        temp_dir: str = settings.TRANSCODE_TEMP_DIR,
    ):
        self.storage = storage
        self.transcoder = transcoder
        self.subscriptions = subscriptions
        self.inspector = inspector or MediaInspector()
        self.repository_scope = repository_scope
        self.temp_dir = temp_dir

        self._queue: asyncio.Queue[TranscodeJob] = asyncio.Queue()
        self._task: Optional[asyncio.Task] = None
        self._busy = False
        self.processed = 0
        self.failed = 0

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def busy(self) -> bool:
        return self._busy

    @property
    def queue_depth(self) -> int:
        return self._queue.qsize()

    def status(self) -> WorkerStatus:
        return WorkerStatus(
            running=self.running,
            busy=self._busy,
            queue_depth=self.queue_depth,
            processed=self.processed,
            failed=self.failed,
        )

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._run(), name="transcode-worker")
        logger.info("Transcode worker started")

    async def stop(self) -> None:
        """Cancel the consumer. Queued jobs are dropped."""
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Transcode worker stopped")

    async def join(self) -> None:
        """Wait until every queued job has been handled."""
        await self._queue.join()

    def enqueue(self, job: TranscodeJob) -> None:
        """Queue a job without waiting for it; the worker owns it from here."""
        self._queue.put_nowait(job)
        TRANSCODE_QUEUE_DEPTH.set(self._queue.qsize())
        log_info(logger, "Transcode job queued", owner_id=job.owner_id, queue_depth=self._queue.qsize())

    async def _run(self) -> None:
        while True:
            job = await self._queue.get()
            TRANSCODE_QUEUE_DEPTH.set(self._queue.qsize())
            self._busy = True
            TRANSCODE_WORKER_BUSY.set(1)
            try:
                await self.process_job(job)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                log_error(logger, f"Transcode job failed: {e}", exception=e, owner_id=job.owner_id)
            finally:
                self._busy = False
                TRANSCODE_WORKER_BUSY.set(0)
                self._queue.task_done()

    # ------------------------------------------------------------------
    # Jobs
    # ------------------------------------------------------------------

    async def process_job(self, job: TranscodeJob) -> bool:
        """Run one job with logging context, span and metrics.

        Returns:
            False if the job was dropped without touching the pitch.
        """
        started = time.perf_counter()
        outcome = "failed"
        with job_log_context(job.owner_id), create_span(
            "transcode.job", attributes={"owner_id": job.owner_id, "source_key": job.source_key}
        ):
            try:
                handled = await self.handle_job(job)
                outcome = "ready" if handled else "dropped"
                if handled:
                    self.processed += 1
                return handled
            except Exception as e:
                self.failed += 1
                record_exception(e)
                raise
            finally:
                TRANSCODE_JOBS_TOTAL.labels(status=outcome).inc()
                TRANSCODE_JOB_DURATION_SECONDS.labels(status=outcome).observe(
                    time.perf_counter() - started
                )

    async def handle_job(self, job: TranscodeJob) -> bool:
        async with self.repository_scope() as repo:
            pitch = await repo.get_by_owner(job.owner_id)
            if pitch is None:
                log_warning(logger, "Pitch no longer exists, dropping job", owner_id=job.owner_id)
                return False
            if pitch.raw_key != job.source_key:
                log_warning(logger, "Pitch was re-uploaded, dropping stale job", owner_id=job.owner_id)
                return False
            if pitch.state != ProcessingState.QUEUED:
                log_warning(
                    logger,
                    f"Pitch is {pitch.state.value}, dropping job",
                    owner_id=job.owner_id,
                )
                return False

            pitch.mark_processing()
            await repo.commit()
            log_info(logger, "Transcode started", owner_id=job.owner_id, stage="processing")

            started_ms = int(time.time() * 1000)
            source_dir = os.path.join(self.temp_dir, "source", job.owner_id, str(started_ms))
            output_dir = os.path.join(self.temp_dir, "hls", job.owner_id, str(started_ms))
            source_path = os.path.join(source_dir, os.path.basename(job.source_key) or "source")
            storage_prefix = hls_job_prefix(job.owner_id, started_ms)

            try:
                with create_span("transcode.download"):
                    await self.storage.download_to_file(job.source_key, source_path)

                with create_span("transcode.probe"):
                    try:
                        metadata = await self.inspector.inspect(source_path)
                    except ProbeError:
                        MEDIA_PROBE_FAILURES_TOTAL.labels(stage="worker").inc()
                        raise
                    await enforce_entitlement(pitch, metadata.duration_seconds, self.subscriptions)

                output = await self.transcoder.process_hls(
                    source_path,
                    output_dir,
                    job.owner_id,
                    storage_prefix,
                    metadata=metadata,
                )

                pitch.mark_ready(output.master_url, output.key_url, metadata)
                await repo.commit()
                log_info(
                    logger,
                    "Transcode finished",
                    owner_id=job.owner_id,
                    stage="ready",
                    renditions=[r.name for r in output.renditions],
                )
                return True
            except Exception as e:
                log_warning(logger, f"Transcode failed: {e}", owner_id=job.owner_id, stage="failed")
                await self._record_failure(repo, job, e)
                await self._discard_partial_upload(storage_prefix)
                raise
            finally:
                self._cleanup(source_dir, output_dir)

    async def _record_failure(self, repo: PitchRepository, job: TranscodeJob, error: Exception) -> None:
        """Mark the job's pitch failed from a clean session.

        The pitch is reloaded after the rollback; it may have been deleted or
        re-uploaded while the job ran. Errors here are logged and never
        replace the job's own error.
        """
        try:
            await repo.rollback()
            pitch = await repo.get_by_owner(job.owner_id)
            if pitch is None or pitch.raw_key != job.source_key:
                log_warning(logger, "Pitch changed during transcode, not recording failure", owner_id=job.owner_id)
                return
            if pitch.state != ProcessingState.PROCESSING:
                log_warning(
                    logger,
                    f"Pitch is {pitch.state.value}, not recording failure",
                    owner_id=job.owner_id,
                )
                return
            pitch.mark_failed(str(error))
            await repo.commit()
        except Exception as e:
            log_error(logger, f"Failed to record transcode failure: {e}", exception=e, owner_id=job.owner_id)

    async def _discard_partial_upload(self, prefix: str) -> None:
        try:
            await self.storage.delete_prefix(prefix)
        except StorageError as e:
            log_warning(logger, f"Failed to remove partial HLS upload: {e}", prefix=prefix)

    def _cleanup(self, *paths: str) -> None:
        for path in paths:
            try:
                shutil.rmtree(path)
            except FileNotFoundError:
                continue
            except OSError as e:
                log_warning(logger, f"Failed to remove temp directory: {e}", path=path)

    async def recover_stale_jobs(self) -> int:
        """Re-queue pitches left queued or processing by a previous process."""
        async with self.repository_scope() as repo:
            stale = list(await repo.list_stale())
            for pitch in stale:
                pitch.requeue()
            await repo.commit()

        for pitch in stale:
            self.enqueue(TranscodeJob(
                owner_id=pitch.owner_id,
                source_key=pitch.raw_key,
                file_name=pitch.file_name,
                file_size=pitch.file_size,
                owner_role=pitch.owner_role,
            ))
        if stale:
            log_info(logger, f"Recovered {len(stale)} stale transcode jobs")
        return len(stale)


_worker: Optional[TranscodeWorker] = None


def get_worker() -> TranscodeWorker:
    """Get the process-wide worker."""
    global _worker
    if _worker is None:
        storage = get_storage()
        inspector = MediaInspector()
        _worker = TranscodeWorker(
            storage=storage,
            transcoder=HLSTranscoder(storage=storage, inspector=inspector),
            subscriptions=HttpSubscriptionLookup(),
            inspector=inspector,
        )
    return _worker
