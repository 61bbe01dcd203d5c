import asyncio
import functools
import logging
import os
import shutil
import signal
import sys
import tempfile
import threading
import time
from pathlib import Path
from typing import Optional

from common import config
from common.errors import DownloadFailed, TranscodeFailed, UploadFailed
from common.job_schema import Job
from common.job_store import get_job_store
from common.storage import upload_clip
from worker.fetcher import download_video
from worker.transcoder import trim_video

log = logging.getLogger("worker")

ORIGINAL_FILENAME = "original.mp4"
CLIPPED_FILENAME = "clipped.mp4"
DRAIN_CHECK_SECONDS = 1.0


def create_working_dir(video_id: str, root=None) -> Path:
    """Private per-job directory, unique even for two jobs on the same video."""
    root = Path(root or config.WORK_DIR)
    root.mkdir(parents=True, exist_ok=True)
    prefix = f"video_{video_id}_{int(time.time() * 1000)}_"
    return Path(tempfile.mkdtemp(prefix=prefix, dir=root))


def cleanup_working_dir(working_dir: Path) -> None:
    """Deletes every file in working_dir, then working_dir. Problems are logged, never raised."""
    try:
        entries = list(working_dir.iterdir())
    except FileNotFoundError:
        return
    except OSError as e:
        log.warning(f"Cleanup warning: cannot list {working_dir}: {e}")
        entries = []

    for entry in entries:
        try:
            if entry.is_dir() and not entry.is_symlink():
                shutil.rmtree(entry)
            else:
                entry.unlink()
        except OSError as e:
            log.warning(f"Cleanup warning: could not remove {entry}: {e}")

    try:
        working_dir.rmdir()
        log.info("Cleaned up temp files")
    except OSError as e:
        log.warning(f"Cleanup warning: {e}")


async def _run_stage(awaitable, timeout: Optional[float], error_cls, stage: str):
    try:
        return await asyncio.wait_for(awaitable, timeout or None)
    except asyncio.TimeoutError:
        raise error_cls(f"{stage} timed out after {timeout:g}s") from None


def _consume_result(future) -> None:
    if not future.cancelled():
        future.exception()


async def _run_cancellable_stage(func, timeout: Optional[float], grace: float, error_cls, stage: str):
    """
    Runs func(cancel_event=...) in a worker thread. On timeout or task
    cancellation the event is set and the thread gets up to grace seconds to
    stop, so it is no longer writing when the working directory is removed.
    """
    cancel = threading.Event()
    future = asyncio.ensure_future(asyncio.to_thread(func, cancel_event=cancel))
    future.add_done_callback(_consume_result)
    try:
        return await asyncio.wait_for(asyncio.shield(future), timeout or None)
    except asyncio.TimeoutError:
        cancel.set()
        await _wait_stopped(future, grace, stage)
        raise error_cls(f"{stage} timed out after {timeout:g}s") from None
    except asyncio.CancelledError:
        cancel.set()
        await _wait_stopped(future, grace, stage)
        raise


async def _wait_stopped(future, grace: float, stage: str) -> None:
    done, _ = await asyncio.wait({future}, timeout=grace)
    if not done:
        log.warning(f"{stage} still running {grace:g}s after cancellation")


def _force_exit(code: int) -> None:
    # Threads blocked in SDK calls would keep a normal interpreter exit waiting.
    logging.shutdown()
    os._exit(code)


class Orchestrator:
    """
    Polls the job store and drives each pending job through
    download -> trim -> upload -> record.

    Everything runs on one event loop. Blocking SDK calls go through
    asyncio.to_thread, so in-flight jobs and the poll timer interleave at
    those calls. currently_processing and is_shutting_down are only touched
    from the loop thread.
    """

    def __init__(self, job_store,
                 upload=upload_clip,
                 download=download_video,
                 trim=trim_video,
                 poll_interval: float = config.POLL_INTERVAL_SECONDS,
                 max_concurrent_jobs: int = config.MAX_CONCURRENT_JOBS,
                 shutdown_timeout: float = config.SHUTDOWN_TIMEOUT_SECONDS,
                 download_timeout: Optional[float] = config.DOWNLOAD_TIMEOUT_SECONDS,
                 transcode_timeout: Optional[float] = config.TRANSCODE_TIMEOUT_SECONDS,
                 upload_timeout: Optional[float] = config.UPLOAD_TIMEOUT_SECONDS,
                 download_cancel_grace: float = config.DOWNLOAD_CANCEL_GRACE_SECONDS,
                 work_root=None,
                 processor: str = config.PROCESSOR_NAME,
                 processed_by: str = config.PROCESSED_BY):
        self.job_store = job_store
        self.upload = upload
        self.download = download
        self.trim = trim
        self.poll_interval = poll_interval
        self.max_concurrent_jobs = max_concurrent_jobs
        self.shutdown_timeout = shutdown_timeout
        self.download_timeout = download_timeout
        self.transcode_timeout = transcode_timeout
        self.upload_timeout = upload_timeout
        self.download_cancel_grace = download_cancel_grace
        self.work_root = work_root
        self.processor = processor
        self.processed_by = processed_by

        self.currently_processing = 0
        self.is_shutting_down = False
        self._stop = asyncio.Event()
        self._tasks = set()

    # ------------------------------------------------------------------
    # Per-job pipeline
    # ------------------------------------------------------------------

    async def process_job(self, job: Job) -> Optional[str]:
        """
        Runs one job to a terminal state and returns the published URL.

        Returns None when another worker claimed the job first. Any failure
        after the claim is written to both the job and its clip and then
        re-raised. The working directory is removed on every path.
        """
        log.info("=" * 60)
        log.info(f"Processing Job: {job.id}")
        log.info(f"Title: {job.clip_title}")
        log.info(f"URL: {job.youtube_url}")
        log.info(f"Time: {job.start_time_seconds}s - {job.end_time_seconds}s")
        log.info("=" * 60)

        claimed = await asyncio.to_thread(self.job_store.claim_job, job.id, self.processor)
        if not claimed:
            log.warning(f"Job {job.id} is no longer pending, skipping")
            return None

        working_dir = None
        try:
            working_dir = create_working_dir(job.video_id, self.work_root)
            original_path = working_dir / ORIGINAL_FILENAME
            clipped_path = working_dir / CLIPPED_FILENAME

            await _run_cancellable_stage(
                functools.partial(self.download, job.youtube_url, original_path),
                self.download_timeout, self.download_cancel_grace, DownloadFailed, "Download",
            )
            await _run_stage(
                self.trim(original_path, clipped_path, job.start_time_seconds, job.end_time_seconds),
                self.transcode_timeout, TranscodeFailed, "Trimming",
            )
            url = await _run_stage(
                asyncio.to_thread(self.upload, clipped_path, job.video_id,
                                  job.start_time_seconds, job.end_time_seconds),
                self.upload_timeout, UploadFailed, "Upload",
            )
            await asyncio.to_thread(self.job_store.complete_job, job, url, self.processed_by)
        except Exception as e:
            message = str(e) or type(e).__name__
            log.error(f"JOB FAILED: {job.id}: {message}")
            await asyncio.to_thread(self.job_store.fail_job, job, message)
            raise
        finally:
            if working_dir is not None:
                await asyncio.to_thread(cleanup_working_dir, working_dir)

        log.info(f"JOB COMPLETED SUCCESSFULLY: {job.id}")
        return url

    async def _run_job(self, job: Job) -> None:
        try:
            await self.process_job(job)
        except Exception:
            # Already recorded on the job and clip; nothing retries it.
            log.exception(f"Job processing error: {job.id}")
        finally:
            self.currently_processing -= 1

    # ------------------------------------------------------------------
    # Polling
    # ------------------------------------------------------------------

    async def poll(self) -> int:
        """Starts up to (ceiling - in flight) pending jobs; returns how many were started."""
        if self.is_shutting_down:
            log.info("Shutting down, skipping poll...")
            return 0

        if self.currently_processing >= self.max_concurrent_jobs:
            log.info(f"Already processing {self.currently_processing} job(s), waiting...")
            return 0

        slots = self.max_concurrent_jobs - self.currently_processing
        try:
            jobs = await asyncio.to_thread(self.job_store.list_pending_jobs, slots)
        except Exception:
            log.exception("Poll error")
            return 0

        if self.is_shutting_down:
            return 0
        if not jobs:
            log.debug(f"Waiting for jobs... (polling every {self.poll_interval:g}s)")
            return 0

        log.info(f"Found {len(jobs)} pending job(s)")
        for job in jobs[:slots]:
            self.currently_processing += 1
            task = asyncio.create_task(self._run_job(job), name=f"job-{job.id}")
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
        return min(len(jobs), slots)

    async def start(self) -> None:
        """Polls immediately and then every poll_interval until shutdown is requested."""
        log.info(f"Poll interval: {self.poll_interval:g}s")
        log.info(f"Max concurrent jobs: {self.max_concurrent_jobs}")
        while not self.is_shutting_down:
            await self.poll()
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self.poll_interval)
            except asyncio.TimeoutError:
                pass

    # ------------------------------------------------------------------
    # Shutdown
    # ------------------------------------------------------------------

    def request_shutdown(self) -> None:
        if self.is_shutting_down:
            return
        log.info("Shutting down gracefully...")
        self.is_shutting_down = True
        self._stop.set()

    async def drain(self) -> int:
        """Waits for in-flight jobs. Returns 0 when they finish, 1 on timeout."""
        if self.currently_processing == 0:
            log.info("Goodbye!")
            return 0

        log.info(f"Waiting for {self.currently_processing} job(s) to complete...")
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.shutdown_timeout
        while self.currently_processing > 0:
            remaining = deadline - loop.time()
            if remaining <= 0:
                log.warning(f"Force shutdown after {self.shutdown_timeout:g}s "
                            f"with {self.currently_processing} job(s) still running")
                return 1
            await asyncio.sleep(min(DRAIN_CHECK_SECONDS, remaining))

        log.info("All jobs completed. Goodbye!")
        return 0

    async def run(self, force_exit: bool = False) -> int:
        """
        Polls until SIGINT/SIGTERM, then drains. With force_exit a timed-out
        drain ends the process on the spot instead of returning 1.
        """
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, self.request_shutdown)

        log.info("Starting to poll for jobs... (Ctrl+C to stop)")
        await self.start()
        code = await self.drain()
        if code and force_exit:
            log.error("Forcing exit with jobs still in flight")
            _force_exit(code)
        return code


def main():
    logging.basicConfig(
        level=config.LOG_LEVEL,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    log.info("Clip processor started")
    log.info(f"Storage backend: {config.STORAGE_BACKEND}")
    log.info(f"Storage bucket: {config.FIREBASE_STORAGE_BUCKET}")

    orchestrator = Orchestrator(get_job_store())
    sys.exit(asyncio.run(orchestrator.run(force_exit=True)))


if __name__ == "__main__":
    main()
