import asyncio
import logging
import os
import signal
import subprocess
import sys
import textwrap
import time
from pathlib import Path

import pytest

from common.errors import DownloadFailed, InvalidSourceUrl, TranscodeFailed, UploadFailed
from common.job_schema import ClipProcessingStatus, JobStatus
from worker import worker
from worker.fetcher import download_video
from conftest import make_clip, make_job

PUBLIC_URL = "https://storage.googleapis.com/bucket/clips/abc12345678/1700000000_30-90.mp4"


class FakePipeline:
    """Download/trim/upload doubles that record what the orchestrator asked for."""

    def __init__(self, fail_at=None, error=None):
        self.fail_at = fail_at
        self.error = error
        self.calls = []
        self.work_dirs = []
        self.release = None

    def download(self, url, path, cancel_event=None):
        self.calls.append(("download", url))
        self.work_dirs.append(path.parent)
        path.write_bytes(b"raw video")
        if self.fail_at == "download":
            raise self.error or DownloadFailed("Download failed: HTTP Error 403")
        return path

    async def trim(self, input_path, output_path, start, end):
        self.calls.append(("trim", start, end - start))
        if self.release is not None:
            await self.release.wait()
        output_path.write_bytes(b"clip")
        if self.fail_at == "trim":
            raise self.error or TranscodeFailed("Trimming failed: Conversion failed!")
        return output_path

    def upload(self, path, video_id, start, end):
        self.calls.append(("upload", video_id, start, end))
        if self.fail_at == "upload":
            raise self.error or UploadFailed("Upload failed: 403 Forbidden")
        return PUBLIC_URL


def make_orchestrator(store, pipeline, tmp_path, **kwargs):
    kwargs.setdefault("poll_interval", 0.01)
    return worker.Orchestrator(
        store,
        upload=pipeline.upload,
        download=pipeline.download,
        trim=pipeline.trim,
        work_root=tmp_path / "work",
        processor="test-host",
        processed_by="test-host-processor",
        **kwargs,
    )


def test_successful_job_publishes_clip(seeded_store, tmp_path):
    pipeline = FakePipeline()
    orchestrator = make_orchestrator(seeded_store, pipeline, tmp_path)

    url = asyncio.run(orchestrator.process_job(seeded_store.get_job("job1")))

    assert url == PUBLIC_URL
    assert pipeline.calls == [
        ("download", "https://www.youtube.com/watch?v=abc12345678"),
        ("trim", 30, 60),
        ("upload", "abc12345678", 30, 90),
    ]
    job = seeded_store.get_job("job1")
    clip = seeded_store.get_clip("clip1")
    assert job.status is JobStatus.COMPLETED
    assert job.processor == "test-host"
    assert job.processed_clip_url == PUBLIC_URL
    assert clip.processing_status is ClipProcessingStatus.COMPLETED
    assert clip.processed_clip_url == PUBLIC_URL
    assert clip.processed_by == "test-host-processor"


def test_working_dir_removed_after_success(seeded_store, tmp_path):
    pipeline = FakePipeline()
    asyncio.run(make_orchestrator(seeded_store, pipeline, tmp_path).process_job(seeded_store.get_job("job1")))

    (work_dir,) = pipeline.work_dirs
    assert work_dir.name.startswith("video_abc12345678_")
    assert not work_dir.exists()


@pytest.mark.parametrize("stage,error_cls", [
    ("download", DownloadFailed),
    ("trim", TranscodeFailed),
    ("upload", UploadFailed),
])
def test_stage_failure_marks_job_and_clip_failed(seeded_store, tmp_path, stage, error_cls):
    pipeline = FakePipeline(fail_at=stage)
    orchestrator = make_orchestrator(seeded_store, pipeline, tmp_path)

    with pytest.raises(error_cls):
        asyncio.run(orchestrator.process_job(seeded_store.get_job("job1")))

    job = seeded_store.get_job("job1")
    clip = seeded_store.get_clip("clip1")
    assert job.status is JobStatus.FAILED
    assert job.error
    assert job.failed_at is not None
    assert clip.processing_status is ClipProcessingStatus.FAILED
    assert clip.video_processing_error == job.error
    assert not any(d.exists() for d in pipeline.work_dirs)
    assert seeded_store.list_pending_jobs(5) == []


def test_unexpected_error_without_message_still_recorded(seeded_store, tmp_path):
    pipeline = FakePipeline(fail_at="upload", error=KeyError())
    with pytest.raises(KeyError):
        asyncio.run(make_orchestrator(seeded_store, pipeline, tmp_path).process_job(seeded_store.get_job("job1")))
    assert seeded_store.get_job("job1").error == "KeyError"


def test_malformed_url_fails_before_download(store, tmp_path):
    store.put_clip(make_clip())
    store.enqueue_job(make_job(url="https://example.com/watch?id=nope"))
    pipeline = FakePipeline()
    orchestrator = make_orchestrator(store, pipeline, tmp_path)
    orchestrator.download = download_video

    with pytest.raises(InvalidSourceUrl):
        asyncio.run(orchestrator.process_job(store.get_job("job1")))

    job = store.get_job("job1")
    assert job.status is JobStatus.FAILED
    assert "Invalid YouTube URL" in job.error
    assert pipeline.calls == []
    assert list((tmp_path / "work").iterdir()) == []


def test_stage_timeout_fails_job(seeded_store, tmp_path):
    pipeline = FakePipeline()
    pipeline.release = asyncio.Event()
    orchestrator = make_orchestrator(seeded_store, pipeline, tmp_path, transcode_timeout=0.05)

    with pytest.raises(TranscodeFailed, match="timed out"):
        asyncio.run(orchestrator.process_job(seeded_store.get_job("job1")))
    assert seeded_store.get_job("job1").status is JobStatus.FAILED


def test_download_timeout_stops_thread_before_cleanup(seeded_store, tmp_path):
    stopped = []

    def slow_download(url, path, cancel_event=None):
        # Keeps writing into the working dir, recreating it if needed, until cancelled.
        while not cancel_event.wait(0.01):
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(b"partial")
        stopped.append(path.parent)
        raise DownloadFailed("Download failed: cancelled")

    orchestrator = make_orchestrator(seeded_store, FakePipeline(), tmp_path,
                                     download_timeout=0.05, download_cancel_grace=2)
    orchestrator.download = slow_download

    with pytest.raises(DownloadFailed, match="timed out"):
        asyncio.run(orchestrator.process_job(seeded_store.get_job("job1")))

    (work_dir,) = stopped
    assert not work_dir.exists()
    assert seeded_store.get_job("job1").status is JobStatus.FAILED


def test_job_fails_when_clip_deleted_mid_job(seeded_store, tmp_path):
    pipeline = FakePipeline()
    original_download = pipeline.download

    def download_then_delete(url, path, cancel_event=None):
        seeded_store.delete_clip("clip1")
        return original_download(url, path, cancel_event)

    orchestrator = make_orchestrator(seeded_store, pipeline, tmp_path)
    orchestrator.download = download_then_delete

    with pytest.raises(KeyError):
        asyncio.run(orchestrator.process_job(seeded_store.get_job("job1")))

    job = seeded_store.get_job("job1")
    assert job.status is JobStatus.FAILED
    assert "clip1" in job.error
    assert seeded_store.list_pending_jobs(5) == []


def test_job_claimed_elsewhere_is_skipped(seeded_store, tmp_path):
    seeded_store.claim_job("job1", "other-host")
    pipeline = FakePipeline()

    result = asyncio.run(make_orchestrator(seeded_store, pipeline, tmp_path).process_job(make_job()))

    assert result is None
    assert pipeline.calls == []
    job = seeded_store.get_job("job1")
    assert job.status is JobStatus.PROCESSING
    assert job.processor == "other-host"


def test_cleanup_tolerates_missing_dir(tmp_path):
    worker.cleanup_working_dir(tmp_path / "never-created")


def test_cleanup_warns_and_continues(tmp_path, monkeypatch, caplog):
    work_dir = worker.create_working_dir("abc12345678", tmp_path)
    (work_dir / "original.mp4").write_bytes(b"x")
    (work_dir / "clipped.mp4").write_bytes(b"y")

    original_unlink = type(work_dir).unlink

    def flaky_unlink(self, *args, **kwargs):
        if self.name == "original.mp4":
            raise PermissionError("busy")
        return original_unlink(self, *args, **kwargs)

    monkeypatch.setattr(type(work_dir), "unlink", flaky_unlink)
    with caplog.at_level(logging.WARNING, logger="worker"):
        worker.cleanup_working_dir(work_dir)

    assert not (work_dir / "clipped.mp4").exists()
    assert "Cleanup warning" in caplog.text


def test_working_dirs_are_unique(tmp_path):
    first = worker.create_working_dir("abc12345678", tmp_path)
    second = worker.create_working_dir("abc12345678", tmp_path)
    assert first != second


def _seed_pending(store, count):
    store.put_clip(make_clip())
    for i in range(count):
        store.enqueue_job(make_job(f"job{i}", created_at=f"2024-01-0{i + 1}T00:00:00+00:00"))


def test_poll_respects_concurrency_ceiling(store, tmp_path):
    _seed_pending(store, 3)
    pipeline = FakePipeline()

    async def scenario():
        pipeline.release = asyncio.Event()
        orchestrator = make_orchestrator(store, pipeline, tmp_path, max_concurrent_jobs=2)
        started = await orchestrator.poll()
        assert started == 2
        assert orchestrator.currently_processing == 2
        assert await orchestrator.poll() == 0

        pipeline.release.set()
        assert await orchestrator.drain() == 0
        return orchestrator

    orchestrator = asyncio.run(scenario())
    assert orchestrator.currently_processing == 0
    assert [job.id for job in store.list_pending_jobs(5)] == ["job2"]
    assert store.get_job("job0").status is JobStatus.COMPLETED


def test_poll_fills_only_free_slots(store, tmp_path):
    _seed_pending(store, 5)
    pipeline = FakePipeline()

    async def scenario():
        pipeline.release = asyncio.Event()
        orchestrator = make_orchestrator(store, pipeline, tmp_path, max_concurrent_jobs=3)
        assert await orchestrator.poll() == 3
        pipeline.release.set()
        await orchestrator.drain()
        pipeline.release = asyncio.Event()
        orchestrator.currently_processing += 2  # pretend two other jobs are still running
        started = await orchestrator.poll()
        orchestrator.currently_processing -= 2
        pipeline.release.set()
        await orchestrator.drain()
        return started

    assert asyncio.run(scenario()) == 1


def test_failed_job_does_not_stop_polling(store, tmp_path):
    _seed_pending(store, 1)
    pipeline = FakePipeline(fail_at="trim")

    async def scenario():
        orchestrator = make_orchestrator(store, pipeline, tmp_path)
        await orchestrator.poll()
        return await orchestrator.drain()

    assert asyncio.run(scenario()) == 0
    assert store.get_job("job0").status is JobStatus.FAILED


def test_poll_error_is_logged(tmp_path, caplog):
    class BrokenStore:
        def list_pending_jobs(self, limit):
            raise ConnectionError("firestore unavailable")

    orchestrator = make_orchestrator(BrokenStore(), FakePipeline(), tmp_path)
    with caplog.at_level(logging.ERROR, logger="worker"):
        assert asyncio.run(orchestrator.poll()) == 0
    assert "Poll error" in caplog.text


def test_no_polls_after_shutdown(seeded_store, tmp_path):
    orchestrator = make_orchestrator(seeded_store, FakePipeline(), tmp_path)
    orchestrator.request_shutdown()

    assert asyncio.run(orchestrator.poll()) == 0
    assert seeded_store.get_job("job1").status is JobStatus.PENDING


def test_shutdown_waits_for_in_flight_jobs(store, tmp_path):
    _seed_pending(store, 2)
    pipeline = FakePipeline()

    async def scenario():
        pipeline.release = asyncio.Event()
        orchestrator = make_orchestrator(store, pipeline, tmp_path, max_concurrent_jobs=2)
        loop = asyncio.get_running_loop()
        loop.call_later(0.05, orchestrator.request_shutdown)
        loop.call_later(0.2, pipeline.release.set)
        await orchestrator.start()
        assert orchestrator.currently_processing == 2
        return await orchestrator.drain()

    assert asyncio.run(scenario()) == 0
    assert all(store.get_job(f"job{i}").status is JobStatus.COMPLETED for i in range(2))


def test_forced_shutdown_exits_1(store, tmp_path):
    _seed_pending(store, 2)
    pipeline = FakePipeline()

    async def scenario():
        pipeline.release = asyncio.Event()
        orchestrator = make_orchestrator(store, pipeline, tmp_path, max_concurrent_jobs=2,
                                         shutdown_timeout=0.1)
        await orchestrator.poll()
        orchestrator.request_shutdown()
        return await orchestrator.drain()

    assert asyncio.run(scenario()) == 1


def test_sigterm_stops_run(seeded_store, tmp_path):
    orchestrator = make_orchestrator(seeded_store, FakePipeline(), tmp_path, poll_interval=0.05)

    async def scenario():
        asyncio.get_running_loop().call_later(0.1, os.kill, os.getpid(), signal.SIGTERM)
        return await orchestrator.run()

    assert asyncio.run(scenario()) == 0
    assert orchestrator.is_shutting_down
    assert seeded_store.get_job("job1").status is JobStatus.COMPLETED


HUNG_DOWNLOAD_WORKER = textwrap.dedent("""
    import asyncio
    import sys
    import time

    from common.job_store import LocalJobStore
    from common.job_schema import Clip, ClipProcessingStatus, Job
    from worker.worker import Orchestrator

    store = LocalJobStore(sys.argv[1])
    store.put_clip(Clip(id="clip1", title="t", source_video_id="abc12345678", start_time_seconds=30,
                        end_time_seconds=90, processing_status=ClipProcessingStatus.PENDING))
    store.enqueue_job(Job(id="job1", clip_id="clip1", video_id="abc12345678",
                          youtube_url="https://youtu.be/abc12345678",
                          start_time_seconds=30, end_time_seconds=90))

    def hung_download(url, path, cancel_event=None):
        time.sleep(30)

    orchestrator = Orchestrator(store, download=hung_download, poll_interval=0.05,
                                shutdown_timeout=1, download_timeout=None,
                                work_root=sys.argv[2], processor="test-host")

    async def scenario():
        asyncio.get_running_loop().call_later(0.5, orchestrator.request_shutdown)
        return await orchestrator.run(force_exit=True)

    sys.exit(asyncio.run(scenario()))
""")


def test_forced_exit_does_not_wait_for_hung_thread(tmp_path):
    root = Path(__file__).resolve().parents[1]
    env = {**os.environ, "PYTHONPATH": str(root), "STORAGE_BACKEND": "local"}

    started = time.monotonic()
    result = subprocess.run(
        [sys.executable, "-c", HUNG_DOWNLOAD_WORKER, str(tmp_path / "jobs.json"), str(tmp_path / "work")],
        cwd=root, env=env, capture_output=True, text=True, timeout=25,
    )
    elapsed = time.monotonic() - started

    assert result.returncode == 1, result.stderr
    assert elapsed < 10
    assert "Forcing exit" in result.stderr
