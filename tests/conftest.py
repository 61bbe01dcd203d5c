import pytest

from common.job_schema import Clip, ClipProcessingStatus, Job
from common.job_store import LocalJobStore


def make_job(job_id="job1", clip_id="clip1", video_id="abc12345678", start=30, end=90,
             priority=1, created_at="2024-01-01T00:00:00+00:00", url=None, **extra) -> Job:
    return Job(
        id=job_id,
        clip_id=clip_id,
        video_id=video_id,
        youtube_url=url or f"https://www.youtube.com/watch?v={video_id}",
        start_time_seconds=start,
        end_time_seconds=end,
        clip_title="Healed of cancer",
        priority=priority,
        created_at=created_at,
        **extra,
    )


def make_clip(clip_id="clip1", video_id="abc12345678", start=30, end=90,
              processing_status=ClipProcessingStatus.PENDING, **extra) -> Clip:
    return Clip(
        id=clip_id,
        title="Healed of cancer",
        source_video_id=video_id,
        start_time_seconds=start,
        end_time_seconds=end,
        processing_status=processing_status,
        **extra,
    )


@pytest.fixture
def store(tmp_path):
    return LocalJobStore(tmp_path / "jobs.json")


@pytest.fixture
def seeded_store(store):
    """Store holding clip1 and a pending job1 for it."""
    store.put_clip(make_clip())
    store.enqueue_job(make_job())
    return store
