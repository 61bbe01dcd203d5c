import logging
from typing import Optional

import uvicorn
from fastapi import Depends, FastAPI, HTTPException
from pydantic import BaseModel, ConfigDict, Field, model_validator

from common import config
from common.job_schema import Clip, Job, JobStatus, Seconds
from common.job_store import get_job_store
from worker.fetcher import extract_video_id, watch_url

log = logging.getLogger(__name__)

app = FastAPI(title="Testimony Clip Processing API")

DEFAULT_PRIORITY = 1


class JobRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    clip_id: str = Field(alias="clipId")
    youtube_url: str = Field(alias="youtubeUrl")
    start_time_seconds: Seconds = Field(alias="startTimeSeconds")
    end_time_seconds: Seconds = Field(alias="endTimeSeconds")
    clip_title: Optional[str] = Field(default=None, alias="clipTitle")
    priority: int = DEFAULT_PRIORITY

    @model_validator(mode="after")
    def _check_range(self):
        if self.start_time_seconds < 0:
            raise ValueError("startTimeSeconds must not be negative")
        if self.end_time_seconds <= self.start_time_seconds:
            raise ValueError("endTimeSeconds must be greater than startTimeSeconds")
        return self


def _enqueue(store, clip_id: str, youtube_url: str, start: Seconds, end: Seconds,
             title: Optional[str], priority: int, created_by: str) -> Job:
    video_id = extract_video_id(youtube_url)
    if not video_id:
        raise HTTPException(status_code=400, detail=f"Invalid YouTube URL: {youtube_url}")

    job = Job(
        id=store.new_job_id(),
        clip_id=clip_id,
        youtube_url=youtube_url,
        video_id=video_id,
        start_time_seconds=start,
        end_time_seconds=end,
        clip_title=title or "Untitled Testimony",
        status=JobStatus.PENDING,
        priority=priority,
        created_by=created_by,
    )
    job = store.enqueue_job(job)
    log.info(f"Created processing job {job.id} for clip {clip_id}")
    return job


# ---------- API endpoints ----------

@app.get("/health")
def health():
    return {"status": "ok"}


@app.post("/jobs", status_code=201)
def create_job(request: JobRequest, store=Depends(get_job_store)):
    if store.get_clip(request.clip_id) is None:
        raise HTTPException(status_code=404, detail="Clip not found")
    job = _enqueue(store, request.clip_id, request.youtube_url,
                   request.start_time_seconds, request.end_time_seconds,
                   request.clip_title, request.priority, created_by="admin")
    return {"job_id": job.id, "status": job.status}


@app.get("/jobs/{job_id}")
def read_job(job_id: str, store=Depends(get_job_store)):
    job = store.get_job(job_id)
    if not job:
        raise HTTPException(status_code=404, detail="Job not found")
    return job.model_dump(mode="json", by_alias=True)


@app.get("/clips/{clip_id}")
def read_clip(clip_id: str, store=Depends(get_job_store)):
    clip = store.get_clip(clip_id)
    if not clip:
        raise HTTPException(status_code=404, detail="Clip not found")
    return clip.model_dump(mode="json", by_alias=True)


@app.post("/clips/{clip_id}/reextract", status_code=201)
def reextract_clip(clip_id: str, priority: int = DEFAULT_PRIORITY, store=Depends(get_job_store)):
    """Queues a fresh extraction job for an existing clip."""
    clip: Optional[Clip] = store.get_clip(clip_id)
    if not clip:
        raise HTTPException(status_code=404, detail="Clip not found")
    if not clip.source_video_id or clip.start_time_seconds is None or clip.end_time_seconds is None:
        raise HTTPException(status_code=400, detail="Clip has no source video or time range")
    if clip.end_time_seconds <= clip.start_time_seconds:
        raise HTTPException(status_code=400, detail="Clip time range is empty")

    video = store.get_video(clip.source_video_id)
    if video is None:
        raise HTTPException(status_code=404, detail="Source video not found")

    youtube_url = video.get("url") or watch_url(clip.source_video_id)
    log.info(f"Re-extraction requested for clip {clip_id} ({youtube_url})")
    job = _enqueue(store, clip_id, youtube_url, clip.start_time_seconds, clip.end_time_seconds,
                   clip.title, priority, created_by="reextract")
    return {"job_id": job.id, "status": job.status, "clip_id": clip_id}


def main():
    logging.basicConfig(level=config.LOG_LEVEL, format="%(asctime)s [%(levelname)s] %(name)s: %(message)s")
    uvicorn.run(app, host=config.API_HOST, port=config.API_PORT)
