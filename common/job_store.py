"""
Job Store: where the worker reads pending jobs and records their outcome.

Two backends share one interface:
  * FirestoreJobStore - the `jobs`, `clips` and `videos` collections.
  * LocalJobStore     - the same three collections in a single JSON file,
                        for running the worker without Firebase.

Completion writes the Job and the Clip together (a Firestore batch, or a
single file write locally). Failure writes the Job first and on its own, so a
job always reaches a terminal state even when its clip has been deleted.
"""

import json
import logging
import threading
import uuid
from functools import lru_cache
from pathlib import Path
from typing import Dict, List, Optional

from google.api_core.exceptions import NotFound
from google.cloud import firestore
from google.cloud.firestore_v1.base_query import FieldFilter
from pydantic import ValidationError

from common import config
from common.firebase import get_firestore_client
from common.job_schema import Clip, ClipProcessingStatus, Job, JobStatus, utc_now_iso

log = logging.getLogger(__name__)

LOCAL_CLIP_PREFIX = "/clips/"


def _is_local_clip_url(url: Optional[str]) -> bool:
    return bool(url) and url.startswith(LOCAL_CLIP_PREFIX) and not url.startswith("http")


def _completion_updates(url: str, processed_by: str) -> tuple:
    now = utc_now_iso()
    clip_fields = {
        "processedClipUrl": url,
        "processingStatus": ClipProcessingStatus.COMPLETED.value,
        "processedAt": now,
        "processedBy": processed_by,
    }
    job_fields = {
        "status": JobStatus.COMPLETED.value,
        "completedAt": now,
        "processedClipUrl": url,
    }
    return job_fields, clip_fields


def _failure_updates(error: str) -> tuple:
    job_fields = {
        "status": JobStatus.FAILED.value,
        "failedAt": utc_now_iso(),
        "error": error,
    }
    clip_fields = {
        "processingStatus": ClipProcessingStatus.FAILED.value,
        "videoProcessingError": error,
    }
    return job_fields, clip_fields


def _enqueue_clip_updates() -> dict:
    return {
        "processingStatus": ClipProcessingStatus.PENDING.value,
        "videoProcessingError": None,
    }


# ------------------------------------------------------------------------------
# FIRESTORE
# ------------------------------------------------------------------------------

class FirestoreJobStore:
    def __init__(self, client: firestore.Client):
        self._client = client
        self._jobs = client.collection(config.JOBS_COLLECTION)
        self._clips = client.collection(config.CLIPS_COLLECTION)
        self._videos = client.collection(config.VIDEOS_COLLECTION)

    def list_pending_jobs(self, limit: int) -> List[Job]:
        """Oldest-highest-priority first: priority desc, then createdAt asc."""
        if limit <= 0:
            return []
        query = (
            self._jobs.where(filter=FieldFilter("status", "==", JobStatus.PENDING.value))
            .order_by("priority", direction=firestore.Query.DESCENDING)
            .order_by("createdAt", direction=firestore.Query.ASCENDING)
            .limit(limit)
        )
        return [Job(id=snap.id, **snap.to_dict()) for snap in query.stream()]

    def get_job(self, job_id: str) -> Optional[Job]:
        snap = self._jobs.document(job_id).get()
        return Job(id=snap.id, **snap.to_dict()) if snap.exists else None

    def get_clip(self, clip_id: str) -> Optional[Clip]:
        snap = self._clips.document(clip_id).get()
        return Clip(id=snap.id, **snap.to_dict()) if snap.exists else None

    def get_video(self, video_id: str) -> Optional[dict]:
        snap = self._videos.document(video_id).get()
        return (snap.to_dict() or {}) if snap.exists else None

    def new_job_id(self) -> str:
        return self._jobs.document().id

    def claim_job(self, job_id: str, processor: str) -> bool:
        """Move a job from pending to processing unless someone got there first."""
        ref = self._jobs.document(job_id)

        @firestore.transactional
        def _claim(transaction):
            snap = ref.get(transaction=transaction)
            if not snap.exists or (snap.to_dict() or {}).get("status") != JobStatus.PENDING.value:
                return False
            transaction.update(ref, {
                "status": JobStatus.PROCESSING.value,
                "processingStartedAt": utc_now_iso(),
                "processor": processor,
            })
            return True

        return _claim(self._client.transaction())

    def complete_job(self, job: Job, url: str, processed_by: str) -> None:
        job_fields, clip_fields = _completion_updates(url, processed_by)
        batch = self._client.batch()
        batch.update(self._clips.document(job.clip_id), clip_fields)
        batch.update(self._jobs.document(job.id), job_fields)
        batch.commit()

    def fail_job(self, job: Job, error: str) -> None:
        job_fields, clip_fields = _failure_updates(error)
        self._jobs.document(job.id).update(job_fields)
        try:
            self._clips.document(job.clip_id).update(clip_fields)
        except NotFound:
            log.warning(f"Clip {job.clip_id} no longer exists, job {job.id} marked failed only")

    def enqueue_job(self, job: Job) -> Job:
        if job.created_at is None:
            job = Job.model_validate({**job.model_dump(), "created_at": utc_now_iso()})
        batch = self._client.batch()
        batch.set(self._jobs.document(job.id), job.to_document())
        batch.update(self._clips.document(job.clip_id), _enqueue_clip_updates())
        batch.commit()
        return job

    def list_local_clips(self) -> List[Clip]:
        clips = []
        for snap in self._clips.stream():
            data = snap.to_dict() or {}
            if not _is_local_clip_url(data.get("processedClipUrl")):
                continue
            try:
                clips.append(Clip(id=snap.id, **data))
            except ValidationError as e:
                log.warning(f"Skipping malformed clip {snap.id}: {e}")
        return clips

    def update_clip(self, clip_id: str, fields: dict) -> None:
        self._clips.document(clip_id).update(fields)


# ------------------------------------------------------------------------------
# LOCAL JSON FILE
# ------------------------------------------------------------------------------

class LocalJobStore:
    """Keeps jobs, clips and videos in one JSON file: {collection: {id: document}}."""

    COLLECTIONS = (config.JOBS_COLLECTION, config.CLIPS_COLLECTION, config.VIDEOS_COLLECTION)

    def __init__(self, path: Path = config.LOCAL_JOBS_FILE):
        self.path = Path(path)
        self._lock = threading.Lock()
        self.path.parent.mkdir(parents=True, exist_ok=True)
        if not self.path.exists():
            self._write({})

    def _read(self) -> Dict[str, Dict[str, dict]]:
        content = self.path.read_text() if self.path.exists() else ""
        data = json.loads(content) if content.strip() else {}
        for name in self.COLLECTIONS:
            data.setdefault(name, {})
        return data

    def _write(self, data: dict) -> None:
        self.path.write_text(json.dumps(data, indent=2))

    def _require(self, data: dict, collection: str, doc_id: str) -> dict:
        try:
            return data[collection][doc_id]
        except KeyError:
            raise KeyError(f"{collection}/{doc_id} not found") from None

    @staticmethod
    def _advance(doc: dict, job_id: str, target: JobStatus) -> None:
        current = JobStatus(doc.get("status", JobStatus.PENDING.value))
        if not current.can_advance_to(target):
            raise ValueError(f"job {job_id} cannot move from {current.value} to {target.value}")

    # Seed helpers for local development and tests.
    def put_clip(self, clip: Clip) -> None:
        with self._lock:
            data = self._read()
            data[config.CLIPS_COLLECTION][clip.id] = clip.to_document()
            self._write(data)

    def delete_clip(self, clip_id: str) -> None:
        with self._lock:
            data = self._read()
            data[config.CLIPS_COLLECTION].pop(clip_id, None)
            self._write(data)

    def put_video(self, video_id: str, url: Optional[str] = None) -> None:
        with self._lock:
            data = self._read()
            data[config.VIDEOS_COLLECTION][video_id] = {"url": url} if url else {}
            self._write(data)

    def list_pending_jobs(self, limit: int) -> List[Job]:
        if limit <= 0:
            return []
        with self._lock:
            jobs = self._read()[config.JOBS_COLLECTION]
        pending = [
            (doc_id, doc) for doc_id, doc in jobs.items()
            if doc.get("status") == JobStatus.PENDING.value
        ]
        pending.sort(key=lambda item: (-item[1].get("priority", 0), item[1].get("createdAt") or ""))
        return [Job(id=doc_id, **doc) for doc_id, doc in pending[:limit]]

    def get_job(self, job_id: str) -> Optional[Job]:
        with self._lock:
            doc = self._read()[config.JOBS_COLLECTION].get(job_id)
        return Job(id=job_id, **doc) if doc is not None else None

    def get_clip(self, clip_id: str) -> Optional[Clip]:
        with self._lock:
            doc = self._read()[config.CLIPS_COLLECTION].get(clip_id)
        return Clip(id=clip_id, **doc) if doc is not None else None

    def get_video(self, video_id: str) -> Optional[dict]:
        with self._lock:
            return self._read()[config.VIDEOS_COLLECTION].get(video_id)

    def new_job_id(self) -> str:
        return str(uuid.uuid4())

    def claim_job(self, job_id: str, processor: str) -> bool:
        with self._lock:
            data = self._read()
            doc = data[config.JOBS_COLLECTION].get(job_id)
            if doc is None or doc.get("status") != JobStatus.PENDING.value:
                return False
            doc.update({
                "status": JobStatus.PROCESSING.value,
                "processingStartedAt": utc_now_iso(),
                "processor": processor,
            })
            self._write(data)
        return True

    def complete_job(self, job: Job, url: str, processed_by: str) -> None:
        job_fields, clip_fields = _completion_updates(url, processed_by)
        with self._lock:
            data = self._read()
            job_doc = self._require(data, config.JOBS_COLLECTION, job.id)
            clip_doc = self._require(data, config.CLIPS_COLLECTION, job.clip_id)
            self._advance(job_doc, job.id, JobStatus.COMPLETED)
            clip_doc.update(clip_fields)
            job_doc.update(job_fields)
            self._write(data)

    def fail_job(self, job: Job, error: str) -> None:
        job_fields, clip_fields = _failure_updates(error)
        with self._lock:
            data = self._read()
            job_doc = self._require(data, config.JOBS_COLLECTION, job.id)
            self._advance(job_doc, job.id, JobStatus.FAILED)
            job_doc.update(job_fields)
            clip_doc = data[config.CLIPS_COLLECTION].get(job.clip_id)
            if clip_doc is None:
                log.warning(f"Clip {job.clip_id} no longer exists, job {job.id} marked failed only")
            else:
                clip_doc.update(clip_fields)
            self._write(data)

    def enqueue_job(self, job: Job) -> Job:
        if job.created_at is None:
            job = Job.model_validate({**job.model_dump(), "created_at": utc_now_iso()})
        with self._lock:
            data = self._read()
            clip_doc = self._require(data, config.CLIPS_COLLECTION, job.clip_id)
            clip_doc.update(_enqueue_clip_updates())
            data[config.JOBS_COLLECTION][job.id] = job.to_document()
            self._write(data)
        return job

    def list_local_clips(self) -> List[Clip]:
        with self._lock:
            clips = self._read()[config.CLIPS_COLLECTION]
        result = []
        for clip_id, doc in clips.items():
            if not _is_local_clip_url(doc.get("processedClipUrl")):
                continue
            try:
                result.append(Clip(id=clip_id, **doc))
            except ValidationError as e:
                log.warning(f"Skipping malformed clip {clip_id}: {e}")
        return result

    def update_clip(self, clip_id: str, fields: dict) -> None:
        with self._lock:
            data = self._read()
            self._require(data, config.CLIPS_COLLECTION, clip_id).update(fields)
            self._write(data)


@lru_cache(maxsize=1)
def get_job_store():
    """Returns the job store for the configured STORAGE_BACKEND."""
    if config.STORAGE_BACKEND == "local":
        return LocalJobStore()
    elif config.STORAGE_BACKEND == "firebase":
        return FirestoreJobStore(get_firestore_client())
    else:
        raise RuntimeError(f"Unsupported STORAGE_BACKEND: {config.STORAGE_BACKEND}")
