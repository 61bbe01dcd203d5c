import logging
import shutil
import time
from pathlib import Path
from typing import Optional

from google.api_core.exceptions import GoogleAPIError

from common import config
from common.errors import UploadFailed
from common.firebase import get_storage_client
from common.job_schema import Seconds, utc_now_iso

log = logging.getLogger(__name__)

# ------------------------------------------------------------------------------
# CONSTANTS
# Folder structure inside the bucket (or the local output directory).
# ------------------------------------------------------------------------------
CLIPS_PREFIX = "clips/"
CONTENT_TYPE = "video/mp4"
PUBLIC_URL_BASE = "https://storage.googleapis.com"


def build_clip_object_name(video_id: str, start: Seconds, end: Seconds,
                           uploaded_at: Optional[float] = None) -> str:
    """clips/{videoId}/{epochSeconds}_{start}-{end}.mp4"""
    epoch = int(uploaded_at if uploaded_at is not None else time.time())
    return f"{CLIPS_PREFIX}{video_id}/{epoch}_{start}-{end}.mp4"


def public_url(bucket_name: str, object_name: str) -> str:
    return f"{PUBLIC_URL_BASE}/{bucket_name}/{object_name}"


def _clip_metadata(video_id: str, start: Seconds, end: Seconds, extra: Optional[dict]) -> dict:
    # Custom object metadata values must be strings.
    metadata = {
        "videoId": video_id,
        "startTime": str(start),
        "endTime": str(end),
        "processedAt": utc_now_iso(),
        "processedBy": config.PROCESSED_BY,
    }
    if extra:
        metadata.update({k: str(v) for k, v in extra.items()})
    return metadata


# ------------------------------------------------------------------------------
# FIREBASE STORAGE (a Google Cloud Storage bucket)
# ------------------------------------------------------------------------------

def _upload_to_firebase(local_path: Path, object_name: str, metadata: dict,
                        bucket_name: Optional[str]) -> str:
    if not bucket_name:
        raise UploadFailed("FIREBASE_STORAGE_BUCKET is required for the firebase backend")

    client = get_storage_client()
    bucket = client.bucket(bucket_name)
    blob = bucket.blob(object_name)
    blob.metadata = metadata

    # upload_from_filename creates the object; make_public adds the allUsers reader ACL
    blob.upload_from_filename(str(local_path), content_type=CONTENT_TYPE)
    blob.make_public()
    return public_url(bucket_name, object_name)


# ------------------------------------------------------------------------------
# LOCAL FILESYSTEM
# Used when STORAGE_BACKEND="local".
# ------------------------------------------------------------------------------

def _upload_to_local(local_path: Path, object_name: str, metadata: dict) -> str:
    dest = config.LOCAL_OUTPUT_DIR / object_name
    dest.parent.mkdir(parents=True, exist_ok=True)
    shutil.copyfile(local_path, dest)
    log.debug(f"Local artifact metadata for {object_name}: {metadata}")
    return dest.as_uri()


# ------------------------------------------------------------------------------
# PUBLIC API
# ------------------------------------------------------------------------------

def upload_clip(local_path, video_id: str, start: Seconds, end: Seconds,
                extra_metadata: Optional[dict] = None,
                bucket_name: Optional[str] = None) -> str:
    """
    Uploads a trimmed clip under clips/{videoId}/{epochSeconds}_{start}-{end}.mp4,
    publicly readable, and returns its public URL.

    No dedup: every call gets a fresh timestamped key.
    """
    local_path = Path(local_path)
    object_name = build_clip_object_name(video_id, start, end)
    metadata = _clip_metadata(video_id, start, end, extra_metadata)
    log.info(f"Uploading {local_path.name} as {object_name}")

    try:
        if config.STORAGE_BACKEND == "firebase":
            url = _upload_to_firebase(local_path, object_name, metadata,
                                      bucket_name or config.FIREBASE_STORAGE_BUCKET)
        elif config.STORAGE_BACKEND == "local":
            url = _upload_to_local(local_path, object_name, metadata)
        else:
            raise RuntimeError(f"Unsupported STORAGE_BACKEND: {config.STORAGE_BACKEND}")
    except (GoogleAPIError, OSError) as e:
        raise UploadFailed(f"Upload failed: {e}") from e

    log.info(f"Uploaded: {url}")
    return url
