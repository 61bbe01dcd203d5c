import os
import tempfile
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()

BASE_DIR = Path(__file__).resolve().parents[1]

# Storage mode: firebase (Firestore + Firebase Storage) / local
STORAGE_BACKEND = os.getenv("STORAGE_BACKEND", "firebase")

# Polling and concurrency
POLL_INTERVAL_SECONDS = float(os.getenv("POLL_INTERVAL_SECONDS", "30"))
MAX_CONCURRENT_JOBS = int(os.getenv("MAX_CONCURRENT_JOBS", "1"))
SHUTDOWN_TIMEOUT_SECONDS = float(os.getenv("SHUTDOWN_TIMEOUT_SECONDS", str(5 * 60)))

# Per-stage timeouts (seconds)
DOWNLOAD_TIMEOUT_SECONDS = float(os.getenv("DOWNLOAD_TIMEOUT_SECONDS", "1800"))
TRANSCODE_TIMEOUT_SECONDS = float(os.getenv("TRANSCODE_TIMEOUT_SECONDS", "1800"))
UPLOAD_TIMEOUT_SECONDS = float(os.getenv("UPLOAD_TIMEOUT_SECONDS", "600"))
# How long a cancelled download gets to stop before its working dir is removed anyway.
DOWNLOAD_CANCEL_GRACE_SECONDS = float(os.getenv("DOWNLOAD_CANCEL_GRACE_SECONDS", "30"))

# Firebase
FIREBASE_STORAGE_BUCKET = os.getenv("FIREBASE_STORAGE_BUCKET")
FIREBASE_PROJECT_ID = os.getenv("FIREBASE_PROJECT_ID")
FIREBASE_CLIENT_EMAIL = os.getenv("FIREBASE_CLIENT_EMAIL")
FIREBASE_PRIVATE_KEY = os.getenv("FIREBASE_PRIVATE_KEY")
FIREBASE_SERVICE_ACCOUNT_JSON = os.getenv("FIREBASE_SERVICE_ACCOUNT_JSON")

JOBS_COLLECTION = "jobs"
CLIPS_COLLECTION = "clips"
VIDEOS_COLLECTION = "videos"

# Labels written to job and clip records
PROCESSOR_NAME = os.getenv("PROCESSOR_NAME", "local-mac")
PROCESSED_BY = f"{PROCESSOR_NAME}-processor"

FFMPEG_PATH = os.getenv("FFMPEG_PATH", "ffmpeg")
WORK_DIR = Path(os.getenv("WORK_DIR", tempfile.gettempdir()))

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

# Admin API
API_HOST = os.getenv("API_HOST", "127.0.0.1")
API_PORT = int(os.getenv("API_PORT", "8000"))

# Local mode
LOCAL_OUTPUT_DIR = Path(os.getenv("LOCAL_OUTPUT_DIR", str(BASE_DIR / "data" / "output")))
LOCAL_JOBS_FILE = Path(os.getenv("LOCAL_JOBS_FILE", str(BASE_DIR / "data" / "jobs.json")))
