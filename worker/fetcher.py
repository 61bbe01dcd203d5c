import logging
import re
import threading
from pathlib import Path
from typing import Callable, Optional

import yt_dlp
from yt_dlp.utils import DownloadCancelled, DownloadError

from common.errors import DownloadFailed, InvalidSourceUrl, WriteFailed

log = logging.getLogger(__name__)

# watch?v=, youtu.be/, /embed/, /v/, /e/ and nested paths like /user/x/y/
VIDEO_ID_PATTERN = re.compile(
    r"(?:https?://)?(?:www\.)?"
    r"(?:youtube\.com/(?:[^/\n\s]+/\S+/|(?:v|e(?:mbed)?)/|\S*?[?&]v=)|youtu\.be/)"
    r"([a-zA-Z0-9_-]{11})"
)

# Best single file that already carries both audio and video, so no merge step is needed.
COMBINED_FORMAT = "best[vcodec!=none][acodec!=none]"

ProgressCallback = Callable[[int, Optional[int]], None]


def extract_video_id(url: str) -> Optional[str]:
    match = VIDEO_ID_PATTERN.search(url or "")
    return match.group(1) if match else None


def watch_url(video_id: str) -> str:
    return f"https://www.youtube.com/watch?v={video_id}"


class _ProgressLogger:
    """
    yt-dlp progress hook that logs every 10% and forwards byte counts.
    A set cancel_event aborts the download at its next progress report.
    """

    def __init__(self, video_id: str, on_progress: Optional[ProgressCallback] = None,
                 cancel_event: Optional[threading.Event] = None):
        self.video_id = video_id
        self.on_progress = on_progress
        self.cancel_event = cancel_event
        self._last_decile = 0

    def __call__(self, status: dict):
        if self.cancel_event is not None and self.cancel_event.is_set():
            raise DownloadCancelled(f"download of {self.video_id} was cancelled")
        if status.get("status") == "finished":
            size_mb = (status.get("downloaded_bytes") or status.get("total_bytes") or 0) / 1024 / 1024
            log.info(f"Downloaded {self.video_id}: {size_mb:.2f} MB")
            return
        if status.get("status") != "downloading":
            return

        downloaded = status.get("downloaded_bytes") or 0
        total = status.get("total_bytes") or status.get("total_bytes_estimate")
        if self.on_progress:
            self.on_progress(downloaded, total)
        if total:
            decile = int(downloaded * 10 / total)
            if decile > self._last_decile:
                self._last_decile = decile
                log.info(f"Download progress {self.video_id}: {decile * 10}%")


def download_video(youtube_url: str, output_path, on_progress: Optional[ProgressCallback] = None,
                   cancel_event: Optional[threading.Event] = None) -> Path:
    """
    Downloads the highest-quality combined audio+video rendition of a YouTube
    video to output_path.

    Raises InvalidSourceUrl before touching the filesystem when no video id can
    be parsed, DownloadFailed on stream errors and WriteFailed on local disk
    errors. No retry and no resume: a partial file is left for the caller's
    cleanup. Setting cancel_event stops the download, which then raises
    DownloadFailed.
    """
    video_id = extract_video_id(youtube_url)
    if not video_id:
        raise InvalidSourceUrl(f"Invalid YouTube URL: {youtube_url}")

    output_path = Path(output_path)
    log.info(f"Downloading video: {video_id}")

    options = {
        "format": COMBINED_FORMAT,
        "outtmpl": str(output_path),
        "noplaylist": True,
        "overwrites": True,
        "quiet": True,
        "no_warnings": True,
        "noprogress": True,
        "progress_hooks": [_ProgressLogger(video_id, on_progress, cancel_event)],
    }

    try:
        with yt_dlp.YoutubeDL(options) as ydl:
            ydl.download([watch_url(video_id)])
    except DownloadCancelled as e:
        raise DownloadFailed(f"Download failed: {e.msg}") from e
    except DownloadError as e:
        cause = e.exc_info[1] if e.exc_info else None
        if isinstance(cause, OSError):
            raise WriteFailed(f"Write failed: {cause}") from e
        raise DownloadFailed(f"Download failed: {e.msg}") from e
    except OSError as e:
        raise WriteFailed(f"Write failed: {e}") from e

    if not output_path.exists():
        raise DownloadFailed(f"Download failed: no file written for {video_id}")
    return output_path
