import asyncio
import logging
from pathlib import Path
from typing import Callable, List, Optional

from common import config
from common.errors import TranscodeFailed
from common.job_schema import Seconds

log = logging.getLogger(__name__)

# Fixed encode settings: H.264/AAC at constant quality, moov atom up front for streaming.
ENCODE_OPTIONS = [
    "-c:v", "libx264",
    "-c:a", "aac",
    "-preset", "fast",
    "-crf", "22",
    "-movflags", "+faststart",
]

STDERR_TAIL_LINES = 5


def build_trim_command(input_path, output_path, start: Seconds, duration: Seconds,
                       ffmpeg_path: str = config.FFMPEG_PATH) -> List[str]:
    # -ss before -i seeks the input; -t bounds the output duration.
    return [
        ffmpeg_path, "-y",
        "-ss", str(start),
        "-i", str(input_path),
        "-t", str(duration),
        *ENCODE_OPTIONS,
        "-progress", "pipe:1",
        "-nostats",
        str(output_path),
    ]


def parse_progress_percent(line: str, duration: Seconds) -> Optional[float]:
    """Percent complete from an ffmpeg `-progress` line, or None for other keys."""
    key, _, value = line.strip().partition("=")
    if key not in ("out_time_us", "out_time_ms") or not duration or duration <= 0:
        return None
    try:
        # ffmpeg reports out_time_ms in microseconds as well
        seconds = int(value) / 1_000_000
    except ValueError:
        return None
    return max(0.0, min(100.0, seconds / duration * 100))


async def trim_video(input_path, output_path, start: Seconds, end: Seconds,
                     ffmpeg_path: str = config.FFMPEG_PATH,
                     on_progress: Optional[Callable[[float], None]] = None) -> Path:
    """
    Cuts [start, end) out of input_path and re-encodes it to output_path.

    The range is not validated: end <= start yields a non-positive duration
    that ffmpeg itself rejects. Any non-zero exit raises TranscodeFailed with
    the tail of ffmpeg's stderr.
    """
    duration = end - start
    log.info(f"Trimming: {start}s to {end}s ({duration}s duration)")
    command = build_trim_command(input_path, output_path, start, duration, ffmpeg_path)

    try:
        process = await asyncio.create_subprocess_exec(
            *command,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as e:
        raise TranscodeFailed(f"Trimming failed: could not start {ffmpeg_path}: {e}") from e

    stderr_task = asyncio.create_task(process.stderr.read())
    last_decile = 0
    try:
        async for raw in process.stdout:
            percent = parse_progress_percent(raw.decode(errors="replace"), duration)
            if percent is None:
                continue
            if on_progress:
                on_progress(percent)
            if int(percent // 10) > last_decile:
                last_decile = int(percent // 10)
                log.info(f"Encoding: {round(percent)}%")
        returncode = await process.wait()
        stderr = (await stderr_task).decode(errors="replace")
    except asyncio.CancelledError:
        # Timeout or shutdown: do not leave ffmpeg running.
        if process.returncode is None:
            process.kill()
            await process.wait()
        stderr_task.cancel()
        raise

    if returncode != 0:
        tail = "\n".join(stderr.strip().splitlines()[-STDERR_TAIL_LINES:]) or f"exit code {returncode}"
        raise TranscodeFailed(f"Trimming failed: {tail}")

    output_path = Path(output_path)
    size_mb = output_path.stat().st_size / 1024 / 1024 if output_path.exists() else 0
    log.info(f"Trimmed: {size_mb:.2f} MB")
    return output_path
