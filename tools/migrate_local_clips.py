# migrate_local_clips.py
#
# Moves clips whose processedClipUrl still points at a local /clips/... file
# (served from the web app's public/ folder) into cloud storage, then rewrites
# the clip records to the new public URL.
#
#   python -m tools.migrate_local_clips [--cleanup] [--batch-size 5] [--public-dir public]

import argparse
import logging
import sys
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

from common import config
from common.job_schema import Clip, utc_now_iso
from common.job_store import get_job_store
from common.storage import upload_clip

log = logging.getLogger("migrate")

BATCH_PAUSE_SECONDS = 2


@dataclass
class MigrationResult:
    clip: Clip
    success: bool
    new_url: Optional[str] = None
    error: Optional[str] = None


def local_file_for(clip: Clip, public_dir: Path) -> Path:
    # processedClipUrl is a site-relative path such as /clips/abc/123_30-90.mp4
    root = Path(public_dir).resolve()
    path = (root / clip.processed_clip_url.lstrip("/")).resolve()
    if not path.is_relative_to(root):
        raise ValueError(f"Local path escapes {root}: {clip.processed_clip_url}")
    return path


def migrate_clip(store, clip: Clip, public_dir: Path, upload=upload_clip) -> MigrationResult:
    """Uploads one local clip file and points the clip record at the uploaded copy."""
    try:
        local_path = local_file_for(clip, public_dir)
        if not local_path.exists():
            raise FileNotFoundError(f"Local file not found: {local_path}")
        if not clip.source_video_id or clip.start_time_seconds is None or clip.end_time_seconds is None:
            raise ValueError("clip has no source video or time range")

        size_mb = local_path.stat().st_size / 1024 / 1024
        log.info(f"Uploading {local_path.name} ({size_mb:.2f} MB) for clip {clip.id}")

        migrated_at = utc_now_iso()
        new_url = upload(
            local_path, clip.source_video_id, clip.start_time_seconds, clip.end_time_seconds,
            extra_metadata={"migratedAt": migrated_at, "originalLocalPath": clip.processed_clip_url},
        )
        store.update_clip(clip.id, {
            "processedClipUrl": new_url,
            "videoProcessingError": None,
            "migratedAt": migrated_at,
            "originalLocalPath": clip.processed_clip_url,
        })
        log.info(f"Updated database record for clip {clip.id}")
        return MigrationResult(clip=clip, success=True, new_url=new_url)
    except Exception as e:
        # One bad clip must not stop the rest of the migration.
        log.error(f"Failed to migrate clip {clip.id}: {e}")
        return MigrationResult(clip=clip, success=False, error=str(e))


def cleanup_local_file(clip: Clip, public_dir: Path) -> None:
    try:
        path = local_file_for(clip, public_dir)
        if path.exists():
            path.unlink()
            log.info(f"Cleaned up local file: {clip.processed_clip_url}")
    except (OSError, ValueError) as e:
        log.warning(f"Could not clean up local file {clip.processed_clip_url}: {e}")


def run_migration(store, public_dir: Path, cleanup: bool = False, batch_size: int = 5,
                  upload=upload_clip, pause: float = BATCH_PAUSE_SECONDS) -> List[MigrationResult]:
    clips = store.list_local_clips()
    log.info(f"Found {len(clips)} clips with local storage paths")
    if not clips:
        return []

    results: List[MigrationResult] = []
    batch_count = (len(clips) + batch_size - 1) // batch_size
    with ThreadPoolExecutor(max_workers=batch_size) as pool:
        for i in range(0, len(clips), batch_size):
            batch = clips[i:i + batch_size]
            log.info(f"Processing batch {i // batch_size + 1}/{batch_count}...")
            batch_results = list(pool.map(lambda c: migrate_clip(store, c, public_dir, upload), batch))

            for result in batch_results:
                if result.success and cleanup:
                    cleanup_local_file(result.clip, public_dir)
            results.extend(batch_results)

            if i + batch_size < len(clips) and pause:
                time.sleep(pause)

    succeeded = sum(1 for r in results if r.success)
    log.info("=" * 60)
    log.info(f"Successfully migrated: {succeeded} clips")
    log.info(f"Failed migrations: {len(results) - succeeded} clips")
    log.info(f"Success rate: {succeeded / len(results) * 100:.1f}%")
    for r in results:
        if not r.success:
            log.info(f"  {r.clip.id}: {r.error}")
    return results


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Move locally stored clips to cloud storage.")
    parser.add_argument("--cleanup", action="store_true", help="delete local files after a successful migration")
    parser.add_argument("--batch-size", type=int, default=5, help="clips uploaded concurrently per batch")
    parser.add_argument("--public-dir", type=Path, default=Path.cwd() / "public",
                        help="directory the /clips/... paths are relative to")
    args = parser.parse_args(argv)
    if args.batch_size < 1:
        parser.error("--batch-size must be at least 1")
    return args


def main(argv=None):
    logging.basicConfig(level=config.LOG_LEVEL, format="%(asctime)s [%(levelname)s] %(name)s: %(message)s")
    args = parse_args(argv)
    log.info(f"Cleanup after migration: {'YES' if args.cleanup else 'NO'}")
    log.info(f"Batch size: {args.batch_size}")

    results = run_migration(get_job_store(), args.public_dir, cleanup=args.cleanup, batch_size=args.batch_size)
    sys.exit(1 if any(not r.success for r in results) else 0)


if __name__ == "__main__":
    main()
