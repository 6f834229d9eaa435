"""Job processors.

Each job type is a coroutine that runs one pipeline end to end. ``run_job``
claims the job, decodes its payload, runs the processor and records the
terminal status. Any exception fails the job and is re-raised so the
scheduler can log it and move on to the next job.

Temporary directories created along the way are registered on an
ExitStack as soon as they exist, so they are removed on every exit path.
"""
import os
import shutil
import time
import logging
from contextlib import ExitStack
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, Optional, Tuple, TypeVar
from urllib.parse import urlparse

from sqlalchemy.orm import Session

from config import settings
from database import (
    JobType, SourceType, claim_job, complete_job, create_episode, create_job, fail_job,
    get_episodes_by_podcast, get_sources_by_type, touch_playlist_sources, touch_source,
    update_episode,
)
from errors import InvalidMediaError, JobError, MediaNotFoundError, UnknownJobType
from feed import publish_feed
from models import (
    DownloadUrlPayload, DownloadVideoPayload, PollSourcesPayload, ProcessUploadPayload,
    ScanPlaylistPayload, parse_job_payload,
)
from progress import ProgressReporter
from utils.formatting import error_message, format_bytes, scale_progress, title_from_filename, title_from_url
from utils.media import is_normalized_audio, is_valid_media_file, media
from utils.s3_storage import storage
from utils.transcode import MediaInfo, transcoder
from utils.yt_download import video_url, youtube

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class JobResult:
    message: str = "Complete"
    # Podcast whose feed must be republished once the job is completed
    publish_podcast_id: Optional[str] = None


async def best_effort(job_id: int, label: str, awaitable: Awaitable[T],
                      db: Optional[Session] = None) -> Optional[T]:
    """Await an optional side effect. Failures are logged and discarded.

    Only thumbnails, feed republishing and cache invalidation go through
    here; mandatory pipeline steps must raise.
    """
    try:
        return await awaitable
    except Exception as e:
        if db is not None:
            db.rollback()
        logger.warning(f"[job:{job_id}] {label} failed (non-fatal): {error_message(e)}")
        return None


def _remove_dir(path: str) -> None:
    shutil.rmtree(path, ignore_errors=True)


def _remove_upload(file_path: str) -> None:
    """Delete a staged upload and its directory if nothing else is in it."""
    try:
        os.remove(file_path)
    except FileNotFoundError:
        pass
    try:
        os.rmdir(os.path.dirname(file_path))
    except OSError:
        pass


def _upload_progress(progress: ProgressReporter, start: int, end: int):
    def on_progress(pct: int, loaded: int, total: int) -> None:
        progress.update(
            scale_progress(pct, start, end),
            f"Uploading audio… {pct}% ({format_bytes(loaded)} / {format_bytes(total)})",
        )
    return on_progress


async def _normalize_audio(file_path: str, filename: str, cleanup: ExitStack) -> Tuple[str, MediaInfo]:
    """Return an mp3 path and its info, transcoding only when the extension requires it."""
    if is_normalized_audio(filename):
        return file_path, await transcoder.probe_media_info(file_path)

    audio_path = await transcoder.transcode_to_audio(file_path)
    cleanup.callback(_remove_dir, os.path.dirname(audio_path))
    return audio_path, await transcoder.probe_media_info(audio_path)


# ---------------------------------------------------------------- download_video

async def _upload_thumbnail(payload: DownloadVideoPayload, progress: ProgressReporter,
                            cleanup: ExitStack) -> str:
    thumb_path = await youtube.download_thumbnail(payload.video_id)
    cleanup.callback(_remove_dir, os.path.dirname(thumb_path))
    progress.update(93, "Uploading thumbnail…")
    return await storage.upload_artwork(thumb_path, payload.podcast_id, payload.episode_id)


async def process_download_video(db: Session, job_id: int, payload: DownloadVideoPayload,
                                 progress: ProgressReporter) -> JobResult:
    logger.info(f"[job:{job_id}] Video: {payload.video_id}, Episode: {payload.episode_id}")

    with ExitStack() as cleanup:
        # Phase 1: metadata (0-5%)
        progress.update(2, "Fetching video metadata…")
        meta = await youtube.fetch_video_metadata(payload.video_id)
        logger.info(f"[job:{job_id}] Got metadata: \"{meta.title}\" ({meta.duration}s)")
        progress.update(5, "Metadata retrieved")

        update_episode(
            db, payload.episode_id,
            title=meta.title, description=meta.description, duration=meta.duration,
        )

        # Phase 2: download and extract audio (5-60%)
        progress.update(6, "Starting download…")

        def on_download(pct: int, message: str) -> None:
            if message.startswith("Extracting"):
                progress.update(57, "Extracting audio from video…")
            else:
                progress.update(scale_progress(pct, 6, 55), message)

        download_start = time.time()
        audio = await youtube.download_audio(payload.video_id, on_download)
        cleanup.callback(_remove_dir, os.path.dirname(audio.file_path))
        logger.info(
            f"[job:{job_id}] Audio downloaded in {time.time() - download_start:.1f}s "
            f"({audio.file_size / 1024 / 1024:.1f} MB)"
        )

        progress.flush()
        progress.update(60, f"Audio ready ({format_bytes(audio.file_size)})")

        # Phase 3: upload audio (60-90%)
        audio_url = await storage.upload_audio(
            audio.file_path, payload.podcast_id, payload.episode_id,
            _upload_progress(progress, 60, 90),
        )
        logger.info(f"[job:{job_id}] Audio uploaded: {audio_url}")
        progress.flush()

        # Phase 4: thumbnail (90-95%), best-effort
        progress.update(91, "Downloading thumbnail…")
        image_url = await best_effort(
            job_id, "Thumbnail", _upload_thumbnail(payload, progress, cleanup)
        )

        # Phase 5: finalize (95-100%)
        progress.update(96, "Saving episode data…")
        fields = {
            "audio_url": audio_url,
            "duration": audio.duration or meta.duration,
            "file_size": audio.file_size,
        }
        if image_url:
            fields["image_url"] = image_url
        update_episode(db, payload.episode_id, **fields)

    return JobResult(publish_podcast_id=payload.podcast_id)


# ---------------------------------------------------------------- scan_playlist

async def process_scan_playlist(db: Session, job_id: int, payload: ScanPlaylistPayload,
                                progress: ProgressReporter) -> JobResult:
    logger.info(f"[job:{job_id}] Playlist: {payload.playlist_id}, Podcast: {payload.podcast_id}")

    progress.update(10, "Scanning playlist…")
    progress.flush()

    entries = await youtube.fetch_playlist_entries(payload.playlist_id)
    logger.info(f"[job:{job_id}] Playlist has {len(entries)} total video(s)")

    start = payload.skip or 0
    end = start + payload.limit if payload.limit else None
    entries = entries[start:end]

    # Listing order is not stable between scans, so diff by id, not position
    existing_ids = {
        episode.youtube_id
        for episode in get_episodes_by_podcast(db, payload.podcast_id)
        if episode.youtube_id
    }
    already_present = len(existing_ids)

    new_videos = []
    for video in entries:
        if video.id in existing_ids:
            continue
        existing_ids.add(video.id)
        new_videos.append(video)

    logger.info(f"[job:{job_id}] Found {len(new_videos)} new video(s) ({already_present} already exist)")

    for index, video in enumerate(new_videos):
        episode = create_episode(
            db, payload.podcast_id, video.title,
            description=video.description,
            duration=video.duration,
            youtube_id=video.id,
            source_url=video_url(video.id),
        )
        create_job(db, JobType.DOWNLOAD_VIDEO, {
            "videoId": video.id,
            "podcastId": payload.podcast_id,
            "episodeId": episode.id,
        })
        progress.update(
            scale_progress((index + 1) * 100 / len(new_videos), 10, 95),
            f"Queued {index + 1} of {len(new_videos)}",
        )
        logger.info(f"[job:{job_id}] Queued download for \"{video.title}\" ({video.id})")

    touch_playlist_sources(db, payload.podcast_id, payload.playlist_id)

    return JobResult(
        message=f"Found {len(new_videos)} new video(s)",
        publish_podcast_id=payload.podcast_id,
    )


# ---------------------------------------------------------------- download_url

def _validate_url(url: str) -> None:
    parsed = urlparse(url)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise JobError(f"Invalid URL: {url}")


async def process_download_url(db: Session, job_id: int, payload: DownloadUrlPayload,
                               progress: ProgressReporter) -> JobResult:
    logger.info(f"[job:{job_id}] URL: {payload.url}, Episode: {payload.episode_id}")
    _validate_url(payload.url)

    with ExitStack() as cleanup:
        # Phase 1: download (0-40%)
        progress.update(5, "Downloading file…")
        downloaded = await media.download_from_url(
            payload.url,
            lambda pct, message: progress.update(scale_progress(pct, 5, 40), message),
        )
        download_dir = os.path.dirname(downloaded.file_path)
        cleanup.callback(_remove_dir, download_dir)
        logger.info(f"[job:{job_id}] Downloaded: {downloaded.filename}")
        progress.update(40, "File downloaded")

        if not is_valid_media_file(downloaded.filename):
            _remove_dir(download_dir)
            raise InvalidMediaError(downloaded.filename)

        # Phase 2: normalize audio (40-70%)
        progress.update(45, "Processing audio…")
        audio_path, info = await _normalize_audio(downloaded.file_path, downloaded.filename, cleanup)
        logger.info(f"[job:{job_id}] Audio processed: {info.file_size / 1024 / 1024:.1f} MB, {info.duration}s")
        progress.update(70, f"Audio ready ({format_bytes(info.file_size)})")

        update_episode(db, payload.episode_id, title=title_from_url(payload.url), duration=info.duration)

        # Phase 3: upload (70-95%)
        progress.update(72, "Uploading audio…")
        audio_url = await storage.upload_audio(
            audio_path, payload.podcast_id, payload.episode_id,
            _upload_progress(progress, 72, 95),
        )
        logger.info(f"[job:{job_id}] Audio uploaded: {audio_url}")

        # Phase 4: finalize (95-100%)
        progress.update(96, "Saving episode data…")
        update_episode(
            db, payload.episode_id,
            audio_url=audio_url, duration=info.duration, file_size=info.file_size,
        )

    return JobResult(publish_podcast_id=payload.podcast_id)


# ---------------------------------------------------------------- process_upload

async def process_upload(db: Session, job_id: int, payload: ProcessUploadPayload,
                         progress: ProgressReporter) -> JobResult:
    logger.info(f"[job:{job_id}] File: {payload.original_filename}, Episode: {payload.episode_id}")

    with ExitStack() as cleanup:
        # The staged upload is removed whatever happens
        cleanup.callback(_remove_upload, payload.file_path)

        if not is_valid_media_file(payload.original_filename):
            _remove_upload(payload.file_path)
            raise InvalidMediaError(payload.original_filename)

        if not os.path.exists(payload.file_path):
            raise MediaNotFoundError("Uploaded file not found, it may have been cleaned up")

        # Phase 1: normalize audio (0-50%)
        progress.update(10, "Processing audio…")
        audio_path, info = await _normalize_audio(payload.file_path, payload.original_filename, cleanup)
        logger.info(f"[job:{job_id}] Audio processed: {info.file_size / 1024 / 1024:.1f} MB, {info.duration}s")
        progress.update(50, f"Audio ready ({format_bytes(info.file_size)})")

        update_episode(
            db, payload.episode_id,
            title=title_from_filename(payload.original_filename), duration=info.duration,
        )

        # Phase 2: upload (50-95%)
        progress.update(52, "Uploading audio…")
        audio_url = await storage.upload_audio(
            audio_path, payload.podcast_id, payload.episode_id,
            _upload_progress(progress, 52, 95),
        )
        logger.info(f"[job:{job_id}] Audio uploaded: {audio_url}")

        # Phase 3: finalize (95-100%)
        progress.update(96, "Saving episode data…")
        update_episode(
            db, payload.episode_id,
            audio_url=audio_url, duration=info.duration, file_size=info.file_size,
        )

    return JobResult(publish_podcast_id=payload.podcast_id)


# ---------------------------------------------------------------- poll_sources

async def process_poll_sources(db: Session, job_id: int, payload: PollSourcesPayload,
                               progress: ProgressReporter) -> JobResult:
    sources = get_sources_by_type(db, SourceType.PLAYLIST, payload.podcast_id)
    logger.info(f"[job:{job_id}] Found {len(sources)} playlist source(s) to poll")

    created = 0
    for index, source in enumerate(sources):
        if not source.external_id:
            logger.warning(f"[job:{job_id}] Source {source.id} has no playlist id, skipping")
            continue

        create_job(db, JobType.SCAN_PLAYLIST, {
            "playlistId": source.external_id,
            "podcastId": source.podcast_id,
        })
        created += 1
        touch_source(db, source.id)
        progress.update(scale_progress((index + 1) * 100 / len(sources), 0, 95), f"Queued {created} scan(s)")

    # Only last_checked changed, which the feed does not include
    return JobResult(message=f"Created {created} scan job(s)")


Processor = Callable[[Session, int, object, ProgressReporter], Awaitable[JobResult]]

PROCESSORS: Dict[str, Processor] = {
    JobType.DOWNLOAD_VIDEO: process_download_video,
    JobType.SCAN_PLAYLIST: process_scan_playlist,
    JobType.DOWNLOAD_URL: process_download_url,
    JobType.PROCESS_UPLOAD: process_upload,
    JobType.POLL_SOURCES: process_poll_sources,
}


async def run_job(db: Session, job_id: int, min_interval_ms: Optional[int] = None) -> Optional[str]:
    """Claim and process one job. Returns the job type, or None if it was not claimable.

    Raises whatever made the job fail, after the failure has been recorded.
    """
    job = claim_job(db, job_id)
    if job is None:
        logger.warning(f"[job:{job_id}] Not pending any more, skipping")
        return None

    job_type = job.type
    logger.info(f"[job:{job_id}] Starting {job_type} job")

    if min_interval_ms is None:
        min_interval_ms = settings.progress_min_interval_ms
    progress = ProgressReporter(db, job_id, min_interval_ms=min_interval_ms)

    try:
        processor = PROCESSORS.get(job_type)
        if processor is None:
            raise UnknownJobType(job_type)
        payload = parse_job_payload(job_type, job.payload)
        result = await processor(db, job_id, payload, progress)
    except Exception as e:
        logger.error(f"[job:{job_id}] Failed: {error_message(e)}")
        db.rollback()
        progress.close()
        fail_job(db, job_id, error_message(e))
        raise

    progress.close()
    complete_job(db, job_id, result.message)
    logger.info(f"[job:{job_id}] Completed successfully")

    if result.publish_podcast_id:
        await best_effort(job_id, "RSS publish", publish_feed(db, result.publish_podcast_id), db=db)

    return job_type
