import asyncio
import glob
import os
import shutil
import tempfile
import threading
import yt_dlp
import logging
from dataclasses import dataclass
from typing import Callable, List, Optional, Tuple
from urllib.parse import urlparse, parse_qs

from config import settings
from errors import ExternalToolError
from utils.blocking import check_cancelled, run_in_thread
from utils.formatting import format_bytes

logger = logging.getLogger(__name__)

# (percent, message); always invoked on the event loop thread
ProgressCallback = Callable[[int, str], None]

YOUTUBE_HOSTS = {"youtube.com", "youtu.be", "m.youtube.com", "music.youtube.com"}
THUMBNAIL_EXTENSIONS = (".jpg", ".webp", ".png")


@dataclass
class VideoMetadata:
    id: str
    title: str
    description: str = ""
    duration: int = 0
    thumbnail: str = ""
    uploader: str = ""


@dataclass
class DownloadedAudio:
    file_path: str
    duration: int
    file_size: int


def video_url(video_id: str) -> str:
    return f"https://www.youtube.com/watch?v={video_id}"


def playlist_url(playlist_id: str) -> str:
    return f"https://www.youtube.com/playlist?list={playlist_id}"


def is_youtube_url(url: str) -> bool:
    try:
        hostname = (urlparse(url).hostname or "").lower()
    except ValueError:
        return False
    return hostname.replace("www.", "", 1) in YOUTUBE_HOSTS


def parse_youtube_url(url: str) -> Tuple[str, str]:
    """Return ("playlist", id) or ("video", id) for a YouTube URL."""
    parsed = urlparse(url)
    query = parse_qs(parsed.query)

    if query.get("list"):
        return "playlist", query["list"][0]

    video_id = query.get("v", [None])[0]
    if not video_id and parsed.hostname == "youtu.be":
        video_id = parsed.path.lstrip("/")

    if video_id:
        return "video", video_id

    raise ValueError("Could not parse YouTube URL")


def _metadata_from_info(info: dict) -> VideoMetadata:
    thumbnails = info.get("thumbnails") or []
    return VideoMetadata(
        id=info.get("id", ""),
        title=info.get("title") or "Untitled",
        description=info.get("description") or "",
        duration=int(round(info.get("duration") or 0)),
        thumbnail=info.get("thumbnail") or (thumbnails[0].get("url", "") if thumbnails else ""),
        uploader=info.get("uploader") or "",
    )


def _threadsafe(callback: Optional[ProgressCallback]) -> Optional[ProgressCallback]:
    """Wrap a loop-side callback so it can be called from a worker thread."""
    if callback is None:
        return None
    loop = asyncio.get_running_loop()

    def report(percent: int, message: str) -> None:
        loop.call_soon_threadsafe(callback, percent, message)

    return report


class YouTubeClient:
    """Media acquisition through yt-dlp.

    yt-dlp is blocking, so every call runs in a worker thread under a
    wall-clock timeout. Downloads abort from their progress hooks once the
    timeout fires; each download directory is created and, on failure,
    removed by the thread that writes into it.
    """

    def __init__(self, metadata_timeout: int = None, extraction_timeout: int = None):
        self.metadata_timeout = metadata_timeout or settings.metadata_timeout
        self.extraction_timeout = extraction_timeout or settings.extraction_timeout

    def _base_opts(self) -> dict:
        return {
            'quiet': True,
            'no_warnings': True,
            'noplaylist': True,
            'socket_timeout': 30,
        }

    async def _run(self, func, timeout: int, what: str, *args):
        try:
            return await run_in_thread(func, timeout, *args)
        except asyncio.TimeoutError:
            raise ExternalToolError("yt-dlp", f"{what} timed out after {timeout}s")
        except yt_dlp.utils.DownloadError as e:
            logger.error(f"Download error: {e}")
            raise ExternalToolError("yt-dlp", f"{what} failed: {e}")

    # ------------------------------------------------------------ metadata

    def _fetch_video_metadata(self, cancelled: threading.Event, video_id: str) -> VideoMetadata:
        opts = {**self._base_opts(), 'skip_download': True}
        with yt_dlp.YoutubeDL(opts) as ydl:
            info = ydl.extract_info(video_url(video_id), download=False)
        if not info:
            raise ExternalToolError("yt-dlp", "Could not extract video information")
        return _metadata_from_info(info)

    async def fetch_video_metadata(self, video_id: str) -> VideoMetadata:
        return await self._run(self._fetch_video_metadata, self.metadata_timeout,
                               "Fetching video metadata", video_id)

    def _fetch_playlist_entries(self, cancelled: threading.Event, playlist_id: str) -> List[VideoMetadata]:
        opts = {**self._base_opts(), 'noplaylist': False, 'extract_flat': 'in_playlist'}
        with yt_dlp.YoutubeDL(opts) as ydl:
            info = ydl.extract_info(playlist_url(playlist_id), download=False)
        if not info:
            raise ExternalToolError("yt-dlp", "Could not extract playlist information")
        return [_metadata_from_info(entry) for entry in info.get("entries") or [] if entry and entry.get("id")]

    async def fetch_playlist_entries(self, playlist_id: str) -> List[VideoMetadata]:
        return await self._run(self._fetch_playlist_entries, self.metadata_timeout,
                               "Fetching playlist", playlist_id)

    # ------------------------------------------------------------ downloads

    def _download_audio(self, cancelled: threading.Event, video_id: str,
                        on_progress: Optional[ProgressCallback]) -> DownloadedAudio:
        def abort_if_cancelled(d):
            if cancelled.is_set():
                raise yt_dlp.utils.DownloadCancelled("Timed out")

        def progress_hook(d):
            abort_if_cancelled(d)
            if not on_progress:
                return
            if d['status'] == 'downloading':
                total = d.get('total_bytes') or d.get('total_bytes_estimate') or 0
                loaded = d.get('downloaded_bytes') or 0
                if total:
                    pct = int(loaded * 100 / total)
                    on_progress(pct, f"Downloading… {pct}% ({format_bytes(loaded)} / {format_bytes(total)})")
            elif d['status'] == 'finished':
                on_progress(100, "Extracting audio…")

        output_dir = tempfile.mkdtemp(prefix="podcast-", dir=settings.tmp_dir)
        ydl_opts = {
            **self._base_opts(),
            'format': 'bestaudio/best',
            'outtmpl': os.path.join(output_dir, f'{video_id}.%(ext)s'),
            'postprocessors': [{
                'key': 'FFmpegExtractAudio',
                'preferredcodec': 'mp3',
                'preferredquality': '192',
            }],
            'progress_hooks': [progress_hook],
            'postprocessor_hooks': [abort_if_cancelled],
        }

        try:
            with yt_dlp.YoutubeDL(ydl_opts) as ydl:
                info = ydl.extract_info(video_url(video_id), download=True)

            audio_file = os.path.join(output_dir, f'{video_id}.mp3')
            if not os.path.exists(audio_file):
                raise ExternalToolError("yt-dlp", "Audio file was not created")
            check_cancelled(cancelled)
        except BaseException:
            shutil.rmtree(output_dir, ignore_errors=True)
            raise

        file_size = os.path.getsize(audio_file)
        logger.info(f"Downloaded audio: {file_size/1024/1024:.1f}MB")
        return DownloadedAudio(
            file_path=audio_file,
            duration=int(round((info or {}).get('duration') or 0)),
            file_size=file_size,
        )

    async def download_audio(self, video_id: str,
                             on_progress: Optional[ProgressCallback] = None) -> DownloadedAudio:
        """Download a video's audio track as mp3 into a fresh temp directory.

        The caller owns the directory (``os.path.dirname(result.file_path)``)
        once this returns; on failure it has already been removed.
        """
        return await self._run(self._download_audio, self.extraction_timeout,
                               "Audio download", video_id, _threadsafe(on_progress))

    def _download_thumbnail(self, cancelled: threading.Event, video_id: str) -> str:
        output_dir = tempfile.mkdtemp(prefix="podcast-thumb-", dir=settings.tmp_dir)
        ydl_opts = {
            **self._base_opts(),
            'skip_download': True,
            'writethumbnail': True,
            'outtmpl': os.path.join(output_dir, video_id),
            'postprocessors': [{'key': 'FFmpegThumbnailsConvertor', 'format': 'jpg'}],
        }
        try:
            with yt_dlp.YoutubeDL(ydl_opts) as ydl:
                ydl.download([video_url(video_id)])
            check_cancelled(cancelled)

            # yt-dlp may leave the original format if conversion was skipped
            for ext in THUMBNAIL_EXTENSIONS:
                matches = glob.glob(os.path.join(output_dir, f"*{ext}"))
                if matches:
                    return matches[0]
            raise ExternalToolError("yt-dlp", "Thumbnail was not created")
        except BaseException:
            shutil.rmtree(output_dir, ignore_errors=True)
            raise

    async def download_thumbnail(self, video_id: str) -> str:
        return await self._run(self._download_thumbnail, self.metadata_timeout,
                               "Thumbnail download", video_id)

# Global instance
youtube = YouTubeClient()
