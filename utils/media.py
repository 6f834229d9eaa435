"""Media type checks and arbitrary-URL downloads.

Validation is extension based: it runs before any transcoding so junk
uploads are rejected without paying for ffmpeg.
"""
import asyncio
import os
import re
import shutil
import tempfile
import threading
import logging
from dataclasses import dataclass
from typing import Callable, Optional
from urllib.parse import urlparse, unquote

import requests

from config import settings
from errors import ExternalToolError
from utils.blocking import check_cancelled, run_in_thread

logger = logging.getLogger(__name__)

AUDIO_EXTENSIONS = frozenset({
    ".mp3", ".m4a", ".aac", ".ogg", ".oga", ".opus",
    ".wav", ".flac", ".wma", ".aiff", ".aif",
})

VIDEO_EXTENSIONS = frozenset({
    ".mp4", ".mkv", ".webm", ".avi", ".mov", ".wmv",
    ".flv", ".m4v", ".mpg", ".mpeg", ".3gp", ".ogv",
})

MEDIA_EXTENSIONS = AUDIO_EXTENSIONS | VIDEO_EXTENSIONS

# Every episode is published in this format
NORMALIZED_AUDIO_EXTENSION = ".mp3"

CONTENT_TYPE_EXTENSIONS = {
    "audio/mpeg": ".mp3",
    "audio/mp4": ".m4a",
    "audio/aac": ".aac",
    "audio/ogg": ".ogg",
    "audio/opus": ".opus",
    "audio/wav": ".wav",
    "audio/x-wav": ".wav",
    "audio/flac": ".flac",
    "video/mp4": ".mp4",
    "video/webm": ".webm",
    "video/x-matroska": ".mkv",
    "video/quicktime": ".mov",
    "video/x-msvideo": ".avi",
}

CHUNK_SIZE = 1024 * 1024
# (connect, read); a stalled read sees cancellation only once this expires
REQUEST_TIMEOUT = (10, 60)

_DISPOSITION_RE = re.compile(r"""filename\*?=(?:UTF-8'')?["']?([^"';\n]+)""", re.IGNORECASE)


@dataclass
class DownloadedFile:
    file_path: str
    filename: str


def file_extension(filename: str) -> str:
    return os.path.splitext(filename)[1].lower()


def is_valid_media_file(filename: str) -> bool:
    return file_extension(filename) in MEDIA_EXTENSIONS


def is_normalized_audio(filename: str) -> bool:
    return file_extension(filename) == NORMALIZED_AUDIO_EXTENSION


def filename_from_response(url: str, headers) -> str:
    """Pick a filename from Content-Disposition, the URL path or Content-Type."""
    filename = ""
    disposition = headers.get("content-disposition")
    if disposition:
        match = _DISPOSITION_RE.search(disposition)
        if match:
            filename = unquote(match.group(1).strip())

    if not filename:
        filename = unquote(os.path.basename(urlparse(url).path))

    # Never let a header or path segment pick the directory
    filename = os.path.basename(filename.replace("\\", "/"))
    if filename in ("", ".", ".."):
        filename = "download"

    if not file_extension(filename):
        content_type = (headers.get("content-type") or "").split(";")[0].strip().lower()
        filename += CONTENT_TYPE_EXTENSIONS.get(content_type, "")

    return filename


class MediaDownloader:
    def __init__(self, timeout: int = None, user_agent: str = None):
        self.timeout = timeout or settings.download_timeout
        self.user_agent = user_agent or settings.download_user_agent

    def _download(self, cancelled: threading.Event, url: str,
                  on_progress: Optional[Callable[[int, str], None]]) -> DownloadedFile:
        # Created and removed on this thread, so nothing deletes it mid-write
        output_dir = tempfile.mkdtemp(prefix="podcast-dl-", dir=settings.tmp_dir)
        try:
            with requests.get(
                url,
                headers={"User-Agent": self.user_agent},
                stream=True,
                allow_redirects=True,
                timeout=REQUEST_TIMEOUT,
            ) as response:
                if not response.ok:
                    raise ExternalToolError("http", f"Download failed: HTTP {response.status_code}")

                filename = filename_from_response(response.url or url, response.headers)
                file_path = os.path.join(output_dir, filename)
                total = int(response.headers.get("content-length") or 0)
                loaded = 0
                last_pct = -1

                with open(file_path, "wb") as f:
                    for chunk in response.iter_content(chunk_size=CHUNK_SIZE):
                        check_cancelled(cancelled)
                        if not chunk:
                            continue
                        f.write(chunk)
                        loaded += len(chunk)
                        if on_progress and total:
                            pct = int(loaded * 100 / total)
                            if pct != last_pct:
                                last_pct = pct
                                on_progress(pct, f"Downloading file… {pct}%")

            check_cancelled(cancelled)
        except BaseException:
            shutil.rmtree(output_dir, ignore_errors=True)
            raise

        logger.info(f"Downloaded {filename} ({loaded} bytes) from {url}")
        return DownloadedFile(file_path=file_path, filename=filename)

    async def download_from_url(self, url: str,
                                on_progress: Optional[Callable[[int, str], None]] = None) -> DownloadedFile:
        """Download ``url`` into a fresh temp directory owned by the caller."""
        report = None
        if on_progress is not None:
            loop = asyncio.get_running_loop()

            def report(percent, message):
                loop.call_soon_threadsafe(on_progress, percent, message)

        try:
            return await run_in_thread(self._download, self.timeout, url, report)
        except asyncio.TimeoutError:
            raise ExternalToolError("http", f"Download timed out after {self.timeout}s")
        except requests.RequestException as e:
            raise ExternalToolError("http", f"Download failed: {e}")

# Global instance
media = MediaDownloader()
