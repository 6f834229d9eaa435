import asyncio
import subprocess
import os
import logging
import tempfile
import ffmpeg
import shutil
from dataclasses import dataclass

from config import settings
from errors import ExternalToolError

logger = logging.getLogger(__name__)


@dataclass
class MediaInfo:
    duration: int  # seconds
    file_size: int  # bytes


class Transcoder:
    """Normalizes audio/video to mp3 with ffmpeg."""

    def __init__(self, timeout: int = None):
        self.timeout = timeout or settings.transcode_timeout
        self.audio_codec = 'libmp3lame'
        self.audio_bitrate = '192k'
        self.sample_rate = 44100

    def _probe_duration(self, file_path: str) -> int:
        try:
            info = ffmpeg.probe(file_path)
            return int(round(float(info['format']['duration'])))
        except (ffmpeg.Error, KeyError, ValueError) as e:
            # Duration is informational; a file ffprobe can't read still publishes
            logger.warning(f"Could not probe duration of {file_path}: {e}")
            return 0

    async def probe_media_info(self, file_path: str) -> MediaInfo:
        duration = await asyncio.to_thread(self._probe_duration, file_path)
        return MediaInfo(duration=duration, file_size=os.path.getsize(file_path))

    def _transcode(self, input_file: str, output_file: str) -> None:
        process = (
            ffmpeg
            .input(input_file)
            .output(
                output_file,
                vn=None,  # strip video
                acodec=self.audio_codec,
                audio_bitrate=self.audio_bitrate,
                ar=self.sample_rate,
            )
            .overwrite_output()
            .run_async(pipe_stdout=True, pipe_stderr=True)
        )

        try:
            _, stderr = process.communicate(timeout=self.timeout)
        except subprocess.TimeoutExpired:
            process.kill()
            process.communicate()
            logger.error("ffmpeg process timed out")
            raise ExternalToolError("ffmpeg", f"Audio conversion timed out after {self.timeout}s")

        if process.returncode != 0:
            detail = (stderr or b"").decode(errors="replace").strip().splitlines()
            tail = detail[-1] if detail else f"exit code {process.returncode}"
            logger.error(f"ffmpeg failed with return code {process.returncode}")
            raise ExternalToolError("ffmpeg", f"Audio conversion failed: {tail}")

        logger.info(f"Converted {input_file} to mp3")

    async def transcode_to_audio(self, file_path: str) -> str:
        """Convert ``file_path`` to mp3 in a new temp directory owned by the caller."""
        if not os.path.exists(file_path):
            raise ExternalToolError("ffmpeg", f"Input file not found: {file_path}")

        output_dir = tempfile.mkdtemp(prefix="podcast-convert-", dir=settings.tmp_dir)
        output_file = os.path.join(output_dir, "audio.mp3")
        try:
            await asyncio.to_thread(self._transcode, file_path, output_file)
        except BaseException:
            shutil.rmtree(output_dir, ignore_errors=True)
            raise
        return output_file

# Global instance
transcoder = Transcoder()
