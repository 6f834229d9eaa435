"""Exceptions raised while processing jobs.

Hierarchy:
    JobError (base)
    ├── InvalidJobPayload - metadata does not match the job type
    ├── UnknownJobType - job type has no processor
    ├── InvalidMediaError - file extension is not an accepted audio/video type
    ├── MediaNotFoundError - staged upload is missing on disk
    ├── ExternalToolError - yt-dlp / ffmpeg / HTTP download failed or timed out
    └── FeedError - feed could not be generated

The message of a JobError is what ends up in ``Job.error``, so it is written
for the person looking at the job list.
"""


class JobError(Exception):
    """Base exception for job processing failures."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)


class InvalidJobPayload(JobError):
    """Raised when a job's metadata does not have the shape its type requires."""

    def __init__(self, job_type: str, detail: str) -> None:
        self.job_type = job_type
        super().__init__(f"Invalid metadata for {job_type} job: {detail}")


class UnknownJobType(JobError):
    def __init__(self, job_type: str) -> None:
        self.job_type = job_type
        super().__init__(f"Unknown job type: {job_type}")


class InvalidMediaError(JobError):
    def __init__(self, filename: str) -> None:
        self.filename = filename
        super().__init__(f"Invalid media file type: {filename}")


class MediaNotFoundError(JobError):
    pass


class ExternalToolError(JobError):
    """Raised when an external tool exits with an error or exceeds its timeout.

    Attributes:
        tool: Name of the tool (e.g. "yt-dlp", "ffmpeg", "http")
    """

    def __init__(self, tool: str, message: str) -> None:
        self.tool = tool
        super().__init__(message)


class FeedError(JobError):
    pass
