"""Job metadata payloads, one model per job type.

Payloads are decoded when a job is claimed so a malformed job fails
immediately instead of halfway through its pipeline.
"""
from typing import Dict, Optional, Type, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from database import JobType
from errors import InvalidJobPayload, UnknownJobType


class JobPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class DownloadVideoPayload(JobPayload):
    video_id: str = Field(alias="videoId", min_length=1)
    podcast_id: str = Field(alias="podcastId", min_length=1)
    episode_id: str = Field(alias="episodeId", min_length=1)


class ScanPlaylistPayload(JobPayload):
    playlist_id: str = Field(alias="playlistId", min_length=1)
    podcast_id: str = Field(alias="podcastId", min_length=1)
    limit: Optional[int] = Field(default=None, ge=1)
    skip: Optional[int] = Field(default=None, ge=0)


class DownloadUrlPayload(JobPayload):
    url: str = Field(min_length=1)
    podcast_id: str = Field(alias="podcastId", min_length=1)
    episode_id: str = Field(alias="episodeId", min_length=1)


class ProcessUploadPayload(JobPayload):
    file_path: str = Field(alias="filePath", min_length=1)
    original_filename: str = Field(alias="originalFilename", min_length=1)
    podcast_id: str = Field(alias="podcastId", min_length=1)
    episode_id: str = Field(alias="episodeId", min_length=1)


class PollSourcesPayload(JobPayload):
    podcast_id: Optional[str] = Field(default=None, alias="podcastId")


AnyJobPayload = Union[
    DownloadVideoPayload,
    ScanPlaylistPayload,
    DownloadUrlPayload,
    ProcessUploadPayload,
    PollSourcesPayload,
]

PAYLOAD_TYPES: Dict[str, Type[JobPayload]] = {
    JobType.DOWNLOAD_VIDEO: DownloadVideoPayload,
    JobType.SCAN_PLAYLIST: ScanPlaylistPayload,
    JobType.DOWNLOAD_URL: DownloadUrlPayload,
    JobType.PROCESS_UPLOAD: ProcessUploadPayload,
    JobType.POLL_SOURCES: PollSourcesPayload,
}


def parse_job_payload(job_type: str, metadata: Optional[dict]) -> AnyJobPayload:
    """Decode a job's stored metadata into the payload model for its type."""
    payload_type = PAYLOAD_TYPES.get(job_type)
    if payload_type is None:
        raise UnknownJobType(job_type)

    if metadata is None:
        metadata = {}
    if not isinstance(metadata, dict):
        raise InvalidJobPayload(job_type, f"expected an object, got {type(metadata).__name__}")

    try:
        return payload_type.model_validate(metadata)
    except ValidationError as e:
        fields = ", ".join(
            ".".join(str(part) for part in err["loc"]) or "metadata" for err in e.errors()
        )
        raise InvalidJobPayload(job_type, f"missing or invalid field(s): {fields}") from e


def dump_job_payload(payload: JobPayload) -> dict:
    """Serialize a payload back to the stored (camelCase) shape."""
    return payload.model_dump(by_alias=True, exclude_none=True)
