"""Object storage for published artifacts (S3, fronted by CloudFront)."""
import asyncio
import os
import threading
import time
import logging
from typing import Callable, Iterable, List, Optional

import boto3

from config import settings

logger = logging.getLogger(__name__)

# (percent, loaded_bytes, total_bytes)
UploadProgressCallback = Callable[[int, int, int], None]

IMAGE_CONTENT_TYPES = {
    ".png": "image/png",
    ".webp": "image/webp",
}

DELETE_BATCH_SIZE = 1000


def audio_key(folder: str, episode_id: str) -> str:
    return f"{folder}/episodes/{episode_id}/audio.mp3"


def artwork_key(folder: str, ext: str, episode_id: Optional[str] = None) -> str:
    if episode_id:
        return f"{folder}/episodes/{episode_id}/artwork{ext}"
    return f"{folder}/artwork{ext}"


class ArtifactStore:
    def __init__(self, bucket: str = None, region: str = None):
        self.bucket = bucket or settings.s3_bucket_name
        self.region = region or settings.aws_region
        self._client = None
        self._client_lock = threading.Lock()

    @property
    def client(self):
        # boto3 clients are thread-safe once created; creation itself is not
        with self._client_lock:
            if self._client is None:
                self._client = boto3.client(
                    "s3",
                    region_name=self.region,
                    aws_access_key_id=settings.aws_access_key_id,
                    aws_secret_access_key=settings.aws_secret_access_key,
                    endpoint_url=settings.s3_endpoint_url,
                )
            return self._client

    def public_url(self, key: str) -> str:
        if settings.custom_domain:
            return f"{settings.custom_domain.rstrip('/')}/{key}"
        if settings.cloudfront_domain:
            return f"https://{settings.cloudfront_domain}/{key}"
        return f"https://{self.bucket}.s3.{self.region}.amazonaws.com/{key}"

    # ------------------------------------------------------------ uploads

    def _upload_file(self, file_path: str, key: str, content_type: str,
                     on_progress: Optional[UploadProgressCallback]) -> str:
        total = os.path.getsize(file_path)
        loaded = 0
        lock = threading.Lock()

        def callback(bytes_amount):
            # boto3 calls this from its transfer threads
            nonlocal loaded
            with lock:
                loaded += bytes_amount
                current = loaded
            if on_progress:
                pct = int(current * 100 / total) if total else 100
                on_progress(pct, current, total)

        self.client.upload_file(
            file_path,
            self.bucket,
            key,
            ExtraArgs={"ContentType": content_type},
            Callback=callback,
        )
        logger.info(f"Uploaded s3://{self.bucket}/{key} ({total} bytes)")
        return self.public_url(key)

    async def upload_file(self, file_path: str, key: str, content_type: str,
                          on_progress: Optional[UploadProgressCallback] = None) -> str:
        report = None
        if on_progress is not None:
            loop = asyncio.get_running_loop()

            def report(percent, loaded, total):
                loop.call_soon_threadsafe(on_progress, percent, loaded, total)

        return await asyncio.to_thread(self._upload_file, file_path, key, content_type, report)

    async def upload_audio(self, file_path: str, folder: str, episode_id: str,
                           on_progress: Optional[UploadProgressCallback] = None) -> str:
        return await self.upload_file(file_path, audio_key(folder, episode_id), "audio/mpeg", on_progress)

    async def upload_artwork(self, file_path: str, folder: str,
                             episode_id: Optional[str] = None) -> str:
        ext = os.path.splitext(file_path)[1].lower() or ".jpg"
        content_type = IMAGE_CONTENT_TYPES.get(ext, "image/jpeg")
        return await self.upload_file(file_path, artwork_key(folder, ext, episode_id), content_type)

    def _put_object(self, body: str, key: str, content_type: str) -> str:
        self.client.put_object(
            Bucket=self.bucket,
            Key=key,
            Body=body.encode("utf-8"),
            ContentType=content_type,
        )
        return self.public_url(key)

    async def upload_content(self, content: str, key: str, content_type: str) -> str:
        return await asyncio.to_thread(self._put_object, content, key, content_type)

    # ------------------------------------------------------------ deletes

    async def delete_file(self, key: str) -> None:
        await asyncio.to_thread(self.client.delete_object, Bucket=self.bucket, Key=key)

    def _delete_folder(self, prefix: str) -> int:
        prefix = prefix if prefix.endswith("/") else f"{prefix}/"
        paginator = self.client.get_paginator("list_objects_v2")
        deleted = 0
        for page in paginator.paginate(Bucket=self.bucket, Prefix=prefix):
            keys = [{"Key": obj["Key"]} for obj in page.get("Contents", [])]
            for start in range(0, len(keys), DELETE_BATCH_SIZE):
                batch = keys[start:start + DELETE_BATCH_SIZE]
                self.client.delete_objects(
                    Bucket=self.bucket,
                    Delete={"Objects": batch, "Quiet": True},
                )
                deleted += len(batch)
        return deleted

    async def delete_folder(self, prefix: str) -> int:
        return await asyncio.to_thread(self._delete_folder, prefix)

    # ------------------------------------------------------------ CDN

    def _invalidate(self, paths: List[str]) -> None:
        cloudfront = boto3.client(
            "cloudfront",
            region_name=self.region,
            aws_access_key_id=settings.aws_access_key_id,
            aws_secret_access_key=settings.aws_secret_access_key,
        )
        items = [p if p.startswith("/") else f"/{p}" for p in paths]
        cloudfront.create_invalidation(
            DistributionId=settings.cloudfront_distribution_id,
            InvalidationBatch={
                "CallerReference": str(time.time()),
                "Paths": {"Quantity": len(items), "Items": items},
            },
        )

    async def invalidate_cache(self, paths: Iterable[str]) -> None:
        paths = list(paths)
        if not settings.cloudfront_distribution_id or not paths:
            return
        await asyncio.to_thread(self._invalidate, paths)


# Global instance
storage = ArtifactStore()
