import os
import shutil
import tempfile

# Settings are read at import time, so the environment must be in place first
_test_root = tempfile.mkdtemp(prefix="podcast-jobs-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{os.path.join(_test_root, 'test.db')}"
os.environ["RUN_SCHEDULER"] = "false"
os.environ["LOG_FILE"] = os.path.join(_test_root, "app.log")
os.environ["WORKER_PROFILE_LOG"] = os.path.join(_test_root, "worker_profile.log")
os.environ["TMP_DIR"] = _test_root
os.environ["S3_BUCKET_NAME"] = "test-bucket"
os.environ["CLOUDFRONT_DOMAIN"] = "cdn.example.com"
os.environ["SITE_URL"] = "https://podcasts.example.com"

import pytest
from unittest.mock import patch

from database import Base, Podcast, SessionLocal, engine
from utils.media import DownloadedFile
from utils.transcode import MediaInfo
from utils.yt_download import DownloadedAudio, VideoMetadata


@pytest.fixture
def db():
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def podcast(db):
    podcast = Podcast(title="Test Podcast", description="A show about tests", author="Tester")
    db.add(podcast)
    db.commit()
    db.refresh(podcast)
    return podcast


def _make_file(directory, name, content=b"\xff\xfb\x90\x00" * 256):
    path = os.path.join(directory, name)
    with open(path, "wb") as f:
        f.write(content)
    return path


class FakeYouTube:
    def __init__(self, workdir):
        self.workdir = workdir
        self.playlist = []
        self.thumbnail_error = None
        self.download_error = None
        self.downloaded = []

    async def fetch_video_metadata(self, video_id):
        return VideoMetadata(id=video_id, title=f"Video {video_id}", description="About it", duration=212)

    async def fetch_playlist_entries(self, playlist_id):
        return list(self.playlist)

    async def download_audio(self, video_id, on_progress=None):
        if self.download_error:
            raise self.download_error
        output_dir = tempfile.mkdtemp(prefix="podcast-", dir=self.workdir)
        if on_progress:
            on_progress(0, "Downloading… 0%")
            on_progress(50, "Downloading… 50%")
            on_progress(100, "Extracting audio…")
        path = _make_file(output_dir, f"{video_id}.mp3")
        self.downloaded.append(video_id)
        return DownloadedAudio(file_path=path, duration=212, file_size=os.path.getsize(path))

    async def download_thumbnail(self, video_id):
        if self.thumbnail_error:
            raise self.thumbnail_error
        output_dir = tempfile.mkdtemp(prefix="podcast-thumb-", dir=self.workdir)
        return _make_file(output_dir, f"{video_id}.jpg", b"jpeg")


class FakeMedia:
    def __init__(self, workdir):
        self.workdir = workdir
        self.filename = "episode.m4a"

    async def download_from_url(self, url, on_progress=None):
        output_dir = tempfile.mkdtemp(prefix="podcast-dl-", dir=self.workdir)
        if on_progress:
            on_progress(100, "Downloading file… 100%")
        return DownloadedFile(file_path=_make_file(output_dir, self.filename), filename=self.filename)


class FakeTranscoder:
    def __init__(self, workdir):
        self.workdir = workdir
        self.transcoded = []
        self.error = None

    async def probe_media_info(self, file_path):
        return MediaInfo(duration=212, file_size=os.path.getsize(file_path))

    async def transcode_to_audio(self, file_path):
        if self.error:
            raise self.error
        self.transcoded.append(file_path)
        output_dir = tempfile.mkdtemp(prefix="podcast-convert-", dir=self.workdir)
        return _make_file(output_dir, "audio.mp3")


class FakeStorage:
    def __init__(self):
        self.uploads = []
        self.contents = {}
        self.invalidated = []
        self.deleted = []
        self.content_error = None

    def public_url(self, key):
        return f"https://cdn.example.com/{key}"

    async def upload_audio(self, file_path, folder, episode_id, on_progress=None):
        assert os.path.exists(file_path)
        key = f"{folder}/episodes/{episode_id}/audio.mp3"
        self.uploads.append(key)
        if on_progress:
            size = os.path.getsize(file_path)
            on_progress(100, size, size)
        return self.public_url(key)

    async def upload_artwork(self, file_path, folder, episode_id=None):
        key = f"{folder}/episodes/{episode_id}/artwork.jpg"
        self.uploads.append(key)
        return self.public_url(key)

    async def upload_content(self, content, key, content_type):
        if self.content_error:
            raise self.content_error
        self.contents[key] = content
        return self.public_url(key)

    async def delete_file(self, key):
        self.deleted.append(key)
        self.contents.pop(key, None)

    async def invalidate_cache(self, paths):
        self.invalidated.extend(paths)


class FakeAdapters:
    def __init__(self, workdir):
        self.workdir = str(workdir)
        self.youtube = FakeYouTube(self.workdir)
        self.media = FakeMedia(self.workdir)
        self.transcoder = FakeTranscoder(self.workdir)
        self.storage = FakeStorage()

    def leftover_files(self):
        return sorted(os.listdir(self.workdir))


@pytest.fixture
def fakes(tmp_path):
    workdir = tmp_path / "work"
    workdir.mkdir(exist_ok=True)
    adapters = FakeAdapters(workdir)
    with patch("jobs.youtube", new=adapters.youtube), \
            patch("jobs.media", new=adapters.media), \
            patch("jobs.transcoder", new=adapters.transcoder), \
            patch("jobs.storage", new=adapters.storage), \
            patch("feed.storage", new=adapters.storage):
        yield adapters


@pytest.fixture
def staged_upload(tmp_path):
    """Write a file the way the upload endpoint stages it: one file in its own directory."""
    def stage(filename, content=b"\xff\xfb\x90\x00" * 256):
        directory = tmp_path / "work" / "upload-staging"
        directory.mkdir(parents=True, exist_ok=True)
        return _make_file(str(directory), filename, content)
    return stage


def pytest_sessionfinish(session, exitstatus):
    shutil.rmtree(_test_root, ignore_errors=True)

