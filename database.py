from sqlalchemy import (
    create_engine, Column, String, DateTime, Text, Integer, Boolean, JSON, ForeignKey, func
)
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import declarative_base, sessionmaker, Session
from datetime import datetime, timedelta, timezone
from typing import Generator, List, Optional
from config import settings
import logging
import uuid

logger = logging.getLogger(__name__)

# SQLite connections are shared with the API threadpool
connect_args = {"check_same_thread": False} if settings.database_url.startswith("sqlite") else {}

# Create engine with connection pooling
engine = create_engine(
    settings.database_url,
    connect_args=connect_args,
    pool_pre_ping=True,
    pool_recycle=3600,
    echo=False
)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
Base = declarative_base()


def utcnow() -> datetime:
    """Naive UTC timestamp, matching what the DateTime columns store."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def new_id() -> str:
    return str(uuid.uuid4())


class JobType:
    DOWNLOAD_VIDEO = "download_video"
    SCAN_PLAYLIST = "scan_playlist"
    DOWNLOAD_URL = "download_url"
    PROCESS_UPLOAD = "process_upload"
    POLL_SOURCES = "poll_sources"

    ALL = (DOWNLOAD_VIDEO, SCAN_PLAYLIST, DOWNLOAD_URL, PROCESS_UPLOAD, POLL_SOURCES)


class JobStatus:
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    TERMINAL = (COMPLETED, FAILED)


class SourceType:
    VIDEO = "video"
    PLAYLIST = "playlist"
    URL = "url"
    FILE = "file"


class Podcast(Base):
    __tablename__ = 'podcasts'

    id = Column(String, primary_key=True, default=new_id)
    title = Column(Text, nullable=False)
    description = Column(Text, nullable=True)
    author = Column(String, nullable=True)
    artwork = Column(Text, nullable=True)
    language = Column(String, default='en')
    category = Column(String, nullable=True)
    explicit = Column(Boolean, default=False)
    feed_url = Column(Text, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


class Episode(Base):
    __tablename__ = 'episodes'

    id = Column(String, primary_key=True, default=new_id)
    podcast_id = Column(String, ForeignKey('podcasts.id', ondelete='CASCADE'), nullable=False, index=True)
    title = Column(Text, nullable=False)
    description = Column(Text, nullable=True)
    audio_url = Column(Text, nullable=True)  # null while still processing
    image_url = Column(Text, nullable=True)
    duration = Column(Integer, nullable=True)  # seconds
    file_size = Column(Integer, nullable=True)  # bytes
    youtube_id = Column(String, nullable=True, index=True)
    source_url = Column(Text, nullable=True)
    order = Column(Integer, default=0, nullable=False)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


class Source(Base):
    __tablename__ = 'sources'

    id = Column(String, primary_key=True, default=new_id)
    podcast_id = Column(String, ForeignKey('podcasts.id', ondelete='CASCADE'), nullable=False, index=True)
    type = Column(String, nullable=False, index=True)  # video, playlist, url, file
    external_id = Column(Text, nullable=True)  # youtube id or source url
    last_checked = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow)


class Job(Base):
    __tablename__ = 'jobs'

    id = Column(Integer, primary_key=True, autoincrement=True)
    type = Column(String, nullable=False)
    status = Column(String, default=JobStatus.PENDING, index=True)  # pending, processing, completed, failed
    progress = Column(Integer, default=0)  # 0-100
    message = Column(Text, nullable=True)
    error = Column(Text, nullable=True)
    # "metadata" is reserved on declarative classes
    payload = Column('metadata', JSON, nullable=True)
    created_at = Column(DateTime, default=utcnow, index=True)
    started_at = Column(DateTime, nullable=True)
    ended_at = Column(DateTime, nullable=True)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


def get_db() -> Generator[Session, None, None]:
    """Database session dependency"""
    db = SessionLocal()
    try:
        yield db
    except Exception as e:
        logger.error(f"Database error: {e}")
        db.rollback()
        raise
    finally:
        db.close()

def create_tables():
    """Create all tables"""
    try:
        Base.metadata.create_all(bind=engine)
        logger.info("Database tables created successfully")
    except Exception as e:
        logger.error(f"Error creating tables: {e}")
        raise

# ---------------------------------------------------------------- jobs

def create_job(db: Session, job_type: str, payload: Optional[dict] = None) -> Job:
    job = Job(type=job_type, status=JobStatus.PENDING, progress=0, payload=payload or {})
    db.add(job)
    db.commit()
    db.refresh(job)
    logger.info(f"Job {job.id} created ({job_type})")
    return job

def get_job_by_id(db: Session, job_id: int) -> Optional[Job]:
    """Get job by ID"""
    return db.query(Job).filter(Job.id == job_id).first()

def get_next_pending_job(db: Session) -> Optional[Job]:
    """Oldest pending job, FIFO by creation time."""
    return (
        db.query(Job)
        .filter(Job.status == JobStatus.PENDING)
        .order_by(Job.created_at.asc(), Job.id.asc())
        .first()
    )

def claim_job(db: Session, job_id: int) -> Optional[Job]:
    """Atomically move a pending job to processing.

    Returns None when the job is no longer pending.
    """
    now = utcnow()
    claimed = (
        db.query(Job)
        .filter(Job.id == job_id, Job.status == JobStatus.PENDING)
        .update(
            {
                Job.status: JobStatus.PROCESSING,
                Job.started_at: now,
                Job.progress: 0,
                Job.message: "Starting…",
                Job.updated_at: now,
            },
            synchronize_session=False,
        )
    )
    db.commit()
    if not claimed:
        return None
    return get_job_by_id(db, job_id)

def update_job_progress(db: Session, job_id: int, progress: int, message: Optional[str]) -> bool:
    """Best-effort progress write; only applies while the job is processing."""
    try:
        updated = (
            db.query(Job)
            .filter(Job.id == job_id, Job.status == JobStatus.PROCESSING)
            .update(
                {Job.progress: progress, Job.message: message, Job.updated_at: utcnow()},
                synchronize_session=False,
            )
        )
        db.commit()
        return bool(updated)
    except SQLAlchemyError as e:
        logger.warning(f"Progress update for job {job_id} failed: {e}")
        db.rollback()
        return False

def complete_job(db: Session, job_id: int, message: str = "Complete") -> bool:
    now = utcnow()
    updated = (
        db.query(Job)
        .filter(Job.id == job_id, Job.status == JobStatus.PROCESSING)
        .update(
            {
                Job.status: JobStatus.COMPLETED,
                Job.progress: 100,
                Job.message: message,
                Job.ended_at: now,
                Job.updated_at: now,
            },
            synchronize_session=False,
        )
    )
    db.commit()
    if not updated:
        logger.warning(f"Job {job_id} was not processing, completion not recorded")
    return bool(updated)

def fail_job(db: Session, job_id: int, error: str) -> bool:
    now = utcnow()
    updated = (
        db.query(Job)
        .filter(Job.id == job_id, Job.status == JobStatus.PROCESSING)
        .update(
            {
                Job.status: JobStatus.FAILED,
                Job.error: error,
                Job.ended_at: now,
                Job.updated_at: now,
            },
            synchronize_session=False,
        )
    )
    db.commit()
    if not updated:
        logger.warning(f"Job {job_id} was not processing, failure not recorded")
    return bool(updated)

def recover_stale_jobs(db: Session, timeout_seconds: int) -> int:
    """Fail jobs stuck in processing longer than the timeout."""
    now = utcnow()
    cutoff = now - timedelta(seconds=timeout_seconds)
    minutes = timeout_seconds // 60
    count = (
        db.query(Job)
        .filter(Job.status == JobStatus.PROCESSING, Job.started_at < cutoff)
        .update(
            {
                Job.status: JobStatus.FAILED,
                Job.error: f"Job timed out after {minutes} minutes",
                Job.ended_at: now,
                Job.updated_at: now,
            },
            synchronize_session=False,
        )
    )
    db.commit()
    return count

def delete_finished_jobs(db: Session) -> int:
    count = (
        db.query(Job)
        .filter(Job.status.in_(JobStatus.TERMINAL))
        .delete(synchronize_session=False)
    )
    db.commit()
    return count

# ---------------------------------------------------------------- podcasts / episodes

def get_podcast_by_id(db: Session, podcast_id: str) -> Optional[Podcast]:
    return db.query(Podcast).filter(Podcast.id == podcast_id).first()

def update_podcast(db: Session, podcast_id: str, **kwargs) -> Optional[Podcast]:
    podcast = get_podcast_by_id(db, podcast_id)
    if not podcast:
        return None
    for key, value in kwargs.items():
        if hasattr(podcast, key):
            setattr(podcast, key, value)
    db.commit()
    return podcast

def get_episode_by_id(db: Session, episode_id: str) -> Optional[Episode]:
    return db.query(Episode).filter(Episode.id == episode_id).first()

def get_episodes_by_podcast(db: Session, podcast_id: str, published_only: bool = False) -> List[Episode]:
    query = db.query(Episode).filter(Episode.podcast_id == podcast_id)
    if published_only:
        query = query.filter(Episode.audio_url.isnot(None))
    return query.order_by(Episode.order.asc(), Episode.created_at.asc()).all()

def next_episode_order(db: Session, podcast_id: str) -> int:
    """Append-at-end position for a new episode."""
    current = db.query(func.max(Episode.order)).filter(Episode.podcast_id == podcast_id).scalar()
    return 0 if current is None else current + 1

def create_episode(db: Session, podcast_id: str, title: str, **kwargs) -> Episode:
    if kwargs.get('order') is None:
        kwargs['order'] = next_episode_order(db, podcast_id)
    episode = Episode(podcast_id=podcast_id, title=title, **kwargs)
    db.add(episode)
    db.commit()
    db.refresh(episode)
    return episode

def update_episode(db: Session, episode_id: str, **kwargs) -> Episode:
    """Update episode fields; raises if the episode no longer exists."""
    episode = get_episode_by_id(db, episode_id)
    if not episode:
        raise LookupError(f"Episode {episode_id} not found")

    for key, value in kwargs.items():
        if hasattr(episode, key):
            setattr(episode, key, value)

    db.commit()
    return episode

# ---------------------------------------------------------------- sources

def create_source(db: Session, podcast_id: str, source_type: str, external_id: Optional[str] = None) -> Source:
    source = Source(podcast_id=podcast_id, type=source_type, external_id=external_id)
    db.add(source)
    db.commit()
    db.refresh(source)
    return source

def get_sources_by_type(db: Session, source_type: str, podcast_id: Optional[str] = None) -> List[Source]:
    query = db.query(Source).filter(Source.type == source_type)
    if podcast_id:
        query = query.filter(Source.podcast_id == podcast_id)
    return query.order_by(Source.created_at.asc()).all()

def touch_source(db: Session, source_id: str) -> None:
    db.query(Source).filter(Source.id == source_id).update(
        {Source.last_checked: utcnow()}, synchronize_session=False
    )
    db.commit()

def touch_playlist_sources(db: Session, podcast_id: str, playlist_id: str) -> int:
    count = (
        db.query(Source)
        .filter(
            Source.podcast_id == podcast_id,
            Source.type == SourceType.PLAYLIST,
            Source.external_id == playlist_id,
        )
        .update({Source.last_checked: utcnow()}, synchronize_session=False)
    )
    db.commit()
    return count
