from fastapi import APIRouter, HTTPException, Depends
from sqlalchemy import func, text
from sqlalchemy.orm import Session
from database import get_db, Job, JobStatus, utcnow
from config import settings
from scheduler import scheduler
import psutil
import os
import tempfile

health_router = APIRouter()

# Usage above this is reported as a warning, not a failure
RESOURCE_WARNING_PERCENT = 90


def _isoformat(value):
    return value.isoformat() if value else None


def check_database(db: Session) -> dict:
    db.execute(text("SELECT 1"))
    counts = dict(
        db.query(Job.status, func.count(Job.id))
        .filter(Job.status.in_([JobStatus.PENDING, JobStatus.PROCESSING]))
        .group_by(Job.status)
        .all()
    )
    return {
        "status": "healthy",
        "pending_jobs": counts.get(JobStatus.PENDING, 0),
        "processing_jobs": counts.get(JobStatus.PROCESSING, 0),
    }


def check_scheduler() -> dict:
    """In-process scheduler state; "disabled" when a separate worker drains the queue."""
    return {
        "status": "healthy" if settings.run_scheduler else "disabled",
        "draining": scheduler.is_draining,
        "last_drain_at": _isoformat(scheduler.last_drain_at),
        "last_poll_at": _isoformat(scheduler.last_poll_at),
        "jobs_processed": scheduler.jobs_processed,
    }


def check_system() -> dict:
    cpu_percent = psutil.cpu_percent(interval=1)
    memory = psutil.virtual_memory()
    # Downloads and transcodes stage whole files here
    disk = psutil.disk_usage(settings.tmp_dir)

    busiest = max(cpu_percent, memory.percent, disk.percent)
    return {
        "status": "warning" if busiest > RESOURCE_WARNING_PERCENT else "healthy",
        "cpu_percent": cpu_percent,
        "memory_percent": memory.percent,
        "disk_percent": disk.percent,
        "disk_free_bytes": disk.free,
    }


def check_tmp_dir() -> dict:
    with tempfile.NamedTemporaryFile(dir=settings.tmp_dir, prefix="health-check-") as f:
        f.write(b"health check")
        f.flush()
        os.fsync(f.fileno())
    return {"status": "healthy", "tmp_dir": settings.tmp_dir}


@health_router.get("/")
def health_check():
    """Basic health check"""
    return {
        "status": "healthy",
        "timestamp": utcnow().isoformat(),
        "service": "Podcast Job Processing API",
        "version": "1.0.0"
    }

@health_router.get("/detailed")
def detailed_health_check(db: Session = Depends(get_db)):
    """Database, job queue, scheduler, host resources and temp storage"""
    checks = {}
    healthy = True

    # A failing database or tmp dir means jobs cannot run at all
    for name, check, critical in (
        ("database", lambda: check_database(db), True),
        ("scheduler", check_scheduler, False),
        ("system", check_system, False),
        ("filesystem", check_tmp_dir, True),
    ):
        try:
            checks[name] = check()
        except Exception as e:
            checks[name] = {"status": "unhealthy", "error": str(e)}
            healthy = healthy and not critical

    health_status = {
        "status": "healthy" if healthy else "unhealthy",
        "timestamp": utcnow().isoformat(),
        "checks": checks
    }
    if not healthy:
        raise HTTPException(status_code=503, detail=health_status)

    return health_status

@health_router.get("/ready")
def readiness_check(db: Session = Depends(get_db)):
    """Kubernetes readiness probe"""
    try:
        db.execute(text("SELECT 1"))
        return {"status": "ready"}
    except Exception as e:
        raise HTTPException(
            status_code=503,
            detail={"status": "not ready", "error": str(e)}
        )

@health_router.get("/live")
def liveness_check():
    """Kubernetes liveness probe"""
    return {"status": "alive"}
