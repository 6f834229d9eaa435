from fastapi import FastAPI, HTTPException, Depends, Request, Query
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel
from sqlalchemy.orm import Session
from typing import List, Optional
import asyncio
import uuid
import logging
from datetime import datetime
from contextlib import asynccontextmanager, suppress

# Local imports
from config import settings
from database import get_db, create_tables, delete_finished_jobs, get_job_by_id, Job, JobStatus
from scheduler import add_profile_log, scheduler
from health import health_router
from monitoring import setup_monitoring

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[
        logging.FileHandler(settings.log_file),
        logging.StreamHandler()
    ]
)
logger = logging.getLogger(__name__)

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager"""
    # Startup
    try:
        create_tables()
        logger.info("Application started successfully")
    except Exception as e:
        logger.error(f"Startup error: {e}")
        raise

    scheduler_task = None
    if settings.run_scheduler:
        add_profile_log()
        scheduler_task = asyncio.create_task(scheduler.run_forever())
        logger.info("Background job scheduler started")

    yield

    # Shutdown
    logger.info("Application shutting down")
    if scheduler_task is not None:
        scheduler.stop()
        scheduler_task.cancel()
        with suppress(asyncio.CancelledError):
            await scheduler_task

# Create FastAPI app
app = FastAPI(
    title="Podcast Job Processing API",
    description="Background processing of podcast episodes from YouTube, URLs and uploads",
    version="1.0.0",
    lifespan=lifespan
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Configure properly for production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Setup monitoring
setup_monitoring(app)

# Include health check router
app.include_router(health_router, prefix="/health", tags=["health"])

# Request/Response models
class StatusResponse(BaseModel):
    job_id: int
    type: str
    status: str
    progress: int = 0
    message: Optional[str] = None
    error: Optional[str] = None
    created_at: datetime
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None

    class Config:
        json_schema_extra = {
            "example": {
                "job_id": 42,
                "type": "download_video",
                "status": "processing",
                "progress": 37,
                "message": "Downloading… 57% (12.4 MB / 21.8 MB)",
                "error": None,
                "created_at": "2024-01-01T12:00:00",
                "started_at": "2024-01-01T12:00:30",
                "ended_at": None
            }
        }

class JobListResponse(BaseModel):
    jobs: List[StatusResponse]

class DeleteJobsResponse(BaseModel):
    deleted: int

def to_status_response(job: Job) -> StatusResponse:
    return StatusResponse(
        job_id=job.id,
        type=job.type,
        status=job.status,
        progress=job.progress or 0,
        message=job.message,
        error=job.error if job.status == JobStatus.FAILED else None,
        created_at=job.created_at,
        started_at=job.started_at,
        ended_at=job.ended_at
    )

# Global exception handler
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(f"Global exception on {request.url}: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error", "error_id": str(uuid.uuid4())}
    )

@app.get("/jobs", response_model=JobListResponse)
def list_jobs(
    status: Optional[str] = None,
    limit: int = Query(50, ge=1, le=100),
    db: Session = Depends(get_db)
):
    """List jobs, newest first"""

    query = db.query(Job)

    if status:
        query = query.filter(Job.status == status)

    jobs = query.order_by(Job.created_at.desc(), Job.id.desc()).limit(limit).all()

    return JobListResponse(jobs=[to_status_response(job) for job in jobs])

@app.get("/jobs/{job_id}", response_model=StatusResponse)
def get_job_status(job_id: int, db: Session = Depends(get_db)):
    """Get job status"""

    job = get_job_by_id(db, job_id)
    if not job:
        raise HTTPException(status_code=404, detail="Job not found")

    return to_status_response(job)

@app.delete("/jobs", response_model=DeleteJobsResponse)
def clear_finished_jobs(db: Session = Depends(get_db)):
    """Delete completed and failed jobs"""

    deleted = delete_finished_jobs(db)
    logger.info(f"Deleted {deleted} finished job(s)")
    return DeleteJobsResponse(deleted=deleted)

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
