from fastapi import Request
import time
import logging
from prometheus_client import Counter, Gauge, Histogram, generate_latest, CONTENT_TYPE_LATEST
from fastapi.responses import Response as FastAPIResponse

logger = logging.getLogger(__name__)

# Prometheus metrics
request_count = Counter(
    'http_requests_total',
    'Total HTTP requests',
    ['method', 'endpoint', 'status']
)

request_duration = Histogram(
    'http_request_duration_seconds',
    'HTTP request duration',
    ['method', 'endpoint']
)

job_count = Counter(
    'jobs_total',
    'Total jobs processed',
    ['type', 'status']
)

# Playlist scans take seconds, long video downloads tens of minutes
job_duration = Histogram(
    'job_processing_duration_seconds',
    'Job processing duration',
    ['type'],
    buckets=(1, 5, 15, 30, 60, 120, 300, 600, 1200, 1800)
)

stale_jobs_recovered = Counter(
    'stale_jobs_recovered_total',
    'Jobs failed by stale-job recovery'
)

drain_in_progress = Gauge(
    'scheduler_drain_in_progress',
    'Whether a queue drain is currently running'
)

# Paths polled often enough to drown the request log
QUIET_PATHS = ("/metrics", "/health/live", "/health/ready")


def record_job(job_type: str, status: str, duration: float) -> None:
    job_count.labels(type=job_type, status=status).inc()
    job_duration.labels(type=job_type).observe(duration)


def _endpoint_label(request: Request) -> str:
    # Use the route template so /jobs/{job_id} is one series, not one per job
    route = request.scope.get("route")
    return getattr(route, "path", None) or request.url.path


class MonitoringMiddleware:
    def __init__(self, app):
        self.app = app

    async def __call__(self, scope, receive, send):
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        request = Request(scope, receive)
        start_time = time.time()

        async def send_wrapper(message):
            if message["type"] == "http.response.start":
                duration = time.time() - start_time
                status_code = message["status"]
                endpoint = _endpoint_label(request)

                request_count.labels(
                    method=request.method,
                    endpoint=endpoint,
                    status=status_code
                ).inc()

                request_duration.labels(
                    method=request.method,
                    endpoint=endpoint
                ).observe(duration)

                if request.url.path not in QUIET_PATHS:
                    logger.info(
                        f"{request.method} {request.url.path} "
                        f"- {status_code} - {duration:.3f}s"
                    )

            await send(message)

        await self.app(scope, receive, send_wrapper)

def setup_monitoring(app):
    """Register the metrics middleware and the /metrics endpoint"""
    app.add_middleware(MonitoringMiddleware)

    @app.get("/metrics", include_in_schema=False)
    def get_metrics():
        return FastAPIResponse(
            generate_latest(),
            media_type=CONTENT_TYPE_LATEST
        )
