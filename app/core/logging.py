"""
Structured logging and monitoring for the lesson generation pipeline
"""
import sys
from typing import Dict, Optional
from contextvars import ContextVar
import logging

import structlog
from structlog.processors import CallsiteParameter, CallsiteParameterAdder
from prometheus_client import Counter, Histogram, Gauge

from app.config import Settings, get_settings

# Context variables for request tracking
request_id_var: ContextVar[Optional[str]] = ContextVar("request_id", default=None)
job_id_var: ContextVar[Optional[str]] = ContextVar("job_id", default=None)
lesson_id_var: ContextVar[Optional[int]] = ContextVar("lesson_id", default=None)

# Prometheus metrics
llm_requests = Counter("llm_requests_total", "Total LLM requests", ["model", "operation", "status"])
llm_duration = Histogram("llm_duration_seconds", "LLM request duration", ["model", "operation"])
chunk_results = Counter("prompt_chunks_total", "Prompt chunks by outcome", ["pipeline", "outcome"])
generation_jobs = Counter("generation_jobs_total", "Generation jobs by outcome", ["job_type", "status"])
generation_duration = Histogram("generation_job_duration_seconds", "Generation job duration", ["job_type"])
items_persisted = Counter("generated_items_total", "Generated rows persisted", ["job_type"])
active_jobs = Gauge("active_generation_jobs", "Number of running generation jobs")

_service_context: Dict[str, str] = {}


def add_request_context(logger, method_name, event_dict):
    """Add request context to log events"""
    request_id = request_id_var.get()
    job_id = job_id_var.get()
    lesson_id = lesson_id_var.get()

    if request_id:
        event_dict["request_id"] = request_id
    if job_id:
        event_dict["job_id"] = job_id
    if lesson_id is not None:
        event_dict.setdefault("lesson_id", lesson_id)

    event_dict.update(_service_context)
    return event_dict


def setup_logging(settings: Optional[Settings] = None):
    """Configure structured logging for the application"""
    settings = settings or get_settings()

    _service_context["service"] = settings.service_name
    _service_context["environment"] = settings.environment.value

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, settings.log_level.upper(), logging.INFO)
    )

    processors = [
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        add_request_context,
        CallsiteParameterAdder(
            parameters=[CallsiteParameter.FILENAME, CallsiteParameter.LINENO]
        ),
        structlog.processors.UnicodeDecoder(),
    ]

    if settings.log_format == "json" or settings.is_production:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def get_logger(name: str = __name__) -> structlog.BoundLogger:
    """Get a configured logger instance"""
    return structlog.get_logger(name)


class MetricsLogger:
    """Helper class for logging with metrics"""

    def __init__(self, logger: structlog.BoundLogger):
        self.logger = logger

    def log_job_start(self, job_id: str, job_type: str, lesson_id: Optional[int]):
        job_id_var.set(job_id)
        lesson_id_var.set(lesson_id)
        active_jobs.inc()
        self.logger.info("generation_job_started",
                         job_type=job_type,
                         lesson_id=lesson_id)

    def log_job_complete(self, job_type: str, duration: float, items_created: int):
        active_jobs.dec()
        generation_jobs.labels(job_type=job_type, status="success").inc()
        generation_duration.labels(job_type=job_type).observe(duration)
        items_persisted.labels(job_type=job_type).inc(items_created)
        self.logger.info("generation_job_completed",
                         job_type=job_type,
                         duration_seconds=duration,
                         items_created=items_created)

    def log_job_skipped(self, job_type: str, reason: str):
        active_jobs.dec()
        generation_jobs.labels(job_type=job_type, status="skipped").inc()
        self.logger.warning("generation_job_skipped",
                            job_type=job_type,
                            reason=reason)

    def log_job_error(self, job_type: str, error: str):
        active_jobs.dec()
        generation_jobs.labels(job_type=job_type, status="error").inc()
        self.logger.error("generation_job_failed",
                          job_type=job_type,
                          error=error)

    def log_llm_complete(self, model: str, operation: str, duration: float,
                         tokens_used: int = 0, success: bool = True):
        status = "success" if success else "error"
        llm_requests.labels(model=model, operation=operation, status=status).inc()
        llm_duration.labels(model=model, operation=operation).observe(duration)

        if success:
            self.logger.debug("llm_complete",
                              model=model,
                              operation=operation,
                              duration_seconds=duration,
                              tokens_used=tokens_used)
        else:
            self.logger.warning("llm_failed",
                                model=model,
                                operation=operation,
                                duration_seconds=duration)

    def log_chunk_outcome(self, pipeline: str, outcome: str):
        chunk_results.labels(pipeline=pipeline, outcome=outcome).inc()


# Initialize logging on module import
setup_logging()

# Create default logger
logger = get_logger(__name__)
metrics_logger = MetricsLogger(logger)
