"""Observability - Structured logging and metrics"""

import asyncio
import json
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from functools import wraps
from typing import Callable, Optional

from .db.config import settings


# ============ Structured Logging ============

class JSONFormatter(logging.Formatter):
    """JSON formatter for structured logging"""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        # Add extra fields
        if hasattr(record, "extra"):
            log_data.update(record.extra)

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def setup_logging(level: str = "INFO", json_format: bool = True) -> logging.Logger:
    """
    Setup structured logging for the engine.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR)
        json_format: Use JSON format for logs

    Returns:
        Configured logger
    """
    logger = logging.getLogger("nucleus")
    logger.setLevel(getattr(logging, level.upper()))

    logger.handlers.clear()

    handler = logging.StreamHandler()
    if json_format:
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(
            logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")
        )

    logger.addHandler(handler)
    return logger


logger = setup_logging(settings.log_level, settings.log_json)


def log_with_context(**context):
    """Create a logger adapter that attaches context to every record"""
    class ContextAdapter(logging.LoggerAdapter):
        def process(self, msg, kwargs):
            kwargs.setdefault("extra", {})
            kwargs["extra"]["extra"] = {**self.extra, **kwargs["extra"].get("extra", {})}
            return msg, kwargs

    return ContextAdapter(logger, context)


# ============ Metrics ============

@dataclass
class Metrics:
    """In-memory metrics collector"""

    # Counters
    ingest_count: int = 0
    fetch_count: int = 0
    thread_build_count: int = 0
    score_count: int = 0
    error_count: int = 0

    # Latency histograms (simplified as lists)
    ingest_latencies: list[float] = field(default_factory=list)
    fetch_latencies: list[float] = field(default_factory=list)
    thread_build_latencies: list[float] = field(default_factory=list)
    score_latencies: list[float] = field(default_factory=list)

    # Gauges
    actors_indexed: int = 0
    posts_indexed: int = 0
    tombstones: int = 0

    # Dedup cache
    cache_hits: int = 0
    cache_misses: int = 0
    cache_shared_fetches: int = 0

    def increment(self, name: str, value: int = 1) -> None:
        """Increment a counter"""
        if hasattr(self, name):
            setattr(self, name, getattr(self, name) + value)

    def record_latency(self, name: str, latency_ms: float) -> None:
        latency_list = getattr(self, f"{name}_latencies", None)
        if latency_list is not None:
            latency_list.append(latency_ms)
            # Keep last 1000 measurements
            if len(latency_list) > 1000:
                latency_list.pop(0)

    def set_gauge(self, name: str, value: int) -> None:
        if hasattr(self, name):
            setattr(self, name, value)

    def get_percentile(self, name: str, percentile: float) -> Optional[float]:
        latencies = getattr(self, f"{name}_latencies", [])
        if not latencies:
            return None
        sorted_latencies = sorted(latencies)
        idx = int(len(sorted_latencies) * percentile / 100)
        return sorted_latencies[min(idx, len(sorted_latencies) - 1)]

    def get_hit_rate(self) -> float:
        total = self.cache_hits + self.cache_misses
        return self.cache_hits / total if total > 0 else 0.0

    def to_dict(self) -> dict:
        """Export metrics as dictionary"""
        return {
            "counters": {
                "ingest_count": self.ingest_count,
                "fetch_count": self.fetch_count,
                "thread_build_count": self.thread_build_count,
                "score_count": self.score_count,
                "error_count": self.error_count,
            },
            "latencies": {
                "fetch_p50": self.get_percentile("fetch", 50),
                "fetch_p95": self.get_percentile("fetch", 95),
                "thread_build_p50": self.get_percentile("thread_build", 50),
                "thread_build_p95": self.get_percentile("thread_build", 95),
                "score_p50": self.get_percentile("score", 50),
            },
            "gauges": {
                "actors_indexed": self.actors_indexed,
                "posts_indexed": self.posts_indexed,
                "tombstones": self.tombstones,
            },
            "cache": {
                "hit_rate": round(self.get_hit_rate(), 3),
                "hits": self.cache_hits,
                "misses": self.cache_misses,
                "shared_fetches": self.cache_shared_fetches,
            },
        }

    def reset(self) -> None:
        """Reset all metrics"""
        self.ingest_count = 0
        self.fetch_count = 0
        self.thread_build_count = 0
        self.score_count = 0
        self.error_count = 0
        self.ingest_latencies.clear()
        self.fetch_latencies.clear()
        self.thread_build_latencies.clear()
        self.score_latencies.clear()
        self.cache_hits = 0
        self.cache_misses = 0
        self.cache_shared_fetches = 0


# Global metrics instance
metrics = Metrics()


# ============ Decorators ============

def track_latency(operation: str):
    """Decorator to track operation latency"""
    def decorator(func: Callable):
        @wraps(func)
        async def async_wrapper(*args, **kwargs):
            start = time.perf_counter()
            try:
                return await func(*args, **kwargs)
            finally:
                elapsed_ms = (time.perf_counter() - start) * 1000
                metrics.record_latency(operation, elapsed_ms)
                metrics.increment(f"{operation}_count")

        @wraps(func)
        def sync_wrapper(*args, **kwargs):
            start = time.perf_counter()
            try:
                return func(*args, **kwargs)
            finally:
                elapsed_ms = (time.perf_counter() - start) * 1000
                metrics.record_latency(operation, elapsed_ms)
                metrics.increment(f"{operation}_count")

        if asyncio.iscoroutinefunction(func):
            return async_wrapper
        return sync_wrapper

    return decorator


def track_errors(func: Callable):
    """Decorator to count and log errors before re-raising"""
    @wraps(func)
    async def async_wrapper(*args, **kwargs):
        try:
            return await func(*args, **kwargs)
        except Exception as e:
            metrics.increment("error_count")
            logger.error(f"Error in {func.__name__}: {e}", exc_info=True)
            raise

    @wraps(func)
    def sync_wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except Exception as e:
            metrics.increment("error_count")
            logger.error(f"Error in {func.__name__}: {e}", exc_info=True)
            raise

    if asyncio.iscoroutinefunction(func):
        return async_wrapper
    return sync_wrapper


# ============ Health Check ============

def get_health_status(session) -> dict:
    """
    Get health status of a feed session.

    Args:
        session: FeedSession

    Returns:
        Health status dict
    """
    posts = session.posts
    metrics.set_gauge("actors_indexed", posts.actor_count())
    metrics.set_gauge("posts_indexed", posts.post_count())
    metrics.set_gauge("tombstones", posts.tombstone_count())

    return {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "checks": {
            "posts": {
                "status": "ok",
                "actors": metrics.actors_indexed,
                "posts": metrics.posts_indexed,
                "tombstones": metrics.tombstones,
            },
            "backlinks": {
                "status": "ok",
                "subjects": session.backlinks.subject_count(),
            },
            "caches": {
                "status": "ok",
                "records": len(session.record_cache),
                "identities": len(session.identity_cache),
            },
        },
    }
