"""
Health Check Module

Inspects every dependency of the chatbot core and reports a status per
component plus an overall status (the worst of the components).

Components:
- database: required tables present (missing tables are critical)
- queue: documents stuck in processing for over an hour (warning)
- cache: more than half of the cache entries expired (warning)
- api: at least one chat provider configured (none is critical)
- vector_store: backend configured and reachable (warning otherwise)
"""

import logging
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Dict, Optional

from sqlalchemy import func

from config.settings import get_settings, QueueConfig
from botkit.database import Document, DocumentStatus, utcnow

# Configure logging
logger = logging.getLogger(__name__)

HEALTHY = "healthy"
WARNING = "warning"
CRITICAL = "critical"

_SEVERITY = {HEALTHY: 0, WARNING: 1, CRITICAL: 2}


@dataclass
class ComponentHealth:
    """Result of one check."""
    status: str
    message: str
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {"status": self.status, "message": self.message, "details": self.details}


class HealthChecker:
    """
    Runs health checks across the core's dependencies.

    Example:
        report = HealthChecker(database, vector_db, llm_client, cache).run()
        if report["status"] == "critical":
            ...
    """

    def __init__(
        self,
        database,
        vector_db=None,
        llm_client=None,
        cache=None,
        config: Optional[QueueConfig] = None,
    ):
        self.database = database
        self.vector_db = vector_db
        self.llm_client = llm_client
        self.cache = cache
        self.config = config or get_settings().queue

    def check_database(self) -> ComponentHealth:
        try:
            missing = self.database.missing_tables()
        except Exception as e:
            logger.error(f"Database health check failed: {e}")
            return ComponentHealth(CRITICAL, f"Database unreachable: {e}")

        if missing:
            return ComponentHealth(CRITICAL, "Required tables are missing", {"missing_tables": missing})
        return ComponentHealth(HEALTHY, "All required tables present")

    def check_queue(self) -> ComponentHealth:
        cutoff = utcnow() - timedelta(seconds=self.config.stale_processing_seconds)
        try:
            with self.database.session() as session:
                counts = dict(
                    session.query(Document.status, func.count(Document.id)).group_by(Document.status).all()
                )
                stuck = (
                    session.query(func.count(Document.id))
                    .filter(Document.status == DocumentStatus.PROCESSING, Document.updated_at < cutoff)
                    .scalar()
                ) or 0
        except Exception as e:
            logger.error(f"Queue health check failed: {e}")
            return ComponentHealth(CRITICAL, f"Queue state unavailable: {e}")

        details = {"counts": counts, "stuck_processing": stuck}
        if stuck:
            return ComponentHealth(WARNING, f"{stuck} documents stuck in processing", details)
        return ComponentHealth(HEALTHY, "Queue is moving", details)

    def check_cache(self) -> ComponentHealth:
        if self.cache is None:
            return ComponentHealth(HEALTHY, "Cache not configured")

        stats = self.cache.get_stats()
        total = stats["total_entries"]
        expired = stats["expired_entries"]
        details = {"total_entries": total, "expired_entries": expired, "hit_rate": stats["hit_rate"]}
        if total and expired / total > 0.5:
            return ComponentHealth(WARNING, "More than half of the cache entries are expired", details)
        return ComponentHealth(HEALTHY, "Cache healthy", details)

    def check_api(self) -> ComponentHealth:
        if self.llm_client is None:
            return ComponentHealth(CRITICAL, "No LLM client available")

        configured = self.llm_client.configured_providers()
        if not configured:
            return ComponentHealth(CRITICAL, "No chat provider is configured")
        return ComponentHealth(HEALTHY, f"{len(configured)} providers configured", {"providers": configured})

    def check_vector_store(self) -> ComponentHealth:
        if self.vector_db is None:
            return ComponentHealth(WARNING, "No vector database available")
        if not self.vector_db.is_configured():
            return ComponentHealth(WARNING, f"{self.vector_db.backend} backend is not configured")

        try:
            count = self.vector_db.count()
        except Exception as e:
            logger.warning(f"Vector store health check failed: {e}")
            return ComponentHealth(WARNING, f"{self.vector_db.backend} backend unreachable: {e}")
        return ComponentHealth(HEALTHY, f"{count} vectors stored", {"backend": self.vector_db.backend, "count": count})

    def run(self) -> Dict[str, Any]:
        """Run every check and aggregate."""
        components = {
            "database": self.check_database(),
            "queue": self.check_queue(),
            "cache": self.check_cache(),
            "api": self.check_api(),
            "vector_store": self.check_vector_store(),
        }
        status = max((c.status for c in components.values()), key=_SEVERITY.get)
        if status != HEALTHY:
            logger.warning(f"Health check status: {status}")

        return {
            "status": status,
            "components": {name: result.to_dict() for name, result in components.items()},
            "checked_at": utcnow().isoformat(),
        }
