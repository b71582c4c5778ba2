"""
Analytics Module

Records chat and ingestion events in the analytics table and serves cached
aggregates for dashboards.
"""

import logging
from collections import Counter
from datetime import timedelta
from typing import Any, Dict, Optional

from botkit.cache import make_cache_key
from botkit.database import AnalyticsEvent, utcnow

# Configure logging
logger = logging.getLogger(__name__)


class AnalyticsRecorder:
    """
    Writes analytics events and summarises them.

    Example:
        analytics = AnalyticsRecorder(database, cache)
        analytics.record("response_generated", {"tokens": 120, "processing_time": 0.8}, chatbot_id=1)
        analytics.get_summary(chatbot_id=1, days=7)
    """

    CACHE_GROUP = "performance"
    CACHE_PREFIX = "analytics_summary_"

    def __init__(self, database, cache=None):
        self.database = database
        self.cache = cache

    def record(
        self,
        event_type: str,
        event_data: Optional[Dict[str, Any]] = None,
        chatbot_id: Optional[int] = None,
    ) -> int:
        """
        Store an event.

        Returns:
            The event id
        """
        with self.database.session() as session:
            event = AnalyticsEvent(chatbot_id=chatbot_id, event_type=event_type, event_data=event_data or {})
            session.add(event)
            session.flush()
            event_id = event.id

        if self.cache is not None:
            self.cache.invalidate_prefix(self.CACHE_PREFIX, group=self.CACHE_GROUP)
        logger.debug(f"Recorded analytics event {event_type} (chatbot={chatbot_id})")
        return event_id

    def _summarise(self, chatbot_id: Optional[int], days: int) -> Dict[str, Any]:
        since = utcnow() - timedelta(days=days)
        with self.database.session() as session:
            query = session.query(AnalyticsEvent).filter(AnalyticsEvent.created_at >= since)
            if chatbot_id is not None:
                query = query.filter(AnalyticsEvent.chatbot_id == chatbot_id)
            events = [(row.event_type, row.event_data or {}) for row in query.all()]

        by_type = Counter(event_type for event_type, _ in events)
        responses = [data for event_type, data in events if event_type == "response_generated"]
        total_tokens = sum(int(data.get("tokens") or 0) for data in responses)
        times = [float(data["processing_time"]) for data in responses if data.get("processing_time") is not None]

        return {
            "chatbot_id": chatbot_id,
            "days": days,
            "total_events": len(events),
            "by_type": dict(by_type),
            "total_responses": len(responses),
            "total_tokens": total_tokens,
            "average_response_time": round(sum(times) / len(times), 4) if times else 0.0,
        }

    def get_summary(self, chatbot_id: Optional[int] = None, days: int = 30) -> Dict[str, Any]:
        """Event counts, token totals and mean response time over the last `days`."""
        if self.cache is None:
            return self._summarise(chatbot_id, days)
        return self.cache.remember(
            make_cache_key(self.CACHE_PREFIX, chatbot_id, days),
            lambda: self._summarise(chatbot_id, days),
            group=self.CACHE_GROUP,
        )

    def prune(self, older_than_days: int = 90) -> int:
        cutoff = utcnow() - timedelta(days=older_than_days)
        with self.database.session() as session:
            removed = (
                session.query(AnalyticsEvent)
                .filter(AnalyticsEvent.created_at < cutoff)
                .delete(synchronize_session=False)
            )
        logger.info(f"Pruned {removed} analytics events older than {older_than_days} days")
        return removed
