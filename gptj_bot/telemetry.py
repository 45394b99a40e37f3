"""Telemetry tracking for the GPT-J relay bot."""
from __future__ import annotations

import json
import logging
import os
import sqlite3
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


class MetricType(Enum):
    """Types of metrics tracked."""
    EVENT_USAGE = "event_usage"
    JOB_OUTCOME = "job_outcome"
    INFERENCE = "inference"
    QUEUE_DEPTH = "queue_depth"
    DELIVERY_FAILURE = "delivery_failure"
    ERROR_RATE = "error_rate"


@dataclass
class MetricEvent:
    """Individual metric event."""
    timestamp: float
    metric_type: MetricType
    name: str
    value: float
    tags: Dict[str, str] = field(default_factory=dict)
    metadata: Dict[str, Any] = field(default_factory=dict)


class TelemetryCollector:
    """Collects and stores telemetry data for the relay bot."""

    def __init__(self, db_path: Optional[Path] = None):
        """Initialize telemetry collector with database storage."""
        self.db_path = db_path or Path("telemetry.db")
        self._init_database()
        self._start_time = time.time()
        self._metrics_buffer: List[MetricEvent] = []
        self._flush_interval = 60  # Flush to DB every 60 seconds
        self._last_flush = time.time()

    def _init_database(self):
        """Initialize telemetry database schema."""
        with sqlite3.connect(self.db_path) as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS metrics (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    timestamp REAL NOT NULL,
                    metric_type TEXT NOT NULL,
                    name TEXT NOT NULL,
                    value REAL NOT NULL,
                    tags TEXT,
                    metadata TEXT,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
            """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_metrics_timestamp
                ON metrics(timestamp DESC)
            """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_metrics_type_name
                ON metrics(metric_type, name)
            """)
            conn.commit()

    def track_event(
        self,
        event_name: str,
        guild_id: str,
        success: bool = True,
        duration_ms: Optional[float] = None,
        channel_id: Optional[str] = None,
    ):
        """Track handling of a Discord gateway event."""
        tags = {
            "guild_id": guild_id,
            "success": str(success),
        }
        if channel_id:
            tags["channel_id"] = channel_id

        self.record(
            MetricType.EVENT_USAGE,
            event_name,
            1.0,
            tags=tags,
            metadata={"duration_ms": duration_ms} if duration_ms else {}
        )

    def track_job(
        self,
        outcome: str,
        duration_ms: float,
        *,
        source_id: str,
        elaboration: bool,
    ) -> None:
        """Record how a queued job finished (success, error or duplicate)."""

        self.record(
            MetricType.JOB_OUTCOME,
            outcome,
            duration_ms,
            tags={
                "source_id": source_id,
                "elaboration": "true" if elaboration else "false",
            },
        )

    def track_inference(
        self,
        success: bool,
        duration_ms: float,
        error: Optional[str] = None,
    ) -> None:
        """Record latency/outcome information for an inference call."""

        metadata: Dict[str, Any] = {"duration_ms": duration_ms}
        if error:
            metadata["error"] = error

        self.record(
            MetricType.INFERENCE,
            "pipeline_run",
            duration_ms,
            tags={"success": "true" if success else "false"},
            metadata=metadata,
        )

    def track_queue_depth(self, backlog_size: int) -> None:
        """Record the backlog size observed when a job was deferred."""

        self.record(
            MetricType.QUEUE_DEPTH,
            "job_backlog",
            float(backlog_size),
        )

    def track_delivery_failure(self, purpose: str, error_details: Optional[str] = None) -> None:
        """Record a reply that could not be delivered to its origin."""

        self.record(
            MetricType.DELIVERY_FAILURE,
            purpose,
            1.0,
            metadata={"error_details": error_details} if error_details else {},
        )

    def track_error(
        self,
        error_type: str,
        event: Optional[str] = None,
        error_details: Optional[str] = None
    ):
        """Track errors and failures."""
        tags = {}
        if event:
            tags["event"] = event

        self.record(
            MetricType.ERROR_RATE,
            error_type,
            1.0,
            tags=tags,
            metadata={"error_details": error_details} if error_details else {}
        )

    def record(
        self,
        metric_type: MetricType,
        name: str,
        value: float,
        tags: Optional[Dict[str, str]] = None,
        metadata: Optional[Dict[str, Any]] = None
    ):
        """Record a metric event."""
        event = MetricEvent(
            timestamp=time.time(),
            metric_type=metric_type,
            name=name,
            value=value,
            tags=tags or {},
            metadata=metadata or {}
        )

        self._metrics_buffer.append(event)

        # Auto-flush if buffer is getting large or enough time has passed
        if len(self._metrics_buffer) >= 100 or \
           time.time() - self._last_flush > self._flush_interval:
            self.flush()

    def flush(self):
        """Flush buffered metrics to database."""
        if not self._metrics_buffer:
            return

        try:
            with sqlite3.connect(self.db_path) as conn:
                for event in self._metrics_buffer:
                    conn.execute("""
                        INSERT INTO metrics
                        (timestamp, metric_type, name, value, tags, metadata)
                        VALUES (?, ?, ?, ?, ?, ?)
                    """, (
                        event.timestamp,
                        event.metric_type.value,
                        event.name,
                        event.value,
                        json.dumps(event.tags),
                        json.dumps(event.metadata)
                    ))
                conn.commit()

            logger.info("Flushed %d metrics to database", len(self._metrics_buffer))
            self._metrics_buffer.clear()
            self._last_flush = time.time()

        except sqlite3.Error as e:
            logger.error("Failed to flush metrics: %s", e)

    def get_job_summary(self, hours: int = 24) -> Dict[str, Dict[str, float]]:
        """Return job counts and average duration grouped by outcome."""

        start_time = time.time() - (hours * 3600)
        query = """
            SELECT
                name as outcome,
                COUNT(*) as jobs,
                AVG(value) as avg_duration_ms,
                SUM(CASE WHEN json_extract(tags, '$.elaboration') = 'true'
                    THEN 1 ELSE 0 END) as elaborations
            FROM metrics
            WHERE metric_type = ? AND timestamp >= ?
            GROUP BY name
        """

        with sqlite3.connect(self.db_path) as conn:
            cursor = conn.execute(query, [MetricType.JOB_OUTCOME.value, start_time])
            summary: Dict[str, Dict[str, float]] = {}
            for row in cursor.fetchall():
                summary[row[0]] = {
                    "jobs": float(row[1] or 0),
                    "avg_duration_ms": float(row[2] or 0.0),
                    "elaborations": float(row[3] or 0),
                }
            return summary

    def get_inference_summary(self, hours: int = 24) -> Dict[str, float]:
        """Return call volume, failure rate and latency for inference calls."""

        start_time = time.time() - (hours * 3600)
        query = """
            SELECT
                COUNT(*) as calls,
                SUM(CASE WHEN json_extract(tags, '$.success') = 'true'
                    THEN 0 ELSE 1 END) as failures,
                AVG(value) as avg_latency_ms,
                MAX(value) as max_latency_ms
            FROM metrics
            WHERE metric_type = ? AND timestamp >= ?
        """

        with sqlite3.connect(self.db_path) as conn:
            row = conn.execute(query, [MetricType.INFERENCE.value, start_time]).fetchone()
        calls = float(row[0] or 0)
        failures = float(row[1] or 0)
        return {
            "calls": calls,
            "failures": failures,
            "failure_rate": failures / calls if calls else 0.0,
            "avg_latency_ms": float(row[2] or 0.0),
            "max_latency_ms": float(row[3] or 0.0),
        }

    def get_queue_depth_summary(self, hours: int = 24) -> Dict[str, float]:
        """Return aggregate backlog statistics."""

        start_time = time.time() - (hours * 3600)
        query = """
            SELECT
                AVG(value) as avg_backlog,
                MAX(value) as max_backlog,
                COUNT(*) as samples
            FROM metrics
            WHERE metric_type = ? AND timestamp >= ?
        """

        with sqlite3.connect(self.db_path) as conn:
            row = conn.execute(query, [MetricType.QUEUE_DEPTH.value, start_time]).fetchone()
        return {
            "avg_backlog": float(row[0] or 0.0),
            "max_backlog": float(row[1] or 0.0),
            "samples": float(row[2] or 0),
        }

    def get_error_summary(self, hours: int = 24) -> Dict[str, int]:
        """Get error counts grouped by type, delivery failures included."""
        start_time = time.time() - (hours * 3600)

        with sqlite3.connect(self.db_path) as conn:
            cursor = conn.execute("""
                SELECT
                    CASE WHEN metric_type = ? THEN 'delivery:' || name ELSE name END,
                    COUNT(*) as count
                FROM metrics
                WHERE metric_type IN (?, ?) AND timestamp >= ?
                GROUP BY metric_type, name
                ORDER BY count DESC
            """, [
                MetricType.DELIVERY_FAILURE.value,
                MetricType.ERROR_RATE.value,
                MetricType.DELIVERY_FAILURE.value,
                start_time,
            ])

            return {row[0]: row[1] for row in cursor.fetchall()}

    def generate_report(self, hours: int = 24) -> Dict[str, Any]:
        """Generate a combined telemetry report."""
        self.flush()

        return {
            "uptime_seconds": time.time() - self._start_time,
            "jobs": self.get_job_summary(hours),
            "inference": self.get_inference_summary(hours),
            "queue_depth": self.get_queue_depth_summary(hours),
            "errors": self.get_error_summary(hours),
        }

    def cleanup_old_data(self, days_to_keep: int = 30):
        """Clean up old telemetry data."""
        cutoff_time = time.time() - (days_to_keep * 86400)

        with sqlite3.connect(self.db_path) as conn:
            cursor = conn.execute(
                "DELETE FROM metrics WHERE timestamp < ?",
                (cutoff_time,)
            )
            deleted = cursor.rowcount
            conn.commit()

        logger.info("Cleaned up %d old metric events", deleted)
        return deleted


# Singleton instance
_telemetry: Optional[TelemetryCollector] = None


def get_telemetry() -> TelemetryCollector:
    """Get or create singleton telemetry collector."""
    global _telemetry
    if _telemetry is None:
        db_path = os.getenv("GPTJ_BOT_TELEMETRY_DB", "telemetry.db")
        _telemetry = TelemetryCollector(Path(db_path))
    return _telemetry


__all__ = ["MetricEvent", "MetricType", "TelemetryCollector", "get_telemetry"]
