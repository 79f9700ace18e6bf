"""Stats report combining the audit store (history) with the live aggregator."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Iterable, Optional

from .audit import AuditFilter, AuditStatus, AuditStore
from .stats import StatsAggregator, success_rate

logger = logging.getLogger(__name__)


def build_stats_report(
    stats: StatsAggregator,
    audit_store: AuditStore,
    topics: Iterable[str],
    *,
    now: Optional[datetime] = None,
) -> dict[str, Any]:
    now = now or datetime.now(timezone.utc)
    report: dict[str, Any] = {"service": stats.name, "timestamp": now.isoformat()}

    try:
        total = audit_store.count_by(AuditFilter())
        successful = audit_store.count_by(AuditFilter(status=AuditStatus.SUCCESS))
        failed = audit_store.count_by(AuditFilter(status=AuditStatus.FAILED))
        avg = audit_store.average_processing_time()
        last_hour = audit_store.count_by(AuditFilter(since=now - timedelta(hours=1)))

        report.update(
            {
                "total_messages": total,
                "successful_messages": successful,
                "failed_messages": failed,
                # Store-backed rate: share of SUCCESS rows among all attempts.
                "success_rate": round(successful * 100.0 / total, 2) if total else 0.0,
                "average_processing_time_ms": round(avg, 2) if avg is not None else 0.0,
                "messages_last_hour": last_hour,
                "topic_breakdown": {t: audit_store.count_by(AuditFilter(topic=t)) for t in topics},
            }
        )
    except Exception as e:
        logger.error(f"Error reading stats from audit store: {e}")
        report["error"] = f"Failed to retrieve statistics: {e}"

    report["runtime_stats"] = stats.snapshot().to_dict()
    return report


def restore_from_store(stats: StatsAggregator, audit_store: AuditStore) -> None:
    """Seed the aggregator from persisted history. A store outage only logs."""
    try:
        successful = audit_store.count_by(AuditFilter(status=AuditStatus.SUCCESS))
        failed = audit_store.count_by(AuditFilter(status=AuditStatus.FAILED))
        avg = audit_store.average_processing_time() or 0.0
    except Exception as e:
        logger.warning(f"Could not load initial stats from audit store: {e}")
        return
    stats.restore(processed=successful, errors=failed, total_latency_ms=avg * successful)
    logger.info(
        f"Loaded initial stats: {successful} messages, {failed} errors, "
        f"success rate {success_rate(successful, failed):.2f}%"
    )
