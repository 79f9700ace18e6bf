from __future__ import annotations

import threading
from typing import Iterable, Optional

from fastapi import FastAPI, HTTPException
import uvicorn

from src.contracts.topics import ALL_TOPICS
from src.core.audit import AuditStore
from src.core.reporting import build_stats_report
from src.core.stats import StatsAggregator


def create_app(
    stats: StatsAggregator,
    audit_store: Optional[AuditStore] = None,
    *,
    topics: Iterable[str] = ALL_TOPICS,
    title: str = "Eventflow API",
) -> FastAPI:
    """Metrics read surface for one side of the pipeline."""
    app = FastAPI(title=title)
    topic_list = list(topics)

    @app.get("/health")
    def health() -> dict:
        return {"status": "ok", "service": stats.name}

    @app.get("/stats")
    def snapshot() -> dict:
        return stats.snapshot().to_dict()

    @app.get("/stats/report")
    def report() -> dict:
        if audit_store is None:
            raise HTTPException(status_code=404, detail="no audit store configured")
        return build_stats_report(stats, audit_store, topic_list)

    return app


def serve(app: FastAPI, *, host: str = "0.0.0.0", port: int = 8000, background: bool = False) -> Optional[threading.Thread]:
    if not background:
        uvicorn.run(app, host=host, port=port)
        return None
    t = threading.Thread(
        target=lambda: uvicorn.run(app, host=host, port=port),
        daemon=True,
        name="api-server",
    )
    t.start()
    return t
