# backend/posync/routes/system.py
"""
System health endpoint.

Checks the local store and reports the sync backlog. The remote API is not probed;
connectivity comes from the connectivity oracle.
"""

import time
from flask import Blueprint, current_app

from ..extensions import db
from ..models import AbandonedRecord, StagedRecord
from ..time_utils import to_utc_z, utcnow

system_bp = Blueprint("system", __name__, url_prefix="/api")


def check_database_health() -> dict:
    start_time = time.time()
    try:
        staged = db.session.query(StagedRecord).count()
        abandoned = db.session.query(AbandonedRecord).filter(AbandonedRecord.requeued_at.is_(None)).count()
        elapsed_ms = (time.time() - start_time) * 1000
        return {
            "status": "healthy" if not abandoned else "degraded",
            "latency_ms": round(elapsed_ms, 2),
            "details": {
                "staged_records": staged,
                "abandoned_records": abandoned,
            },
        }
    except Exception:
        elapsed_ms = (time.time() - start_time) * 1000
        current_app.logger.exception("Database health check failed")
        return {
            "status": "unhealthy",
            "latency_ms": round(elapsed_ms, 2),
            "error": "Database error",
        }


@system_bp.get("/health")
def health():
    """
    Returns:
    - 200: healthy, or degraded (abandoned records waiting for an operator)
    - 503: local store unreachable
    """
    database_health = check_database_health()
    scheduler = current_app.extensions.get("sync_scheduler")
    http_status = 503 if database_health["status"] == "unhealthy" else 200
    return {
        "status": database_health["status"],
        "timestamp": to_utc_z(utcnow()),
        "online": scheduler.connectivity.online if scheduler else None,
        "checks": {"database": database_health},
    }, http_status
