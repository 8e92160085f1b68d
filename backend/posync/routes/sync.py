# Overview: Flask API routes for sync control; runs passes, feeds lifecycle events, exposes abandoned records.

from flask import Blueprint, current_app, request

from ..services import offline_service
from ..services.scheduler import get_scheduler
from ..validation import ConflictError, NotFoundError, ValidationError

sync_bp = Blueprint("sync", __name__, url_prefix="/api/sync")


def _flag(name: str) -> bool:
    return (request.args.get(name) or "").strip().lower() in {"1", "true", "yes"}


@sync_bp.get("/status")
def status():
    return get_scheduler().status()


@sync_bp.post("/run")
def run_all():
    """
    Run a pass over every entity in dependency order.

    Query params:
    - force: 1 to wait out an in-flight pass and run a fresh one
    """
    outcome = get_scheduler().sync_all(force=_flag("force"))
    return outcome.to_dict(), (200 if outcome.success else 503)


@sync_bp.post("/<entity>/run")
def run_entity(entity: str):
    try:
        outcome = get_scheduler().sync_entity(entity, force=_flag("force"))
    except ValidationError as e:
        return {"error": str(e)}, 400
    return outcome.to_dict(), (200 if outcome.success else 503)


@sync_bp.post("/connectivity")
def connectivity():
    """External connectivity probe reports {"online": bool}."""
    data = request.get_json(silent=True) or {}
    online = data.get("online")
    if not isinstance(online, bool):
        return {"error": "online must be a boolean"}, 400
    scheduler = get_scheduler()
    changed = scheduler.set_online(online)
    return {"online": scheduler.connectivity.online, "changed": changed}


@sync_bp.post("/focus")
def focus():
    return {"scheduled": get_scheduler().notify_focus()}


@sync_bp.get("/abandoned")
def list_abandoned():
    entity = request.args.get("entity")
    try:
        rows = offline_service.list_abandoned(entity, include_requeued=_flag("include_requeued"))
    except ValidationError as e:
        return {"error": str(e)}, 400
    return {"items": [r.to_dict() for r in rows], "count": len(rows)}


@sync_bp.post("/abandoned/<int:abandoned_id>/requeue")
def requeue_abandoned(abandoned_id: int):
    try:
        record = offline_service.requeue_abandoned(abandoned_id)
        return record.to_dict(), 201
    except NotFoundError as e:
        return {"error": str(e)}, 404
    except ConflictError as e:
        return {"error": str(e)}, 409
    except Exception:
        current_app.logger.exception("Failed to requeue abandoned record %s", abandoned_id)
        return {"error": "Internal server error"}, 500
