# Overview: Flask API routes for the local write surface; stages offline mutations and serves merged views.

# backend/posync/routes/offline.py
"""
Offline staging routes.

The UI writes here whether or not the terminal is online. Every mutation is staged
locally first; the sync engine delivers it to the server later.

GET reads the reconciled view: authoritative records minus pending deletes, overlaid
with pending updates, plus pending adds (flagged "pending": true).
"""
from flask import Blueprint, current_app, request

from ..services import offline_service
from ..validation import ConflictError, NotFoundError, ValidationError

offline_bp = Blueprint("offline", __name__, url_prefix="/api/offline")


@offline_bp.get("/<entity>")
def merged_view(entity: str):
    try:
        items = offline_service.merged_view(entity)
    except ValidationError as e:
        return {"error": str(e)}, 400
    return {"items": items, "count": len(items)}


@offline_bp.post("/<entity>")
def stage_add(entity: str):
    """Stage a new record. Returns the staged add with its localId."""
    data = request.get_json(silent=True)
    try:
        record = offline_service.stage_add(entity, data)
        return record.to_dict(), 201
    except ValidationError as e:
        return {"error": str(e)}, 400
    except NotFoundError as e:
        return {"error": str(e)}, 404
    except Exception:
        current_app.logger.exception("Failed to stage %s add", entity)
        return {"error": "Internal server error"}, 500


@offline_bp.put("/<entity>/<record_id>")
def stage_update(entity: str, record_id: str):
    data = request.get_json(silent=True)
    try:
        record = offline_service.stage_update(entity, record_id, data)
        return record.to_dict()
    except ValidationError as e:
        return {"error": str(e)}, 400
    except NotFoundError as e:
        return {"error": str(e)}, 404
    except ConflictError as e:
        return {"error": str(e)}, 409
    except Exception:
        current_app.logger.exception("Failed to stage %s update", entity)
        return {"error": "Internal server error"}, 500


@offline_bp.delete("/<entity>/<record_id>")
def stage_delete(entity: str, record_id: str):
    try:
        return offline_service.stage_delete(entity, record_id)
    except ValidationError as e:
        return {"error": str(e)}, 400
    except NotFoundError as e:
        return {"error": str(e)}, 404
    except ConflictError as e:
        return {"error": str(e)}, 409
    except Exception:
        current_app.logger.exception("Failed to stage %s delete", entity)
        return {"error": "Internal server error"}, 500
