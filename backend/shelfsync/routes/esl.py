# Overview: Flask API routes for ESL triggers; webhook, cron jobs and sync queue operations.

"""
ESL trigger surface.

These endpoints only drive the engine; every decision lives in the
services. Cron and operator endpoints require the cron secret. The
webhook always answers 200 so the cloud never retry-loops on a payload
we cannot use.
"""

import time
from datetime import timedelta

from flask import Blueprint, current_app, jsonify, request

from ..decorators import require_cron_secret
from ..errors import SyncError
from ..extensions import db
from ..services import event_reconciler, maintenance_service, sync_queue_service
from ..services.esl_cloud import get_cloud_client
from shelfsync.time_utils import to_utc_z, utcnow


esl_bp = Blueprint("esl", __name__)


@esl_bp.errorhandler(SyncError)
def handle_sync_error(exc: SyncError):
    if exc.http_status >= 500:
        current_app.logger.warning("ESL request %s failed: %s", request.path, exc)
    return jsonify(exc.to_dict()), exc.http_status


def _client():
    return get_cloud_client(current_app)


@esl_bp.post("/api/esl/button-event")
def button_event():
    payload = request.get_json(silent=True)
    try:
        result = event_reconciler.handle_button_webhook(payload, client=_client())
    except Exception as exc:
        db.session.rollback()
        current_app.logger.exception("ESL webhook failed")
        result = {"status": "error", "message": str(exc)}
    return jsonify(result), 200


@esl_bp.get("/api/cron/esl-buttons")
@require_cron_secret
def cron_button_events():
    minutes = request.args.get("minutes", type=int)
    window = timedelta(minutes=minutes) if minutes and minutes > 0 else None

    started = time.time()
    results = event_reconciler.reconcile_all_tenants(client=_client(), window=window)
    return jsonify({
        "success": True,
        "ran_at": to_utc_z(utcnow()),
        "duration_ms": round((time.time() - started) * 1000, 2),
        "tenants": {str(owner_id): outcome for owner_id, outcome in results.items()},
    }), 200


@esl_bp.get("/api/cron/sync-queue")
@require_cron_secret
def cron_sync_queue():
    limit = request.args.get("limit", type=int)
    summary = sync_queue_service.dispatch(_client(), limit=limit)
    return jsonify({"success": True, **summary}), 200


@esl_bp.get("/api/esl/sync-status")
@require_cron_secret
def sync_status():
    owner_id = request.args.get("org_id", type=int)
    status = sync_queue_service.get_sync_queue_status(owner_id, client=_client())
    return jsonify(status), 200


@esl_bp.post("/api/esl/sync-status")
@require_cron_secret
def retry_failed_items():
    data = request.get_json(silent=True) or {}
    ids = data.get("ids")
    if ids is not None and (
        not isinstance(ids, list) or not all(isinstance(i, int) for i in ids)
    ):
        return jsonify({"error": "ids must be a list of integers"}), 400

    reset = sync_queue_service.retry_failed(ids, owner_id=data.get("org_id"))
    return jsonify({"success": True, "reset": reset}), 200


@esl_bp.delete("/api/esl/sync-status")
@require_cron_secret
def cleanup_sync_queue():
    retention_days = request.args.get(
        "retention_days",
        current_app.config.get("SYNC_QUEUE_RETENTION_DAYS", 30),
        type=int,
    )
    if retention_days < 1:
        return jsonify({"error": "retention_days must be at least 1"}), 400

    deleted = maintenance_service.cleanup_sync_queue(retention_days=retention_days)
    return jsonify({"success": True, "deleted": deleted, "retention_days": retention_days}), 200


@esl_bp.get("/api/esl/health")
def health():
    """Database reachability plus cached token state. Never calls the cloud."""
    start_time = time.time()
    try:
        queue = sync_queue_service.get_sync_queue_status()
        database = {
            "status": "healthy",
            "latency_ms": round((time.time() - start_time) * 1000, 2),
            "queue_counts": queue["counts"],
        }
    except Exception:
        db.session.rollback()
        current_app.logger.exception("ESL health check failed")
        database = {"status": "unhealthy", "error": "Database error"}

    token = _client().tokens.status() if database["status"] == "healthy" else None
    body = {
        "status": database["status"],
        "timestamp": to_utc_z(utcnow()),
        "database": database,
        "token": {
            "has_token": token["has_token"],
            "is_valid": token["is_valid"],
            "expires_at": to_utc_z(token["expires_at"]),
        } if token else None,
    }
    return jsonify(body), 200 if database["status"] == "healthy" else 503
