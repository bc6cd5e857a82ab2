"""
HTTP surface: link redemption, the cron trigger, and the narrow operator
interface for dead-lettered jobs.
"""
import time

from flask import current_app, jsonify, request

from linkbox.api import api_bp
from linkbox.auth.utils import cron_secret_required, ops_key_required
from linkbox.logging_config import get_logger
from linkbox.outbox.dispatcher import get_dispatcher
from linkbox.outbox.errors import JobNotFound, JobNotRequeueable
from linkbox.outbox.store import OutboxService
from linkbox.tokens.errors import TokenError
from linkbox.tokens.links import inspect_link, redeem, revoke_link
from linkbox.tokens.purposes import parse_purpose
from linkbox.datetime_utils import format_datetime_utc

logger = get_logger(__name__)


def _purpose_or_404(purpose):
    try:
        return parse_purpose(purpose)
    except ValueError:
        return None


@api_bp.route("/health", methods=["GET"])
def health():
    return jsonify({"status": "ok"}), 200


@api_bp.route("/links/<purpose>/<token>", methods=["GET", "POST"])
def redeem_link(purpose, token):
    """
    Verify a link token and return what it grants.

    GET only checks the link, so mail scanners and prefetchers cannot burn it.
    POST is the deliberate action and consumes single-use links.
    """
    token_purpose = _purpose_or_404(purpose)
    if token_purpose is None:
        return jsonify({'error': 'not_found', 'message': 'Unknown link type.'}), 404

    try:
        if request.method == "POST":
            payload = redeem(token, token_purpose, consumed_by=request.remote_addr)
        else:
            payload = inspect_link(token, token_purpose)
    except TokenError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception as e:
        logger.error("Error redeeming link", purpose=purpose, error=str(e), exc_info=True)
        return jsonify({'error': 'internal_error'}), 500

    data = payload.to_dict()
    data["issued_at"] = format_datetime_utc(payload.issued_at_dt)
    data["expires_at"] = format_datetime_utc(payload.expires_at_dt)
    return jsonify(data), 200


@api_bp.route("/links/<purpose>/<token>/revoke", methods=["POST"])
@ops_key_required
def revoke(purpose, token):
    token_purpose = _purpose_or_404(purpose)
    if token_purpose is None:
        return jsonify({'error': 'not_found'}), 404
    try:
        revoked = revoke_link(token, token_purpose)
    except ValueError as e:
        return jsonify({'error': str(e)}), 400
    if revoked is None:
        return jsonify({'error': 'Token does not verify'}), 400
    return jsonify({'revoked': revoked}), 200


@api_bp.route("/outbox/run", methods=["POST"])
@cron_secret_required
def run_outbox():
    """Drain the outbox until idle or the run budget is spent (cron entry point)."""
    start = time.monotonic()
    try:
        report = get_dispatcher().run_until_idle(
            budget_seconds=current_app.config.get("OUTBOX_RUN_BUDGET_SECONDS", 50),
            trigger="cron",
        )
    except Exception as e:
        logger.error("Outbox run failed", error=str(e), exc_info=True)
        return jsonify({'error': 'Outbox worker failed'}), 500

    body = {"success": True, "duration_ms": int((time.monotonic() - start) * 1000)}
    body.update(report.to_dict())
    return jsonify(body), 200


@api_bp.route("/outbox/dead-letters", methods=["GET"])
@ops_key_required
def dead_letters():
    limit = min(request.args.get("limit", default=50, type=int), 500)
    job_type = request.args.get("job_type")
    jobs = OutboxService.list_dead_letters(limit=limit, job_type=job_type)
    return jsonify({
        "jobs": [job.to_dict() for job in jobs],
        "total_count": len(jobs),
    }), 200


@api_bp.route("/outbox/jobs/<job_id>", methods=["GET"])
@ops_key_required
def get_job(job_id):
    job = OutboxService.get(job_id)
    if job is None:
        return jsonify({'error': 'Job not found'}), 404
    return jsonify(job.to_dict()), 200


@api_bp.route("/outbox/jobs/<job_id>/requeue", methods=["POST"])
@ops_key_required
def requeue_job(job_id):
    try:
        job = OutboxService.requeue(job_id)
    except JobNotFound:
        return jsonify({'error': 'Job not found'}), 404
    except JobNotRequeueable as e:
        return jsonify({'error': str(e)}), 409
    return jsonify(job.to_dict()), 200


@api_bp.route("/outbox/jobs/<job_id>/cancel", methods=["POST"])
@ops_key_required
def cancel_job(job_id):
    data = request.get_json(silent=True) or {}
    reason = data.get("reason") or "cancelled by operator"
    try:
        cancelled = OutboxService.cancel(job_id, reason=reason)
    except JobNotFound:
        return jsonify({'error': 'Job not found'}), 404
    if not cancelled:
        return jsonify({'error': 'Job already finished'}), 409
    return jsonify(OutboxService.get(job_id).to_dict()), 200


@api_bp.route("/outbox/stats", methods=["GET"])
@ops_key_required
def outbox_stats():
    return jsonify({"counts": OutboxService.counts_by_status()}), 200
