"""API routes for backfill job orchestration."""

import logging
from functools import wraps

from flask import Blueprint, current_app, jsonify, request
from pydantic import ValidationError
from werkzeug.exceptions import HTTPException

from src.models.validators import ForceCancelRequest, ListJobsRequest
from src.services.exceptions import (
    BackfillError,
    ConflictError,
    InvalidStateError,
    NotFoundError,
    ValidationError as BackfillValidationError,
)

logger = logging.getLogger(__name__)

backfill_bp = Blueprint('backfill', __name__, url_prefix='/api/backfill')

# Query parameters that may repeat (?status=failed&status=cancelled)
LIST_PARAMS = ('status', 'job_type')


def get_backfill_service():
    """The BackfillService registered by the app factory."""
    return current_app.extensions['backfill_service']


def validate_request(model_class, source='args'):
    """Decorator to validate query parameters or JSON body using a Pydantic model."""
    def decorator(f):
        @wraps(f)
        def wrapped(*args, **kwargs):
            try:
                if source == 'json':
                    params = request.get_json(silent=True) or {}
                else:
                    params = {
                        key: request.args.getlist(key) if key in LIST_PARAMS else request.args.get(key)
                        for key in request.args.keys()
                    }
                request.validated_params = model_class(**params)
                return f(*args, **kwargs)
            except ValidationError as e:
                logger.warning(f"Validation error for {f.__name__}: {e}")
                return jsonify({
                    "success": False,
                    "error": "Invalid parameters",
                    "details": e.errors(include_url=False, include_context=False)
                }), 400
        return wrapped
    return decorator


def admin_key_required(f):
    """Require the X-Admin-Key header when ADMIN_API_KEY is configured."""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        admin_api_key = current_app.config.get('ADMIN_API_KEY')
        if admin_api_key and request.headers.get('X-Admin-Key') != admin_api_key:
            logger.warning(f"Rejected unauthenticated backfill request to {request.path}")
            return jsonify({"success": False, "error": "Admin key required"}), 401
        return f(*args, **kwargs)

    return decorated_function


def error_response(error: Exception):
    """Map engine exceptions to JSON error responses."""
    if isinstance(error, BackfillValidationError):
        status = 400
    elif isinstance(error, NotFoundError):
        status = 404
    elif isinstance(error, (ConflictError, InvalidStateError)):
        status = 409
    else:
        logger.error(f"Unexpected backfill API error: {error}", exc_info=True)
        return jsonify({"success": False, "error": "Internal server error"}), 500

    body = {"success": False, "error": error.message}
    if error.details:
        body["details"] = error.details
    return jsonify(body), status


@backfill_bp.route('/jobs', methods=['POST'])
@admin_key_required
def start_job():
    """
    Start a backfill job.

    JSON body:
        target_key: Scope the job operates on
        job_type: "data-collection" or "analytics-generation"
        config: Job-type specific config (e.g. start_date / end_date)
        rate_limit_overrides: Optional rate limit fields for this job only

    Returns:
        202 with the new job id, 409 if the target already has an active job
    """
    data = request.get_json(silent=True) or {}
    try:
        job_id = get_backfill_service().start_job(
            data.get('target_key'),
            data.get('job_type'),
            data.get('config'),
            rate_limit_overrides=data.get('rate_limit_overrides'),
        )
    except BackfillError as e:
        return error_response(e)

    return jsonify({"success": True, "job_id": job_id}), 202  # 202 Accepted - processing started


@backfill_bp.route('/jobs/preview', methods=['POST'])
@admin_key_required
def preview_job():
    """Describe the items a start request would process; persists nothing."""
    data = request.get_json(silent=True) or {}
    try:
        preview = get_backfill_service().preview_job(
            data.get('target_key'), data.get('job_type'), data.get('config')
        )
    except BackfillError as e:
        return error_response(e)

    return jsonify({"success": True, "preview": preview})


@backfill_bp.route('/jobs', methods=['GET'])
@admin_key_required
@validate_request(ListJobsRequest)
def list_jobs():
    """
    List jobs, newest first.

    Query params:
        status: Repeatable status filter
        job_type: Repeatable job type filter
        target_key: Exact target key
        limit: Page size (default: 20, max: 100)
        offset: Jobs to skip (default: 0)
    """
    params = request.validated_params
    try:
        page = get_backfill_service().list_jobs(
            status=params.status,
            job_type=params.job_type,
            target_key=params.target_key,
            limit=params.limit,
            offset=params.offset,
        )
    except BackfillError as e:
        return error_response(e)

    return jsonify({
        "success": True,
        "jobs": [job.to_dict() for job in page["jobs"]],
        "total": page["total"],
        "limit": params.limit,
        "offset": params.offset,
    })


@backfill_bp.route('/jobs/<job_id>', methods=['GET'])
@admin_key_required
def get_job(job_id):
    try:
        job = get_backfill_service().get_job(job_id)
    except BackfillError as e:
        return error_response(e)

    return jsonify({"success": True, "job": job.to_dict()})


@backfill_bp.route('/jobs/<job_id>/cancel', methods=['POST'])
@admin_key_required
def cancel_job(job_id):
    """Gracefully cancel a pending or running job."""
    try:
        get_backfill_service().cancel_job(job_id)
    except BackfillError as e:
        return error_response(e)

    return jsonify({"success": True, "job_id": job_id, "message": "Cancellation requested"})


@backfill_bp.route('/jobs/<job_id>/force-cancel', methods=['POST'])
@admin_key_required
@validate_request(ForceCancelRequest, source='json')
def force_cancel_job(job_id):
    """
    Force-cancel a job and delete its checkpoint. Irreversible.

    JSON body:
        confirm: Must be true
        reason: Optional operator note
    """
    params = request.validated_params
    try:
        job = get_backfill_service().force_cancel_job(job_id, reason=params.reason)
    except BackfillError as e:
        return error_response(e)

    logger.warning(f"Job {job_id} force-cancelled via API")
    return jsonify({"success": True, "job": job.to_dict()})


@backfill_bp.route('/recovery-status', methods=['GET'])
@admin_key_required
def recovery_status():
    return jsonify({"success": True, "recovery": get_backfill_service().get_recovery_status()})


@backfill_bp.route('/rate-limit', methods=['GET'])
@admin_key_required
def get_rate_limit():
    return jsonify({"success": True, "rate_limit": get_backfill_service().get_rate_limit_config().to_dict()})


@backfill_bp.route('/rate-limit', methods=['PUT'])
@admin_key_required
def update_rate_limit():
    """
    Update the global rate limit. Fields left out keep their current value.

    JSON body (any subset):
        max_items_per_minute: Cap on item starts per rolling minute (null: uncapped)
        min_delay_seconds: Minimum spacing between item starts
        max_delay_seconds: Upper bound of the retry backoff
        backoff_multiplier: Retry backoff growth factor
    """
    data = request.get_json(silent=True) or {}
    try:
        rate_limit = get_backfill_service().update_rate_limit_config(data)
    except BackfillError as e:
        return error_response(e)

    return jsonify({"success": True, "rate_limit": rate_limit.to_dict()})


@backfill_bp.errorhandler(Exception)
def handle_unexpected_error(error):
    """Uncaught errors (e.g. store failures) become JSON 500s."""
    if isinstance(error, HTTPException):
        return error
    return error_response(error)
