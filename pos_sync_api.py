"""
POS Sync API Endpoints

REST endpoints for connecting a tenant's POS account, running catalog syncs,
reading the sync log and working the manual conflict review queue.
"""

from flask import Blueprint, current_app, request, jsonify
from flask_jwt_extended import jwt_required, get_jwt_identity
from marshmallow import ValidationError as SchemaValidationError
import asyncio
import logging

from catalog_sync import SyncOptions, SyncRunGuard, create_catalog_sync
from catalog_transform import SYNC_FIELDS
from config import Config
from database import db_session_scope
from exceptions import AuthError, OAuthStateError, PosSyncError, SyncInProgressError
from oauth_client import PosOAuthClient
from repositories import (
    ConflictReviewRepository, InventoryRepository, MappingRepository, SyncLogRepository
)
from schemas import OAuthCallbackSchema, ReviewResolveSchema, SyncLogQuerySchema, SyncRequestSchema
from token_manager import TokenManager

logger = logging.getLogger(__name__)

pos_sync_bp = Blueprint('pos_sync', __name__, url_prefix='/api/pos')

# One run per tenant integration at a time, across requests of this process
sync_guard = SyncRunGuard()

sync_request_schema = SyncRequestSchema()
oauth_callback_schema = OAuthCallbackSchema()
review_resolve_schema = ReviewResolveSchema()
sync_log_query_schema = SyncLogQuerySchema()


def get_pos_config():
    """Config class the app was created with."""
    return current_app.config.get('POS_SYNC_CONFIG', Config)


def get_token_manager(session) -> TokenManager:
    return TokenManager.from_config(session, get_pos_config())


@pos_sync_bp.route('/tenants/<tenant_id>/status', methods=['GET'])
@jwt_required()
def get_status(tenant_id):
    """Connection status of the tenant's POS integration."""
    try:
        with db_session_scope() as session:
            status = get_token_manager(session).get_status(tenant_id)
            if status.get('connected'):
                status['sync_stats'] = SyncLogRepository(session).get_sync_stats(tenant_id)
                status['sync_in_progress'] = sync_guard.is_running(tenant_id, status['id'])
        return jsonify({'success': True, 'data': status})

    except Exception as e:
        logger.error(f"Failed to get POS status for tenant {tenant_id}: {e}")
        return jsonify({'success': False, 'error': 'Failed to get POS status'}), 500


@pos_sync_bp.route('/tenants/<tenant_id>/oauth/authorize-url', methods=['GET'])
@jwt_required()
def get_authorize_url(tenant_id):
    """Vendor authorization URL carrying a signed state for this tenant."""
    oauth_client = PosOAuthClient.from_config(get_pos_config())
    if not oauth_client.is_configured():
        return jsonify({'success': False, 'error': 'POS OAuth is not configured'}), 503

    return jsonify({
        'success': True,
        'data': {'authorization_url': oauth_client.build_authorization_url(tenant_id)}
    })


@pos_sync_bp.route('/tenants/<tenant_id>/oauth/callback', methods=['POST'])
@jwt_required()
def oauth_callback(tenant_id):
    """Exchange the authorization code and store the tenant's credentials."""
    try:
        data = oauth_callback_schema.load(request.get_json() or {})
    except SchemaValidationError as e:
        return jsonify({'success': False, 'error': 'Validation failed', 'details': e.messages}), 400

    try:
        with db_session_scope() as session:
            integration = asyncio.run(
                get_token_manager(session).exchange_code(data['code'], tenant_id, state=data['state'])
            )
            result = integration.to_dict()

        logger.info(f"POS account connected for tenant {tenant_id} by {get_jwt_identity()}")
        return jsonify({'success': True, 'data': result})

    except OAuthStateError as e:
        return jsonify({'success': False, 'error': e.message, 'code': e.error_code}), 400
    except AuthError as e:
        return jsonify({'success': False, 'error': e.message, 'code': e.error_code}), 401
    except PosSyncError as e:
        logger.error(f"OAuth code exchange failed for tenant {tenant_id}: {e}")
        return jsonify({'success': False, 'error': e.message, 'code': e.error_code}), 502


@pos_sync_bp.route('/tenants/<tenant_id>/disconnect', methods=['POST'])
@jwt_required()
def disconnect(tenant_id):
    """Revoke the tenant's POS credentials."""
    try:
        with db_session_scope() as session:
            asyncio.run(get_token_manager(session).revoke(tenant_id))
        return jsonify({'success': True, 'message': 'POS account disconnected'})

    except Exception as e:
        logger.error(f"Failed to disconnect POS for tenant {tenant_id}: {e}")
        return jsonify({'success': False, 'error': 'Failed to disconnect POS account'}), 500


@pos_sync_bp.route('/tenants/<tenant_id>/sync', methods=['POST'])
@jwt_required()
def run_sync(tenant_id):
    """Run a catalog sync and return its result."""
    try:
        data = sync_request_schema.load(request.get_json() or {})
    except SchemaValidationError as e:
        return jsonify({'success': False, 'error': 'Validation failed', 'details': e.messages}), 400

    options = SyncOptions.from_dict(data)

    with db_session_scope() as session:
        try:
            orchestrator = create_catalog_sync(tenant_id, session, config=get_pos_config())
        except AuthError as e:
            return jsonify({'success': False, 'error': e.message, 'code': e.error_code}), 404

        integration_id = orchestrator.integration.id
        try:
            with sync_guard.running(tenant_id, integration_id):
                logger.info(f"Sync requested for tenant {tenant_id} by {get_jwt_identity()}: {options.to_dict()}")
                result = asyncio.run(orchestrator.sync(options))
        except SyncInProgressError as e:
            return jsonify({'success': False, 'error': e.message, 'code': e.error_code}), 409

    status_code = 200 if result.success or result.dry_run else 207
    if result.requires_reauthorization:
        status_code = 401
    return jsonify({'success': result.success, 'data': result.to_dict()}), status_code


@pos_sync_bp.route('/tenants/<tenant_id>/sync-logs', methods=['GET'])
@jwt_required()
def get_sync_logs(tenant_id):
    """Recent sync log entries, optionally filtered by status."""
    try:
        query = sync_log_query_schema.load(request.args.to_dict())
    except SchemaValidationError as e:
        return jsonify({'success': False, 'error': 'Validation failed', 'details': e.messages}), 400

    with db_session_scope() as session:
        repo = SyncLogRepository(session)
        if query.get('status'):
            logs = repo.get_sync_logs_by_status(tenant_id, query['status'], limit=query['limit'])
        else:
            logs = repo.get_sync_logs_by_tenant(tenant_id, limit=query['limit'])
        result = [log.to_dict() for log in logs]

    return jsonify({'success': True, 'data': result, 'count': len(result)})


@pos_sync_bp.route('/tenants/<tenant_id>/reviews', methods=['GET'])
@jwt_required()
def get_reviews(tenant_id):
    """Pending manual conflict reviews."""
    with db_session_scope() as session:
        reviews = [review.to_dict() for review in ConflictReviewRepository(session).get_pending(tenant_id)]
    return jsonify({'success': True, 'data': reviews, 'count': len(reviews)})


@pos_sync_bp.route('/tenants/<tenant_id>/reviews/<int:review_id>/resolve', methods=['POST'])
@jwt_required()
def resolve_review(tenant_id, review_id):
    """Record an operator decision, optionally writing it to the local item."""
    try:
        data = review_resolve_schema.load(request.get_json() or {})
    except SchemaValidationError as e:
        return jsonify({'success': False, 'error': 'Validation failed', 'details': e.messages}), 400

    with db_session_scope() as session:
        reviews = ConflictReviewRepository(session)
        review = reviews.get(review_id)
        if review is None or review.tenant_id != tenant_id:
            return jsonify({'success': False, 'error': 'Review not found'}), 404

        local_item = None
        if data['apply']:
            if review.field_name not in SYNC_FIELDS:
                return jsonify({'success': False, 'error': f"Field '{review.field_name}' cannot be applied"}), 400
            mapping = MappingRepository(session).get_mapping(review.mapping_id)
            local_item = InventoryRepository(session).get(mapping.local_item_id) if mapping else None
            if local_item is None:
                return jsonify({'success': False, 'error': 'Mapped local item not found'}), 404

        review = reviews.resolve(review_id, data['value'], resolved_by=str(get_jwt_identity()))
        if review is None:
            return jsonify({'success': False, 'error': 'Review is no longer pending'}), 409

        applied = local_item is not None
        if applied:
            InventoryRepository(session).update(local_item.id, {review.field_name: data['value']})

        result = review.to_dict()

    logger.info(f"Review {review_id} for tenant {tenant_id} resolved (applied={applied})")
    return jsonify({'success': True, 'data': result, 'applied': applied})


@pos_sync_bp.route('/tenants/<tenant_id>/reviews', methods=['DELETE'])
@jwt_required()
def clear_reviews(tenant_id):
    """Dismiss every pending review for the tenant."""
    with db_session_scope() as session:
        dismissed = ConflictReviewRepository(session).dismiss_all(tenant_id, resolved_by=str(get_jwt_identity()))
    logger.info(f"Dismissed {dismissed} pending reviews for tenant {tenant_id}")
    return jsonify({'success': True, 'dismissed': dismissed})
