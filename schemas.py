"""Schema definitions for request validation."""
from marshmallow import Schema, fields, validate

from models import SyncDirection, SyncLogStatus, SyncType


class SyncRequestSchema(Schema):
    """Schema for sync run requests."""
    direction = fields.String(load_default=SyncDirection.FROM_REMOTE.value,
                              validate=validate.OneOf([d.value for d in SyncDirection]))
    sync_type = fields.String(load_default=SyncType.CATALOG.value,
                              validate=validate.OneOf([t.value for t in SyncType]))
    batch_size = fields.Integer(allow_none=True, load_default=None, validate=validate.Range(min=1))
    dry_run = fields.Boolean(load_default=False)


class OAuthCallbackSchema(Schema):
    """Schema for the OAuth authorization callback."""
    code = fields.String(required=True, validate=validate.Length(min=1))
    state = fields.String(required=True, validate=validate.Length(min=1))


class ReviewResolveSchema(Schema):
    """Schema for resolving a queued conflict."""
    value = fields.Raw(required=True, allow_none=True)
    apply = fields.Boolean(load_default=False)


class SyncLogQuerySchema(Schema):
    """Schema for sync log listing query parameters."""
    status = fields.String(validate=validate.OneOf([s.value for s in SyncLogStatus]))
    limit = fields.Integer(load_default=50, validate=validate.Range(min=1, max=500))
