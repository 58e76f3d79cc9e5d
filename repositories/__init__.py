"""
Repository modules for database operations
"""

from .base import BaseRepository
from .conflict_review_repository import ConflictReviewRepository
from .integration_repository import IntegrationRepository
from .inventory_repository import InventoryRepository
from .mapping_repository import MappingRepository
from .sync_log_repository import SyncLogRepository

__all__ = [
    'BaseRepository',
    'ConflictReviewRepository',
    'IntegrationRepository',
    'InventoryRepository',
    'MappingRepository',
    'SyncLogRepository'
]
