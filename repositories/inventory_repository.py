"""
Inventory Repository: the local catalog store read and written by sync runs.
"""

from typing import Any, Dict, List, Optional
from sqlalchemy.orm import Session
from datetime import datetime

from models import InventoryItem
from .base import BaseRepository

class InventoryRepository(BaseRepository):
    """Repository for InventoryItem model operations.

    Acts as the keyed read/write store the orchestrator depends on:
    ``get(id)``, ``create(record)``, ``update(id, record)`` and ``list_items(tenant)``.
    """

    def __init__(self, session: Session):
        super().__init__(InventoryItem, session)

    def create(self, record: Optional[Dict[str, Any]] = None, **kwargs) -> InventoryItem:
        values = dict(record or {}, **kwargs)
        values.setdefault('updated_at', datetime.utcnow())
        return super().create(**values)

    def update(self, id: str, record: Optional[Dict[str, Any]] = None, **kwargs) -> Optional[InventoryItem]:
        values = dict(record or {}, **kwargs)
        values.setdefault('updated_at', datetime.utcnow())
        return super().update(id, **values)

    def list_items(self, tenant_id: str) -> List[InventoryItem]:
        return self.filter({'tenant_id': tenant_id}, order_by=InventoryItem.created_at)
