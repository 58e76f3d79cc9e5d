"""
Shared repository plumbing for the sync tables.

Repositories only flush. Whoever owns the unit of work (a sync run or a request
scope) calls ``commit()`` when its writes belong together.
"""

import functools
import logging
from typing import Any, Dict, List, Optional, Type, TypeVar

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Query, Session

from models import Base

logger = logging.getLogger(__name__)

T = TypeVar('T', bound=Base)


def logs_db_errors(action: str):
    """Log SQLAlchemy failures with the model name, then re-raise."""
    def decorator(method):
        @functools.wraps(method)
        def wrapper(self, *args, **kwargs):
            try:
                return method(self, *args, **kwargs)
            except SQLAlchemyError as e:
                logger.error(f"Error {action} {self.model.__name__}: {e}")
                raise
        return wrapper
    return decorator


class BaseRepository:
    """Lookups and writes for one model within a caller-owned session."""

    def __init__(self, model: Type[T], session: Session):
        self.model = model
        self.session = session

    def _query(self, filters: Dict[str, Any]) -> Query:
        query = self.session.query(self.model)
        for name, value in filters.items():
            column = getattr(self.model, name, None)
            if column is None:
                raise ValueError(f"{self.model.__name__} has no column '{name}'")
            if value is None:
                query = query.filter(column.is_(None))
            elif isinstance(value, (list, tuple, set)):
                query = query.filter(column.in_(list(value)))
            else:
                query = query.filter(column == value)
        return query

    @logs_db_errors("loading")
    def get(self, id: Any) -> Optional[T]:
        return self.session.get(self.model, id)

    @logs_db_errors("looking up")
    def get_by(self, **filters) -> Optional[T]:
        return self._query(filters).first()

    @logs_db_errors("listing")
    def filter(self, filters: Dict[str, Any], limit: Optional[int] = None,
               order_by: Optional[Any] = None) -> List[T]:
        """Exact-match filters; a list value matches with IN, None with IS NULL."""
        query = self._query(filters)
        if order_by is not None:
            query = query.order_by(order_by)
        if limit:
            query = query.limit(limit)
        return query.all()

    @logs_db_errors("creating")
    def create(self, **values) -> T:
        instance = self.model(**values)
        self.session.add(instance)
        self.session.flush()
        return instance

    @logs_db_errors("updating")
    def update(self, id: Any, **values) -> Optional[T]:
        instance = self.get(id)
        if instance is None:
            return None
        for name, value in values.items():
            if hasattr(instance, name):
                setattr(instance, name, value)
            else:
                logger.debug(f"Ignoring unknown {self.model.__name__} field '{name}'")
        self.session.flush()
        return instance

    @logs_db_errors("deleting")
    def delete(self, id: Any) -> bool:
        instance = self.get(id)
        if instance is None:
            return False
        self.session.delete(instance)
        self.session.flush()
        return True

    def commit(self) -> None:
        try:
            self.session.commit()
        except SQLAlchemyError as e:
            self.session.rollback()
            logger.error(f"Error committing {self.model.__name__} changes: {e}")
            raise
