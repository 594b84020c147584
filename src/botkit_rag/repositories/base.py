"""Base repository class with common CRUD operations."""

import logging
from typing import Any, Generic, List, Optional, Type, TypeVar

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from botkit_rag.database.models import Base
from botkit_rag.utils.errors import DatabaseError

logger = logging.getLogger(__name__)

ModelType = TypeVar("ModelType", bound=Base)


class BaseRepository(Generic[ModelType]):
    """Base repository with common CRUD operations."""

    def __init__(self, model: Type[ModelType], session: Session):
        """
        Initialize repository.

        Args:
            model: SQLAlchemy model class
            session: Database session
        """
        self.model = model
        self.session = session

    def get_by_id(self, id: Any) -> Optional[ModelType]:
        """
        Get a record by ID.

        Args:
            id: Record ID

        Returns:
            Model instance or None if not found
        """
        try:
            return self.session.get(self.model, id)
        except SQLAlchemyError as e:
            logger.error(f"Error getting {self.model.__name__} by ID {id}: {e}")
            raise DatabaseError(f"Failed to retrieve {self.model.__name__}") from e

    def get_all(self, skip: int = 0, limit: int = 100, filters: Optional[dict] = None) -> List[ModelType]:
        """
        Get all records with optional pagination and filtering.

        Args:
            skip: Number of records to skip
            limit: Maximum number of records to return
            filters: Optional dictionary of filters (field: value)
        """
        try:
            query = select(self.model)
            if filters:
                for field, value in filters.items():
                    if hasattr(self.model, field):
                        query = query.where(getattr(self.model, field) == value)
            query = query.offset(skip).limit(limit)
            return list(self.session.execute(query).scalars().all())
        except SQLAlchemyError as e:
            logger.error(f"Error getting all {self.model.__name__}: {e}")
            raise DatabaseError(f"Failed to retrieve {self.model.__name__} records") from e

    def create(self, **kwargs) -> ModelType:
        """Create a new record and flush to obtain its ID."""
        try:
            instance = self.model(**kwargs)
            self.session.add(instance)
            self.session.flush()
            logger.debug(f"Created {self.model.__name__}")
            return instance
        except SQLAlchemyError as e:
            logger.error(f"Error creating {self.model.__name__}: {e}")
            self.session.rollback()
            raise DatabaseError(f"Failed to create {self.model.__name__}") from e

    def update(self, id: Any, **kwargs) -> Optional[ModelType]:
        """
        Update a record by ID.

        Returns:
            Updated model instance or None if not found
        """
        try:
            instance = self.get_by_id(id)
            if not instance:
                return None
            for field, value in kwargs.items():
                if hasattr(instance, field):
                    setattr(instance, field, value)
            self.session.flush()
            logger.debug(f"Updated {self.model.__name__} with ID: {id}")
            return instance
        except SQLAlchemyError as e:
            logger.error(f"Error updating {self.model.__name__} with ID {id}: {e}")
            self.session.rollback()
            raise DatabaseError(f"Failed to update {self.model.__name__}") from e

    def delete(self, id: Any) -> bool:
        """Delete a record by ID. Returns False if it did not exist."""
        try:
            instance = self.get_by_id(id)
            if not instance:
                return False
            self.session.delete(instance)
            self.session.flush()
            logger.debug(f"Deleted {self.model.__name__} with ID: {id}")
            return True
        except SQLAlchemyError as e:
            logger.error(f"Error deleting {self.model.__name__} with ID {id}: {e}")
            self.session.rollback()
            raise DatabaseError(f"Failed to delete {self.model.__name__}") from e

    def count(self, filters: Optional[dict] = None) -> int:
        """Count records with optional filtering."""
        try:
            query = select(func.count()).select_from(self.model)
            if filters:
                for field, value in filters.items():
                    if hasattr(self.model, field):
                        query = query.where(getattr(self.model, field) == value)
            return self.session.execute(query).scalar() or 0
        except SQLAlchemyError as e:
            logger.error(f"Error counting {self.model.__name__}: {e}")
            raise DatabaseError(f"Failed to count {self.model.__name__} records") from e

    def exists(self, id: Any) -> bool:
        """Check if a record exists by ID."""
        return self.get_by_id(id) is not None
