"""
Base repository with common database operations.
"""
from typing import Any, Generic, Optional, Type, TypeVar

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from matkassen.models.base import Base

# Define generic types for models
ModelType = TypeVar("ModelType", bound=Base)


class BaseRepository(Generic[ModelType]):
    """
    Base repository with common read operations.

    Writes that race with other workers are expressed as conditional
    UPDATE statements in the concrete repositories.
    """

    def __init__(self, session: AsyncSession, model: Type[ModelType]):
        """
        Initialize repository with session and model.

        Args:
            session: Database session
            model: SQLAlchemy model class
        """
        self.session = session
        self.model = model

    async def get_by_id(self, id: str) -> Optional[ModelType]:
        """
        Get a record by ID.

        Always reloads from the database so rows changed by conditional
        updates in this session are not served stale.

        Args:
            id: Record ID

        Returns:
            ModelType: Found record or None
        """
        query = (
            select(self.model)
            .where(self.model.id == id)
            .execution_options(populate_existing=True)
        )
        result = await self.session.execute(query)
        return result.scalar_one_or_none()

    async def get_by_attribute(self, attr_name: str, attr_value: Any) -> Optional[ModelType]:
        """
        Get a record by a specific attribute.

        Args:
            attr_name: Attribute name
            attr_value: Attribute value

        Returns:
            ModelType: Found record or None
        """
        query = (
            select(self.model)
            .where(getattr(self.model, attr_name) == attr_value)
            .execution_options(populate_existing=True)
        )
        result = await self.session.execute(query)
        return result.scalar_one_or_none()
