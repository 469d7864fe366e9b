"""
Base Data Access Object (DAO) class.

WHY: Orchestrators (plan change, teardown, reconciliation) read as a list of
steps over DAOs instead of raw SQL. The per-user helpers at the bottom are
what the teardown cascade is built from.
"""

from typing import Generic, TypeVar, Type, Optional, List, Any
from sqlalchemy import select, update, delete, func
from sqlalchemy.ext.asyncio import AsyncSession

from billing_sync.models.base import Base

# Type variable for model class
ModelType = TypeVar("ModelType", bound=Base)


class BaseDAO(Generic[ModelType]):
    """
    Base Data Access Object providing CRUD operations for all models.

    Type Parameters:
        ModelType: The SQLAlchemy model class this DAO manages
    """

    def __init__(self, model: Type[ModelType], session: AsyncSession):
        """
        Initialize DAO with model class and database session.

        Args:
            model: The SQLAlchemy model class
            session: Async database session
        """
        self.model = model
        self.session = session

    def _filtered(self, query, filters: dict):
        for field, value in filters.items():
            if hasattr(self.model, field):
                query = query.where(getattr(self.model, field) == value)
        return query

    async def create(self, **kwargs: Any) -> ModelType:
        """
        Create a new record.

        Args:
            **kwargs: Field values for the new record

        Returns:
            The created model instance with database-generated fields populated

        Raises:
            IntegrityError: If unique constraints are violated
        """
        instance = self.model(**kwargs)
        self.session.add(instance)
        await self.session.flush()  # Flush to get auto-generated fields
        await self.session.refresh(instance)
        return instance

    async def get_by_id(self, id: int) -> Optional[ModelType]:
        """
        Retrieve a single record by primary key.

        Args:
            id: Primary key value

        Returns:
            The model instance if found, None otherwise
        """
        result = await self.session.execute(select(self.model).where(self.model.id == id))
        return result.scalar_one_or_none()

    async def get_by_field(self, field_name: str, value: Any) -> Optional[ModelType]:
        """
        Retrieve a single record by any field.

        Raises:
            AttributeError: If field_name doesn't exist on the model
        """
        if not hasattr(self.model, field_name):
            raise AttributeError(f"{self.model.__name__} has no field '{field_name}'")

        result = await self.session.execute(
            select(self.model).where(getattr(self.model, field_name) == value)
        )
        return result.scalar_one_or_none()

    async def update(self, id: int, **kwargs: Any) -> Optional[ModelType]:
        """
        Update an existing record.

        Args:
            id: Primary key of the record to update
            **kwargs: Fields to update

        Returns:
            Updated model instance if found, None otherwise
        """
        result = await self.session.execute(
            update(self.model).where(self.model.id == id).values(**kwargs).returning(self.model)
        )
        instance = result.scalar_one_or_none()
        if instance:
            await self.session.refresh(instance)
        return instance

    async def delete(self, id: int) -> bool:
        """
        Delete a record by primary key.

        WHY: Deleting a row that is already gone is not an error. Teardown
        relies on this to stay safe when it is re-run.

        Returns:
            True if a record was deleted, False if not found
        """
        result = await self.session.execute(delete(self.model).where(self.model.id == id))
        return result.rowcount > 0

    async def count(self, **filters: Any) -> int:
        """Count records matching filters."""
        query = self._filtered(select(func.count()).select_from(self.model), filters)
        result = await self.session.execute(query)
        return int(result.scalar_one())

    async def get_by_user(self, user_id: int) -> List[ModelType]:
        """
        Retrieve every record owned by a user.

        Raises:
            AttributeError: If the model has no user_id field
        """
        if not hasattr(self.model, "user_id"):
            raise AttributeError(f"{self.model.__name__} is not owned by a user (no user_id field)")

        result = await self.session.execute(
            select(self.model).where(self.model.user_id == user_id).order_by(self.model.id)
        )
        return list(result.scalars().all())

    async def delete_by_user(self, user_id: int) -> int:
        """
        Delete every record owned by a user.

        Returns:
            Number of rows deleted (0 when nothing was left)
        """
        if not hasattr(self.model, "user_id"):
            raise AttributeError(f"{self.model.__name__} is not owned by a user (no user_id field)")

        result = await self.session.execute(
            delete(self.model).where(self.model.user_id == user_id)
        )
        return result.rowcount or 0
