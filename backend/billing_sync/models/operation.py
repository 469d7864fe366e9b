"""
Persisted progress of multi-step operations.

WHY: Plan changes touch the provider and the store without a shared
transaction. Recording the furthest completed step per operation id lets a
retry of the same operation continue where the previous attempt stopped
instead of repeating or skipping steps.
"""

import enum

from sqlalchemy import Column, Integer, String, Text, Enum, JSON

from billing_sync.models.base import Base, TimestampMixin, PrimaryKeyMixin


class OperationStatus(str, enum.Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class OperationProgress(Base, PrimaryKeyMixin, TimestampMixin):
    """Step progress for one operation id."""

    __tablename__ = "operation_progress"

    operation_id = Column(String(255), nullable=False, unique=True, index=True)
    kind = Column(String(50), nullable=False)
    user_id = Column(Integer, nullable=True, index=True)
    furthest_step = Column(Integer, nullable=False, default=0)
    total_steps = Column(Integer, nullable=False)
    status = Column(Enum(OperationStatus), nullable=False, default=OperationStatus.RUNNING)
    last_error = Column(Text, nullable=True)
    context = Column(JSON, nullable=False, default=dict)

    @property
    def is_completed(self) -> bool:
        return self.status == OperationStatus.COMPLETED
