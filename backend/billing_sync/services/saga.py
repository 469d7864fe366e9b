"""
Persisted step runner for multi-step operations.

WHAT: Runs an ordered list of steps for an operation id, committing the
furthest completed step after each one.

WHY: A plan change writes to the provider and to the store, which share no
transaction. If a request dies halfway, the store must say how far it got so
that calling the operation again with the same ids continues from the next
step instead of replaying finished ones or leaving a silent partial state.

HOW:
1. Load (or create) the OperationProgress row for the operation id
2. Skip steps at or below furthest_step
3. After each step: furthest_step = index, commit
4. On failure: roll back the step's writes, record the error, commit, re-raise
5. After the last step: status = completed, result stored in context
"""

import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from billing_sync.dao.operation import OperationProgressDAO
from billing_sync.models.operation import OperationProgress, OperationStatus

logger = logging.getLogger(__name__)


@dataclass
class SagaStep:
    name: str
    action: Callable[[], Awaitable[Optional[Dict[str, Any]]]]


class SagaRunner:
    """Executes SagaSteps with persisted progress."""

    def __init__(self, session: AsyncSession):
        self.session = session
        self.dao = OperationProgressDAO(session)

    async def load(self, operation_id: str) -> Optional[OperationProgress]:
        return await self.dao.get_by_operation_id(operation_id)

    async def run(
        self,
        operation_id: str,
        kind: str,
        steps: List[SagaStep],
        user_id: Optional[int] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> OperationProgress:
        """
        Run the remaining steps of an operation.

        Steps may return a dict; it is merged into the stored context so
        later attempts (and the final result) can see what earlier steps did.

        Returns:
            The completed OperationProgress

        Raises:
            Whatever the failing step raised, after progress is recorded
        """
        progress = await self.dao.get_by_operation_id(operation_id)
        if progress is None:
            progress = await self.dao.create(
                operation_id=operation_id,
                kind=kind,
                user_id=user_id,
                furthest_step=0,
                total_steps=len(steps),
                status=OperationStatus.RUNNING,
                context=dict(context or {}),
            )
            await self.session.commit()
        elif progress.is_completed:
            logger.info(
                "Operation already completed, nothing to resume",
                extra={"operation_id": operation_id},
            )
            return progress
        else:
            logger.info(
                f"Resuming operation after step {progress.furthest_step}/{len(steps)}",
                extra={"operation_id": operation_id},
            )

        progress_id = progress.id
        stored_context = dict(progress.context or {})
        furthest = progress.furthest_step

        for index, step in enumerate(steps, start=1):
            if index <= furthest:
                continue
            try:
                produced = await step.action()
            except Exception as e:
                await self.session.rollback()
                await self.dao.update(
                    progress_id,
                    status=OperationStatus.FAILED,
                    last_error=f"{step.name}: {type(e).__name__}: {e}",
                )
                await self.session.commit()
                logger.error(
                    f"Operation step {index} ({step.name}) failed: {e}",
                    extra={"operation_id": operation_id},
                )
                raise

            if produced:
                stored_context.update(produced)
            await self.dao.update(
                progress_id,
                furthest_step=index,
                status=OperationStatus.RUNNING,
                context=dict(stored_context),
            )
            await self.session.commit()
            logger.info(
                f"Operation step {index}/{len(steps)} ({step.name}) completed",
                extra={"operation_id": operation_id},
            )

        progress = await self.dao.update(
            progress_id,
            status=OperationStatus.COMPLETED,
            last_error=None,
            context=dict(stored_context),
        )
        await self.session.commit()
        return progress
