"""User actions on notifications and tasks, committed remote-first."""

import logging
from typing import Callable, Dict

from shared.db_models import KindSpec, UPSERT, get_kind_spec
from shared.db_operations import RecordStore
from shared.errors import ActionError, ReconciliationError, SourceError
from services.source_adapters.base import SourceAdapter

logger = logging.getLogger(__name__)

TASK_KIND = "task"


class ReadStateService:
    """
    Dismisses notifications and completes tasks.

    Every action is confirmed by the remote source before the local record is
    removed. When anything fails the local store is left exactly as it was and
    ActionError is raised, so the record stays visible and the user can retry.
    """

    def __init__(self, store: RecordStore, adapters: Dict[str, SourceAdapter]):
        self.store = store
        self.adapters = adapters

    def _notification_spec(self, kind: str) -> KindSpec:
        try:
            spec = get_kind_spec(kind)
        except ValueError as e:
            raise ActionError(str(e), retryable=False) from e
        if spec.lifecycle != UPSERT or spec.state_field != "read":
            raise ActionError(f"{kind} is not a notification kind", retryable=False)
        return spec

    def _adapter_for(self, spec: KindSpec) -> SourceAdapter:
        adapter = self.adapters.get(spec.source)
        if adapter is None:
            raise ActionError(f"Source {spec.source} is not configured", retryable=False)
        return adapter

    async def _confirm_remote(self, description: str, call: Callable) -> None:
        try:
            confirmed = await call()
        except SourceError as e:
            logger.error(f"Remote {description} failed: {e}")
            raise ActionError(f"Failed to {description}: {e}") from e
        if not confirmed:
            logger.error(f"Remote {description} was not confirmed by the source")
            raise ActionError(f"Failed to {description}: source did not confirm")

    async def dismiss(self, kind: str, notification_id: str) -> bool:
        """
        Mark one notification read remotely, then remove it locally.

        Args:
            kind: Notification kind identifier
            notification_id: Key of the notification

        Returns:
            True once the notification is read remotely and removed locally

        Raises:
            ActionError: If the notification cannot be dismissed
        """
        spec = self._notification_spec(kind)
        adapter = self._adapter_for(spec)
        if self.store.get_record(kind, notification_id) is None:
            raise ActionError(f"{kind} {notification_id} not found", retryable=False)

        await self._confirm_remote(
            f"mark {kind} {notification_id} read",
            lambda: adapter.mark_read(notification_id)
        )

        try:
            self.store.delete_record(kind, notification_id)
        except ReconciliationError as e:
            raise ActionError(f"Notification read remotely but not removed locally: {e}") from e
        logger.info(f"Dismissed {kind} {notification_id}")
        return True

    async def dismiss_all(self, kind: str) -> int:
        """
        Mark every notification of a kind read remotely, then clear them locally.

        Returns:
            Number of local notifications removed

        Raises:
            ActionError: If the source does not confirm or the local clear fails
        """
        spec = self._notification_spec(kind)
        adapter = self._adapter_for(spec)

        await self._confirm_remote(f"mark all {kind} read", adapter.mark_all_read)

        try:
            removed = self.store.delete_all(kind)
        except ReconciliationError as e:
            raise ActionError(f"Notifications read remotely but not removed locally: {e}") from e
        logger.info(f"Dismissed all {removed} {kind} records")
        return removed

    async def complete_task(self, task_id: str) -> bool:
        """
        Complete a task remotely, then remove it locally.

        There is no way back: an uncompleted task only reappears through a
        later sync reporting new activity on it.

        Raises:
            ActionError: If the task cannot be completed
        """
        spec = get_kind_spec(TASK_KIND)
        adapter = self._adapter_for(spec)
        if not adapter.supports_completion:
            raise ActionError(f"{spec.source} does not support task completion", retryable=False)
        if self.store.get_record(TASK_KIND, task_id) is None:
            raise ActionError(f"Task {task_id} not found", retryable=False)

        await self._confirm_remote(f"complete task {task_id}", lambda: adapter.complete_task(task_id))

        try:
            self.store.delete_record(TASK_KIND, task_id)
        except ReconciliationError as e:
            raise ActionError(f"Task completed remotely but not removed locally: {e}") from e
        logger.info(f"Completed task {task_id}")
        return True
