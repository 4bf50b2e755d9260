"""Shared fixtures for sync service tests."""

import asyncio
from datetime import datetime, timedelta, timezone
from typing import List, Optional

import pytest

from shared.db_operations import RecordStore
from shared.models import ReviewNotification, ReviewRequest, Task
from services.source_adapters.base import SourceAdapter
from services.sync_service.alerts import AlertService
from services.sync_service.schedules import Cadence

T0 = datetime(2024, 3, 14, 9, 0, tzinfo=timezone.utc)


class FakeAdapter(SourceAdapter):
    """In-memory adapter whose results, failures and timing tests control."""

    def __init__(
        self,
        name: str,
        snapshot_kind: Optional[str] = None,
        notification_kind: Optional[str] = None,
        snapshot: Optional[List] = None,
        notifications: Optional[List] = None,
        supports_notifications: bool = False,
        supports_completion: bool = False
    ):
        super().__init__(client=None)
        self.name = name
        self.snapshot_kind = snapshot_kind
        self.notification_kind = notification_kind
        self.supports_notifications = supports_notifications
        self.supports_completion = supports_completion
        self.snapshot = list(snapshot or [])
        self.notifications = list(notifications or [])

        self.snapshot_error: Optional[Exception] = None
        self.gate: Optional[asyncio.Event] = None
        self.fetch_calls = 0
        self.active_fetches = 0
        self.max_active_fetches = 0

        self.action_result = True
        self.action_error: Optional[Exception] = None
        self.actions = []
        self.closed = False

    async def fetch_snapshot(self):
        self.fetch_calls += 1
        self.active_fetches += 1
        self.max_active_fetches = max(self.max_active_fetches, self.active_fetches)
        try:
            if self.gate is not None:
                await self.gate.wait()
            if self.snapshot_error is not None:
                raise self.snapshot_error
            return list(self.snapshot)
        finally:
            self.active_fetches -= 1

    async def fetch_notifications(self):
        return list(self.notifications)

    async def _action(self, *call):
        self.actions.append(call)
        if self.action_error is not None:
            raise self.action_error
        return self.action_result

    async def mark_read(self, notification_id: str) -> bool:
        return await self._action("mark_read", notification_id)

    async def mark_all_read(self) -> bool:
        return await self._action("mark_all_read")

    async def complete_task(self, task_id: str) -> bool:
        return await self._action("complete_task", task_id)

    async def aclose(self):
        self.closed = True


def make_pr(pr_id, title=None):
    return ReviewRequest(
        pr_id=pr_id, number=pr_id, title=title or f"PR {pr_id}",
        repo_owner="acme", repo_name="api", source_updated_at=T0,
    )


def make_notification(notification_id, read=None, updated_at=T0):
    return ReviewNotification(
        notification_id=notification_id, reason="review_requested",
        read=read, subject_title=f"Notification {notification_id}", source_updated_at=updated_at,
    )


def make_task(task_id, content=None, **kwargs):
    return Task(task_id=task_id, content=content or f"Task {task_id}", **kwargs)


async def wait_for(predicate, timeout: float = 2.0):
    """Yield to the event loop until ``predicate()`` holds."""
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("Condition not met in time")
        await asyncio.sleep(0.005)


@pytest.fixture
def store():
    """Create a test record store with in-memory SQLite."""
    db = RecordStore(database_url="sqlite:///:memory:")
    db.create_tables()
    yield db
    db.close()


@pytest.fixture
def alert_service():
    return AlertService(enabled=False)


@pytest.fixture
def hourly_cadences():
    cadence = Cadence(active_interval=timedelta(hours=1))
    return {name: cadence for name in ("calendar", "shortcut", "github", "todoist", "figma")}


@pytest.fixture
def github_adapter():
    return FakeAdapter(
        "github",
        snapshot_kind="pull_request",
        notification_kind="review_notification",
        snapshot=[make_pr(1), make_pr(2)],
        notifications=[make_notification("gh-123"), make_notification("gh-456")],
        supports_notifications=True,
    )


@pytest.fixture
def todoist_adapter():
    return FakeAdapter(
        "todoist",
        snapshot_kind="task",
        snapshot=[make_task("t1"), make_task("t2")],
        supports_completion=True,
    )
