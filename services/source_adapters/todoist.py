"""Todoist adapter: active tasks and remote completion."""

import logging
from typing import List, Optional

import httpx

from shared.config import TodoistSettings
from shared.models import Task, parse_datetime
from services.source_adapters.base import SourceAdapter, translate_errors

logger = logging.getLogger(__name__)

TODOIST_API_BASE = 'https://api.todoist.com/rest/v2'


class TodoistAdapter(SourceAdapter):
    """Reads active tasks from the Todoist REST API v2."""

    name = "todoist"
    snapshot_kind = "task"
    supports_completion = True

    def __init__(self, settings: TodoistSettings, client: Optional[httpx.AsyncClient] = None):
        self.settings = settings
        super().__init__(client or httpx.AsyncClient(
            base_url=TODOIST_API_BASE,
            headers={
                'Authorization': f"Bearer {settings.api_token}",
                'Content-Type': 'application/json'
            },
            timeout=10.0
        ))

    @translate_errors("fetching tasks")
    async def fetch_snapshot(self) -> List[Task]:
        # The API only returns active tasks
        tasks = [self.format_task(task) for task in await self._get_json('/tasks')]
        if not tasks:
            logger.info("No Todoist tasks returned from API")
        else:
            logger.info(f"Fetched {len(tasks)} Todoist tasks")
        return tasks

    @staticmethod
    def format_task(task: dict) -> Task:
        due = task.get('due') or {}
        return Task(
            task_id=str(task['id']),
            content=task['content'],
            description=task.get('description') or '',
            project_id=task.get('project_id'),
            section_id=task.get('section_id'),
            parent_id=task.get('parent_id'),
            priority=task.get('priority') or 1,
            due_date=due.get('date'),
            due_datetime=parse_datetime(due.get('datetime')),
            due_string=due.get('string'),
            is_completed=task.get('is_completed'),
            labels=list(task.get('labels') or []),
            assignee_id=task.get('assignee_id'),
            creator_id=task.get('creator_id'),
            created_at=parse_datetime(task.get('created_at')),
            url=task.get('url') or f"https://todoist.com/app/task/{task['id']}",
        )

    @translate_errors("completing task")
    async def complete_task(self, task_id: str) -> bool:
        await self._request("POST", f"/tasks/{task_id}/close")
        logger.info(f"Completed Todoist task {task_id}")
        return True
