"""Shortcut adapter: stories owned by the current member."""

import asyncio
import logging
from typing import Dict, List, Optional, Set

import httpx

from shared.config import ShortcutSettings
from shared.models import TrackedStory, parse_datetime
from services.source_adapters.base import SourceAdapter, translate_errors

logger = logging.getLogger(__name__)

SHORTCUT_API_BASE = 'https://api.app.shortcut.com/api/v3'
ACTIVE_STATE_TYPES = ('unstarted', 'started')
MAX_STATES = 5
MAX_PROJECTS = 5


class ShortcutAdapter(SourceAdapter):
    """
    Collects the member's active stories from Shortcut's REST API v3.

    Shortcut exposes no notification API, so this source produces no
    StoryNotification records and its mark-read operations have no remote
    state to clear.
    """

    name = "shortcut"
    snapshot_kind = "story"
    notification_kind = "story_notification"

    def __init__(self, settings: ShortcutSettings, client: Optional[httpx.AsyncClient] = None):
        self.settings = settings
        self.member: Optional[dict] = None
        self.member_ids: Set[str] = set()
        super().__init__(client or httpx.AsyncClient(
            base_url=SHORTCUT_API_BASE,
            headers={
                'Shortcut-Token': settings.api_token,
                'Content-Type': 'application/json'
            },
            timeout=15.0
        ))

    async def _current_member(self) -> dict:
        if self.member is None:
            member = await self._get_json('/member')
            ids = {str(member['id'])}
            # Workspaces differ in which id they put into owner_ids
            if member.get('member_id'):
                ids.add(str(member['member_id']))
            if (member.get('workspace2') or {}).get('id'):
                ids.add(str(member['workspace2']['id']))
            self.member = member
            self.member_ids = ids
            logger.info(f"Shortcut member resolved: {member.get('name')}")
        return self.member

    @translate_errors("fetching stories")
    async def fetch_snapshot(self) -> List[TrackedStory]:
        await self._current_member()

        workflows = await self._get_json('/workflows') or []
        state_names = {}
        active_states = []
        for workflow in workflows:
            for state in workflow.get('states') or []:
                state_names[state['id']] = state.get('name')
                if state.get('type') in ACTIVE_STATE_TYPES:
                    active_states.append(state)

        stories = await self._stories_from_states(active_states[:MAX_STATES])
        if not stories:
            logger.info("No stories in active workflow states, falling back to projects")
            stories = await self._stories_from_projects()

        mine = [story for story in stories if self._is_owner(story)]
        if not mine:
            mine = [
                story for story in stories
                if story.get('requested_by_id') and str(story['requested_by_id']) in self.member_ids
            ]

        active = [
            story for story in mine
            if story.get('completed') is not True and story.get('archived') is not True
        ]
        logger.info(f"Fetched {len(stories)} Shortcut stories, {len(active)} active and owned by member")
        return [self._format_story(story, state_names) for story in active]

    async def _stories_from_states(self, states: List[dict]) -> List[dict]:
        batches = await asyncio.gather(*(
            self._get_json('/stories', params={
                'workflow_state_id': state['id'],
                'archived': 'false',
                'page_size': 50
            })
            for state in states
        ))
        return self._unique(batches)

    async def _stories_from_projects(self) -> List[dict]:
        projects = await self._get_json('/projects') or []
        batches = await asyncio.gather(*(
            self._get_json(f"/projects/{project['id']}/stories", params={'archived': 'false'})
            for project in projects[:MAX_PROJECTS]
        ))
        return self._unique(batches)

    @staticmethod
    def _unique(batches) -> List[dict]:
        seen = set()
        stories = []
        for batch in batches:
            for story in batch or []:
                if story['id'] in seen:
                    continue
                seen.add(story['id'])
                stories.append(story)
        return stories

    def _is_owner(self, story: dict) -> bool:
        return any(str(owner_id) in self.member_ids for owner_id in story.get('owner_ids') or [])

    @staticmethod
    def _format_story(story: dict, state_names: Dict) -> TrackedStory:
        return TrackedStory(
            story_id=int(story['id']),
            name=story['name'],
            description=story.get('description') or '',
            story_type=story.get('story_type'),
            state=story.get('workflow_state_name') or state_names.get(story.get('workflow_state_id')) or 'Unknown',
            workflow_state_id=story.get('workflow_state_id'),
            project_id=story.get('project_id'),
            epic_id=story.get('epic_id'),
            owner_ids=[str(owner_id) for owner_id in story.get('owner_ids') or []],
            requested_by_id=str(story['requested_by_id']) if story.get('requested_by_id') else None,
            estimate=story.get('estimate'),
            deadline=parse_datetime(story.get('deadline')),
            started_at=parse_datetime(story.get('started_at')),
            completed_at=parse_datetime(story.get('completed_at')),
            created_at=parse_datetime(story.get('created_at')),
            source_updated_at=parse_datetime(story.get('updated_at')),
            url=story.get('app_url') or f"https://app.shortcut.com/story/{story['id']}",
        )
