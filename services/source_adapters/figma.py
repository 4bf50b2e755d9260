"""Figma adapter: comments that mention the current user."""

import asyncio
import logging
import re
from typing import List, Optional

import httpx

from shared.config import FigmaSettings
from shared.models import DesignMention, parse_datetime
from services.source_adapters.base import SourceAdapter, translate_errors

logger = logging.getLogger(__name__)

FIGMA_API_BASE = 'https://api.figma.com/v1'
MAX_FILES = 10
MAX_MESSAGE_LENGTH = 100

TAG_PATTERN = re.compile(r'<[^>]+>')


def extract_comment_text(message: Optional[str]) -> str:
    """
    Strip markup from a comment body and shorten it for display.

    Args:
        message: Raw comment message

    Returns:
        Plain text of at most 100 characters
    """
    if not message:
        return ''
    text = TAG_PATTERN.sub('', message)
    if len(text) > MAX_MESSAGE_LENGTH:
        text = text[:MAX_MESSAGE_LENGTH - 3] + '...'
    return text


class FigmaAdapter(SourceAdapter):
    """
    Turns Figma file comments into design mentions.

    Figma has no notification endpoint, so the adapter scans the comments of
    the configured files (or the user's recent files) for @mentions of the
    user and for replies to the user's own comments. There is no remote read
    state either; dismissals live only in the local store.
    """

    name = "figma"
    notification_kind = "design_mention"
    supports_notifications = True

    def __init__(self, settings: FigmaSettings, client: Optional[httpx.AsyncClient] = None):
        self.settings = settings
        self.user: Optional[dict] = None
        super().__init__(client or httpx.AsyncClient(
            base_url=FIGMA_API_BASE,
            headers={
                'X-Figma-Token': settings.api_token,
                'Content-Type': 'application/json'
            },
            timeout=10.0
        ))

    async def _current_user(self) -> dict:
        if self.user is None:
            self.user = await self._get_json('/me')
            logger.info(f"Figma user: {self.user.get('handle')}")
        return self.user

    async def _files(self) -> List[dict]:
        if self.settings.file_keys:
            return [{'key': key, 'name': ''} for key in self.settings.file_keys[:MAX_FILES]]
        data = await self._get_json('/me/files')
        return (data.get('files') or [])[:MAX_FILES]

    async def _file_comments(self, file_key: str) -> List[dict]:
        try:
            data = await self._get_json(f"/files/{file_key}/comments")
        except httpx.HTTPStatusError as e:
            if e.response.status_code in (403, 404):
                logger.warning(f"Skipping Figma file {file_key}: HTTP {e.response.status_code}")
                return []
            raise
        return data.get('comments') or []

    def mentions_user(self, message: Optional[str]) -> bool:
        if not message or not self.user:
            return False
        text = message.lower()
        handle = (self.user.get('handle') or '').lower()
        email = (self.user.get('email') or '').lower()
        if handle and f"@{handle}" in text:
            return True
        if email and f"@{email.split('@')[0]}" in text:
            return True
        return False

    @translate_errors("fetching comments")
    async def fetch_notifications(self) -> List[DesignMention]:
        user = await self._current_user()
        files = await self._files()
        logger.info(f"Scanning comments of {len(files)} Figma files")

        all_comments = await asyncio.gather(*(self._file_comments(f['key']) for f in files))

        mentions = []
        for file, comments in zip(files, all_comments):
            own_comment_ids = {
                c['id'] for c in comments if (c.get('user') or {}).get('id') == user.get('id')
            }
            for comment in comments:
                author = comment.get('user') or {}
                if author.get('id') == user.get('id'):
                    continue
                is_mention = self.mentions_user(comment.get('message'))
                is_reply = bool(comment.get('parent_id')) and comment['parent_id'] in own_comment_ids
                if not (is_mention or is_reply):
                    continue
                mentions.append(DesignMention(
                    notification_id=f"{file['key']}-{comment['id']}",
                    file_key=file['key'],
                    file_name=file.get('name') or '',
                    comment_id=str(comment['id']),
                    message=extract_comment_text(comment.get('message')),
                    author=author.get('handle') or 'Unknown',
                    author_img=author.get('img_url') or '',
                    is_mention=is_mention,
                    is_reply=is_reply,
                    url=f"https://www.figma.com/file/{file['key']}?comment-id={comment['id']}",
                    read=True if comment.get('resolved_at') else None,
                    source_updated_at=parse_datetime(comment.get('resolved_at') or comment.get('created_at')),
                ))

        mentions.sort(key=lambda m: m.source_updated_at.timestamp() if m.source_updated_at else 0, reverse=True)
        logger.info(f"Found {len(mentions)} Figma mentions")
        return mentions
