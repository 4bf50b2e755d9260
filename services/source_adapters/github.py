"""GitHub adapter: open pull requests and notification threads."""

import asyncio
import logging
from typing import Dict, List, Optional

import httpx

from shared.config import GitHubSettings
from shared.errors import SourceError
from shared.models import ReviewNotification, ReviewRequest, parse_datetime
from services.source_adapters.base import SourceAdapter, translate_errors

logger = logging.getLogger(__name__)

GITHUB_API_BASE = 'https://api.github.com'


def latest_reviews(reviews: List[dict]) -> List[dict]:
    """Keep only the most recent review of each reviewer."""
    by_reviewer = {}
    for review in sorted(reviews, key=lambda r: r.get('submitted_at') or ''):
        user = review.get('user') or {}
        by_reviewer[user.get('login') or user.get('id')] = review
    return list(by_reviewer.values())


class GitHubAdapter(SourceAdapter):
    """Reads pull requests of the watched repositories and the user's notifications."""

    name = "github"
    snapshot_kind = "pull_request"
    notification_kind = "review_notification"
    supports_notifications = True

    def __init__(self, settings: GitHubSettings, client: Optional[httpx.AsyncClient] = None):
        self.settings = settings
        super().__init__(client or httpx.AsyncClient(
            base_url=GITHUB_API_BASE,
            headers={
                'Authorization': f"token {settings.personal_access_token}",
                'Accept': 'application/vnd.github.v3+json',
                'User-Agent': 'Mission-Control-Dashboard'
            },
            timeout=15.0
        ))

    @translate_errors("fetching pull requests")
    async def fetch_snapshot(self) -> List[ReviewRequest]:
        results = await asyncio.gather(
            *(self._repository_prs(repo) for repo in self.settings.repositories)
        )
        prs = [pr for repo_prs in results for pr in repo_prs]
        prs.sort(key=lambda pr: pr.source_updated_at.timestamp() if pr.source_updated_at else 0, reverse=True)
        logger.info(f"Fetched {len(prs)} open PRs from {len(results)} repositories")
        return prs

    async def _repository_prs(self, repo_full_name: str) -> List[ReviewRequest]:
        owner, _, repo = repo_full_name.partition('/')
        if not owner or not repo:
            raise SourceError(self.name, f"Invalid repository name: {repo_full_name}")

        pulls = await self._get_json(f"/repos/{owner}/{repo}/pulls", params={
            'state': 'open',
            'sort': 'updated',
            'direction': 'desc',
            'per_page': 50
        })
        reviews = await asyncio.gather(
            *(self._get_json(f"/repos/{owner}/{repo}/pulls/{pr['number']}/reviews") for pr in pulls)
        )
        return [self.format_pr(pr, pr_reviews, owner, repo) for pr, pr_reviews in zip(pulls, reviews)]

    @staticmethod
    def format_pr(pr: dict, reviews: List[dict], owner: str, repo: str) -> ReviewRequest:
        latest = latest_reviews(reviews or [])
        user = pr.get('user') or {}
        return ReviewRequest(
            pr_id=int(pr['id']),
            number=int(pr['number']),
            title=pr['title'],
            body=pr.get('body') or '',
            state=pr.get('state') or 'open',
            repo_owner=owner,
            repo_name=repo,
            author_login=user.get('login') or 'unknown',
            author_avatar=user.get('avatar_url') or '',
            head_branch=(pr.get('head') or {}).get('ref') or '',
            base_branch=(pr.get('base') or {}).get('ref') or '',
            draft=bool(pr.get('draft')),
            merged=bool(pr.get('merged')),
            merged_at=parse_datetime(pr.get('merged_at')),
            created_at=parse_datetime(pr.get('created_at')),
            source_updated_at=parse_datetime(pr.get('updated_at')),
            html_url=pr.get('html_url') or '',
            review_requested=bool(pr.get('requested_reviewers')),
            has_approval=any(r.get('state') == 'APPROVED' for r in latest),
            has_changes_requested=any(r.get('state') == 'CHANGES_REQUESTED' for r in latest),
            review_count=len(latest),
        )

    @translate_errors("fetching notifications")
    async def fetch_notifications(self) -> List[ReviewNotification]:
        threads = await self._get_json('/notifications', params={
            'all': 'false',
            'participating': 'false'
        })
        notifications = [self.format_notification(thread) for thread in threads]
        logger.info(f"Fetched {len(notifications)} GitHub notifications")
        return notifications

    @staticmethod
    def format_notification(thread: Dict) -> ReviewNotification:
        subject = thread.get('subject') or {}
        repository = thread.get('repository') or {}
        return ReviewNotification(
            notification_id=str(thread['id']),
            reason=thread.get('reason') or '',
            read=not thread['unread'] if 'unread' in thread else None,
            subject_title=subject.get('title') or '',
            subject_type=subject.get('type') or '',
            subject_url=subject.get('url') or '',
            repository_name=repository.get('name') or '',
            repository_owner=(repository.get('owner') or {}).get('login') or '',
            source_updated_at=parse_datetime(thread.get('updated_at')),
            last_read_at=parse_datetime(thread.get('last_read_at')),
        )

    @translate_errors("marking notification read")
    async def mark_read(self, notification_id: str) -> bool:
        await self._request("PATCH", f"/notifications/threads/{notification_id}")
        logger.info(f"Marked GitHub notification {notification_id} read")
        return True

    @translate_errors("marking all notifications read")
    async def mark_all_read(self) -> bool:
        # 205 when done, 202 when GitHub finishes the update asynchronously
        response = await self._request("PUT", "/notifications", json={'read': True})
        logger.info(f"Marked all GitHub notifications read (HTTP {response.status_code})")
        return response.status_code in (202, 205)
