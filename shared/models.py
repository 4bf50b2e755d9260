"""Normalized record shapes produced by the source adapters."""

from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import List, Optional


def parse_datetime(value) -> Optional[datetime]:
    """
    Parse an ISO-8601 timestamp from a source payload into an aware UTC datetime.

    Naive values are assumed to be UTC. Empty values return None.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime(value.year, value.month, value.day)
    else:
        parsed = datetime.fromisoformat(str(value).replace('Z', '+00:00'))
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class CalendarEvent:
    """An event from one of the configured iCal feeds."""
    uid: str
    summary: str
    start_time: datetime
    end_time: Optional[datetime] = None
    description: str = ""
    location: str = ""
    calendar_type: str = "personal"  # personal, work


@dataclass
class TrackedStory:
    """A Shortcut story owned by the current member."""
    story_id: int
    name: str
    description: str = ""
    story_type: Optional[str] = None
    state: str = "Unknown"
    workflow_state_id: Optional[int] = None
    project_id: Optional[int] = None
    epic_id: Optional[int] = None
    owner_ids: List[str] = field(default_factory=list)
    requested_by_id: Optional[str] = None
    estimate: Optional[int] = None
    deadline: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    source_updated_at: Optional[datetime] = None
    url: str = ""


@dataclass
class StoryNotification:
    """Activity on a Shortcut story addressed to the current member."""
    notification_id: str
    type: Optional[str] = None
    story_id: Optional[int] = None
    actor_name: str = ""
    message: str = ""
    read: Optional[bool] = None
    source_updated_at: Optional[datetime] = None


@dataclass
class ReviewRequest:
    """An open pull request in one of the watched repositories."""
    pr_id: int
    number: int
    title: str
    repo_owner: str
    repo_name: str
    body: str = ""
    state: str = "open"
    author_login: str = "unknown"
    author_avatar: str = ""
    head_branch: str = ""
    base_branch: str = ""
    draft: bool = False
    merged: bool = False
    merged_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    source_updated_at: Optional[datetime] = None
    html_url: str = ""
    review_requested: bool = False
    has_approval: bool = False
    has_changes_requested: bool = False
    review_count: int = 0


@dataclass
class ReviewNotification:
    """A GitHub notification thread."""
    notification_id: str
    reason: str = ""
    read: Optional[bool] = None
    subject_title: str = ""
    subject_type: str = ""
    subject_url: str = ""
    repository_name: str = ""
    repository_owner: str = ""
    source_updated_at: Optional[datetime] = None
    last_read_at: Optional[datetime] = None


@dataclass
class Task:
    """A Todoist task."""
    task_id: str
    content: str
    description: str = ""
    project_id: Optional[str] = None
    section_id: Optional[str] = None
    parent_id: Optional[str] = None
    priority: int = 1
    due_date: Optional[str] = None  # YYYY-MM-DD
    due_datetime: Optional[datetime] = None
    due_string: Optional[str] = None
    is_completed: Optional[bool] = None
    labels: List[str] = field(default_factory=list)
    assignee_id: Optional[str] = None
    creator_id: Optional[str] = None
    created_at: Optional[datetime] = None
    source_updated_at: Optional[datetime] = None
    url: str = ""


@dataclass
class DesignMention:
    """A Figma comment that mentions the current user."""
    notification_id: str
    file_key: str
    file_name: str = ""
    comment_id: str = ""
    message: str = ""
    author: str = "Unknown"
    author_img: str = ""
    is_mention: bool = False
    is_reply: bool = False
    url: str = ""
    read: Optional[bool] = None
    source_updated_at: Optional[datetime] = None


@dataclass
class UpsertSummary:
    """Outcome of one upsert-merge commit."""
    inserted: int = 0
    updated: int = 0
    skipped: int = 0

    @property
    def total(self) -> int:
        return self.inserted + self.updated


@dataclass
class SyncRunResult:
    """Result of one sync run for one source."""
    source: str
    status: str  # completed, failed, skipped
    started_at: datetime
    finished_at: Optional[datetime] = None
    counts: dict = field(default_factory=dict)
    error: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.status == "completed"

    def to_dict(self) -> dict:
        return {
            "source": self.source,
            "status": self.status,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "counts": dict(self.counts),
            "error": self.error,
        }


@dataclass
class SourceStatus:
    """Transient run state of one source, for observability."""
    source: str
    state: str  # disabled, idle, running
    last_success_at: Optional[datetime] = None
    last_attempt_at: Optional[datetime] = None
    last_error: Optional[str] = None
    consecutive_failures: int = 0
    next_due_at: Optional[datetime] = None

    @property
    def in_flight(self) -> bool:
        return self.state == "running"

    @property
    def stale(self) -> bool:
        """True when the most recent attempt failed, so data dates from last_success_at."""
        return self.last_error is not None

    def to_dict(self) -> dict:
        return {
            "source": self.source,
            "state": self.state,
            "in_flight": self.in_flight,
            "stale": self.stale,
            "last_success_at": self.last_success_at.isoformat() if self.last_success_at else None,
            "last_attempt_at": self.last_attempt_at.isoformat() if self.last_attempt_at else None,
            "last_error": self.last_error,
            "consecutive_failures": self.consecutive_failures,
            "next_due_at": self.next_due_at.isoformat() if self.next_due_at else None,
        }
