"""SQLAlchemy database models for the record store."""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, Optional, Type

from sqlalchemy import (
    Column, String, Integer, Boolean, Text, DateTime, Index, JSON, TypeDecorator
)
from sqlalchemy.orm import declarative_base

from shared.models import (
    CalendarEvent, TrackedStory, StoryNotification, ReviewRequest,
    ReviewNotification, Task, DesignMention,
)


class UTCDateTime(TypeDecorator):
    """Timezone-aware datetime stored as naive UTC.

    SQLite drops tzinfo on the way in, so values are normalized to UTC before
    binding and tagged with UTC again when loaded.
    """
    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return value
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc)
        return value.replace(tzinfo=None)

    def process_result_value(self, value, dialect):
        if value is None:
            return value
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


Base = declarative_base()


class CalendarEventRow(Base):
    """Model for calendar_events table."""
    __tablename__ = 'calendar_events'

    uid = Column(String(512), primary_key=True)
    summary = Column(Text, nullable=False)
    description = Column(Text, default="")
    start_time = Column(UTCDateTime(), nullable=False)
    end_time = Column(UTCDateTime(), nullable=True)
    location = Column(Text, default="")
    calendar_type = Column(String(20), nullable=False)
    last_synced_at = Column(UTCDateTime(), nullable=False)

    __table_args__ = (
        Index('idx_calendar_start', 'start_time'),
        Index('idx_calendar_type', 'calendar_type'),
    )


class StoryRow(Base):
    """Model for shortcut_stories table."""
    __tablename__ = 'shortcut_stories'

    story_id = Column(Integer, primary_key=True, autoincrement=False)
    name = Column(Text, nullable=False)
    description = Column(Text, default="")
    story_type = Column(String(50), nullable=True)
    state = Column(String(255), nullable=True)
    workflow_state_id = Column(Integer, nullable=True)
    project_id = Column(Integer, nullable=True)
    epic_id = Column(Integer, nullable=True)
    owner_ids = Column(JSON, default=list)
    requested_by_id = Column(String(255), nullable=True)
    estimate = Column(Integer, nullable=True)
    deadline = Column(UTCDateTime(), nullable=True)
    started_at = Column(UTCDateTime(), nullable=True)
    completed_at = Column(UTCDateTime(), nullable=True)
    created_at = Column(UTCDateTime(), nullable=True)
    source_updated_at = Column(UTCDateTime(), nullable=True)
    url = Column(Text, default="")
    last_synced_at = Column(UTCDateTime(), nullable=False)

    __table_args__ = (
        Index('idx_stories_state', 'state'),
        Index('idx_stories_deadline', 'deadline'),
    )


class StoryNotificationRow(Base):
    """Model for shortcut_notifications table."""
    __tablename__ = 'shortcut_notifications'

    notification_id = Column(String(255), primary_key=True)
    type = Column(String(100), nullable=True)
    story_id = Column(Integer, nullable=True)
    actor_name = Column(String(255), default="")
    message = Column(Text, default="")
    read = Column(Boolean, nullable=False, default=False)
    state_changed_at = Column(UTCDateTime(), nullable=False)
    source_updated_at = Column(UTCDateTime(), nullable=True)
    last_synced_at = Column(UTCDateTime(), nullable=False)

    __table_args__ = (
        Index('idx_notifications_read', 'read'),
        Index('idx_notifications_story', 'story_id'),
    )


class PullRequestRow(Base):
    """Model for github_prs table."""
    __tablename__ = 'github_prs'

    pr_id = Column(Integer, primary_key=True, autoincrement=False)
    number = Column(Integer, nullable=False)
    title = Column(Text, nullable=False)
    body = Column(Text, default="")
    state = Column(String(20), nullable=True)
    repo_owner = Column(String(255), nullable=False)
    repo_name = Column(String(255), nullable=False)
    author_login = Column(String(255), default="unknown")
    author_avatar = Column(Text, default="")
    head_branch = Column(String(255), default="")
    base_branch = Column(String(255), default="")
    draft = Column(Boolean, default=False)
    merged = Column(Boolean, default=False)
    merged_at = Column(UTCDateTime(), nullable=True)
    created_at = Column(UTCDateTime(), nullable=True)
    source_updated_at = Column(UTCDateTime(), nullable=True)
    html_url = Column(Text, default="")
    review_requested = Column(Boolean, default=False)
    has_approval = Column(Boolean, default=False)
    has_changes_requested = Column(Boolean, default=False)
    review_count = Column(Integer, default=0)
    last_synced_at = Column(UTCDateTime(), nullable=False)

    __table_args__ = (
        Index('idx_prs_state', 'state'),
        Index('idx_prs_review', 'review_requested'),
        Index('idx_prs_updated', 'source_updated_at'),
    )


class ReviewNotificationRow(Base):
    """Model for github_notifications table."""
    __tablename__ = 'github_notifications'

    notification_id = Column(String(255), primary_key=True)
    reason = Column(String(100), default="")
    read = Column(Boolean, nullable=False, default=False)
    state_changed_at = Column(UTCDateTime(), nullable=False)
    subject_title = Column(Text, default="")
    subject_type = Column(String(100), default="")
    subject_url = Column(Text, default="")
    repository_name = Column(String(255), default="")
    repository_owner = Column(String(255), default="")
    source_updated_at = Column(UTCDateTime(), nullable=True)
    last_read_at = Column(UTCDateTime(), nullable=True)
    last_synced_at = Column(UTCDateTime(), nullable=False)

    __table_args__ = (
        Index('idx_gh_notif_read', 'read'),
        Index('idx_gh_notif_updated', 'source_updated_at'),
    )


class TaskRow(Base):
    """Model for todoist_tasks table."""
    __tablename__ = 'todoist_tasks'

    task_id = Column(String(255), primary_key=True)
    content = Column(Text, nullable=False)
    description = Column(Text, default="")
    project_id = Column(String(255), nullable=True)
    section_id = Column(String(255), nullable=True)
    parent_id = Column(String(255), nullable=True)
    priority = Column(Integer, default=1)
    due_date = Column(String(10), nullable=True)
    due_datetime = Column(UTCDateTime(), nullable=True)
    due_string = Column(Text, nullable=True)
    is_completed = Column(Boolean, nullable=False, default=False)
    state_changed_at = Column(UTCDateTime(), nullable=False)
    labels = Column(JSON, default=list)
    assignee_id = Column(String(255), nullable=True)
    creator_id = Column(String(255), nullable=True)
    created_at = Column(UTCDateTime(), nullable=True)
    source_updated_at = Column(UTCDateTime(), nullable=True)
    url = Column(Text, default="")
    last_synced_at = Column(UTCDateTime(), nullable=False)

    __table_args__ = (
        Index('idx_todoist_completed', 'is_completed'),
        Index('idx_todoist_due', 'due_date'),
        Index('idx_todoist_priority', 'priority'),
    )


class DesignMentionRow(Base):
    """Model for figma_notifications table."""
    __tablename__ = 'figma_notifications'

    notification_id = Column(String(255), primary_key=True)
    file_key = Column(String(255), nullable=False)
    file_name = Column(Text, default="")
    comment_id = Column(String(255), default="")
    message = Column(Text, default="")
    author = Column(String(255), default="Unknown")
    author_img = Column(Text, default="")
    is_mention = Column(Boolean, default=False)
    is_reply = Column(Boolean, default=False)
    url = Column(Text, default="")
    read = Column(Boolean, nullable=False, default=False)
    state_changed_at = Column(UTCDateTime(), nullable=False)
    source_updated_at = Column(UTCDateTime(), nullable=True)
    last_synced_at = Column(UTCDateTime(), nullable=False)

    __table_args__ = (
        Index('idx_figma_read', 'read'),
        Index('idx_figma_created', 'source_updated_at'),
    )


class DismissedRecord(Base):
    """Model for dismissed_records table.

    Marks upsert-kind records removed by a user action so a later sync carrying
    stale remote state cannot bring them back.
    """
    __tablename__ = 'dismissed_records'

    kind = Column(String(50), primary_key=True)
    record_id = Column(String(255), primary_key=True)
    dismissed_at = Column(UTCDateTime(), nullable=False)

    __table_args__ = (
        Index('idx_dismissed_at', 'dismissed_at'),
    )


REPLACE = "replace"
UPSERT = "upsert"


@dataclass(frozen=True)
class KindSpec:
    """How one record kind is stored and reconciled."""
    kind: str
    source: str
    model: Type
    record_class: Type
    key: str
    lifecycle: str
    state_field: Optional[str] = None

    @property
    def key_column(self):
        return getattr(self.model, self.key)


RECORD_KINDS: Dict[str, KindSpec] = {
    spec.kind: spec for spec in (
        KindSpec('calendar_event', 'calendar', CalendarEventRow, CalendarEvent, 'uid', REPLACE),
        KindSpec('story', 'shortcut', StoryRow, TrackedStory, 'story_id', REPLACE),
        KindSpec('story_notification', 'shortcut', StoryNotificationRow, StoryNotification,
                 'notification_id', UPSERT, 'read'),
        KindSpec('pull_request', 'github', PullRequestRow, ReviewRequest, 'pr_id', REPLACE),
        KindSpec('review_notification', 'github', ReviewNotificationRow, ReviewNotification,
                 'notification_id', UPSERT, 'read'),
        KindSpec('task', 'todoist', TaskRow, Task, 'task_id', UPSERT, 'is_completed'),
        KindSpec('design_mention', 'figma', DesignMentionRow, DesignMention,
                 'notification_id', UPSERT, 'read'),
    )
}


def get_kind_spec(kind: str) -> KindSpec:
    """Look up a record kind, raising ValueError for unknown kinds."""
    try:
        return RECORD_KINDS[kind]
    except KeyError:
        raise ValueError(f"Unknown record kind: {kind}") from None


def row_to_dict(row) -> dict:
    """Serialize an ORM row into a JSON-friendly dict."""
    data = {}
    for column in row.__table__.columns:
        value = getattr(row, column.name)
        if isinstance(value, datetime):
            value = value.isoformat()
        data[column.name] = value
    return data
