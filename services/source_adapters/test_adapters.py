"""Unit tests for the source adapters.

HTTP traffic is served by httpx.MockTransport handlers; backoff sleeps are
patched out so retried calls return immediately.
"""

import json
from datetime import datetime, timezone
from unittest.mock import AsyncMock, patch
from zoneinfo import ZoneInfo

import httpx
import pytest

from shared.config import (
    CalendarSettings, FigmaSettings, GitHubSettings, ShortcutSettings, TodoistSettings,
)
from shared.errors import SourceError
from services.source_adapters.calendar_feed import CalendarAdapter
from services.source_adapters.figma import FigmaAdapter, extract_comment_text
from services.source_adapters.github import GitHubAdapter, latest_reviews
from services.source_adapters.shortcut import ShortcutAdapter
from services.source_adapters.todoist import TodoistAdapter

LONDON = ZoneInfo("Europe/London")


@pytest.fixture
def no_backoff():
    """Skip the real waits of retries and rate limit handling."""
    with patch("services.source_adapters.backoff.asyncio.sleep", new_callable=AsyncMock) as sleep:
        yield sleep


def mock_client(handler, base_url=""):
    return httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url=base_url)


def ics(*events):
    lines = ["BEGIN:VCALENDAR", "VERSION:2.0", "PRODID:-//Test//EN"]
    for event in events:
        lines.append("BEGIN:VEVENT")
        lines.extend(event)
        lines.append("END:VEVENT")
    lines.append("END:VCALENDAR")
    return "\r\n".join(lines) + "\r\n"


# Calendar

class TestCalendarAdapter:

    def make_adapter(self, handler=None, **settings):
        settings = CalendarSettings(**settings)
        client = mock_client(handler or (lambda request: httpx.Response(404)))
        return CalendarAdapter(settings, client=client, tz=LONDON)

    def test_parse_feed_normalizes_times(self):
        adapter = self.make_adapter()
        feed = ics(
            ["UID:standup", "SUMMARY:Standup", "DTSTART:20240314T093000Z", "DTEND:20240314T094500Z",
             "LOCATION:Room 1"],
            ["UID:holiday", "SUMMARY:Holiday", "DTSTART;VALUE=DATE:20240704"],
        )

        events = adapter.parse_feed(feed, "work")

        by_uid = {event.uid: event for event in events}
        assert by_uid["standup"].start_time == datetime(2024, 3, 14, 9, 30, tzinfo=timezone.utc)
        assert by_uid["standup"].end_time == datetime(2024, 3, 14, 9, 45, tzinfo=timezone.utc)
        assert by_uid["standup"].location == "Room 1"
        assert by_uid["standup"].calendar_type == "work"
        # Local midnight during British Summer Time
        assert by_uid["holiday"].start_time == datetime(2024, 7, 3, 23, 0, tzinfo=timezone.utc)
        assert by_uid["holiday"].end_time is None

    def test_parse_feed_keys_recurrence_overrides_and_missing_uids(self):
        adapter = self.make_adapter()
        feed = ics(
            ["UID:weekly", "SUMMARY:1:1", "DTSTART:20240314T100000Z", "RRULE:FREQ=WEEKLY"],
            ["UID:weekly", "SUMMARY:1:1 moved", "DTSTART:20240321T140000Z",
             "RECURRENCE-ID:20240321T100000Z"],
            ["SUMMARY:Lunch", "DTSTART:20240314T120000Z"],
            ["UID:broken", "SUMMARY:No start"],
        )

        uids = [event.uid for event in adapter.parse_feed(feed, "personal")]

        assert uids == [
            "weekly",
            "weekly:2024-03-21T10:00:00+00:00",
            "Lunch-2024-03-14T12:00:00+00:00",
        ]

    @pytest.mark.asyncio
    async def test_fetch_snapshot_merges_feeds_in_start_order(self):
        feeds = {
            "/personal.ics": ics(["UID:p1", "SUMMARY:Gym", "DTSTART:20240314T180000Z"]),
            "/work.ics": ics(["UID:w1", "SUMMARY:Planning", "DTSTART:20240314T090000Z"]),
        }

        def handler(request):
            return httpx.Response(200, text=feeds[request.url.path])

        adapter = self.make_adapter(
            handler,
            personalIcalUrl="https://cal.example.com/personal.ics",
            workIcalUrl="https://cal.example.com/work.ics",
        )

        events = await adapter.fetch_snapshot()

        assert [(event.uid, event.calendar_type) for event in events] == [
            ("w1", "work"), ("p1", "personal")
        ]

    @pytest.mark.asyncio
    async def test_fetch_snapshot_fails_when_a_feed_fails(self):
        def handler(request):
            if request.url.path == "/work.ics":
                return httpx.Response(500)
            return httpx.Response(200, text=ics())

        adapter = self.make_adapter(
            handler,
            personalIcalUrl="https://cal.example.com/personal.ics",
            workIcalUrl="https://cal.example.com/work.ics",
        )

        with pytest.raises(SourceError) as exc_info:
            await adapter.fetch_snapshot()
        assert exc_info.value.source == "calendar"
        assert exc_info.value.status_code == 500


# Shortcut

class TestShortcutAdapter:

    def make_adapter(self, routes):
        def handler(request):
            key = request.url.path
            if key == "/api/v3/stories":
                key += f"?{request.url.params['workflow_state_id']}"
            return httpx.Response(200, json=routes[key])

        client = mock_client(handler, base_url="https://api.app.shortcut.com/api/v3")
        return ShortcutAdapter(ShortcutSettings(apiToken="sc-token"), client=client)

    @pytest.mark.asyncio
    async def test_fetch_snapshot_keeps_active_stories_owned_by_member(self):
        story = {
            "id": 11, "name": "Fix login", "owner_ids": ["m1"], "workflow_state_id": 500,
            "updated_at": "2024-03-14T09:00:00Z", "app_url": "https://app.shortcut.com/acme/story/11",
        }
        routes = {
            "/api/v3/member": {"id": "m1", "name": "Ada"},
            "/api/v3/workflows": [{"states": [
                {"id": 500, "name": "In Progress", "type": "started"},
                {"id": 501, "name": "Ready", "type": "unstarted"},
                {"id": 502, "name": "Done", "type": "done"},
            ]}],
            "/api/v3/stories?500": [
                story,
                {"id": 12, "name": "Someone else's", "owner_ids": ["m2"], "workflow_state_id": 500},
                {"id": 13, "name": "Finished", "owner_ids": ["m1"], "completed": True},
            ],
            "/api/v3/stories?501": [story],
        }
        adapter = self.make_adapter(routes)

        stories = await adapter.fetch_snapshot()

        assert [s.story_id for s in stories] == [11]
        assert stories[0].state == "In Progress"
        assert stories[0].owner_ids == ["m1"]
        assert stories[0].source_updated_at == datetime(2024, 3, 14, 9, 0, tzinfo=timezone.utc)
        assert adapter.member_ids == {"m1"}

    @pytest.mark.asyncio
    async def test_fetch_snapshot_falls_back_to_project_stories(self):
        routes = {
            "/api/v3/member": {"id": "m1", "name": "Ada"},
            "/api/v3/workflows": [{"states": [{"id": 502, "name": "Done", "type": "done"}]}],
            "/api/v3/projects": [{"id": 7}],
            "/api/v3/projects/7/stories": [
                {"id": 21, "name": "Requested", "owner_ids": [], "requested_by_id": "m1"},
            ],
        }
        adapter = self.make_adapter(routes)

        stories = await adapter.fetch_snapshot()

        assert [s.story_id for s in stories] == [21]
        assert stories[0].url == "https://app.shortcut.com/story/21"

    @pytest.mark.asyncio
    async def test_has_no_remote_notifications(self):
        adapter = self.make_adapter({})

        assert adapter.supports_notifications is False
        assert await adapter.fetch_notifications() == []
        assert await adapter.mark_read("anything") is True


# GitHub

class TestGitHubAdapter:

    def make_adapter(self, handler, repos=("acme/api",)):
        settings = GitHubSettings(personalAccessToken="ghp_token", repos=list(repos))
        return GitHubAdapter(settings, client=mock_client(handler, base_url="https://api.github.com"))

    def test_latest_review_per_reviewer_wins(self):
        reviews = [
            {"user": {"login": "alice"}, "state": "APPROVED", "submitted_at": "2024-03-14T10:00:00Z"},
            {"user": {"login": "alice"}, "state": "CHANGES_REQUESTED", "submitted_at": "2024-03-14T09:00:00Z"},
            {"user": {"login": "bob"}, "state": "COMMENTED", "submitted_at": "2024-03-14T09:30:00Z"},
        ]

        latest = {review["user"]["login"]: review["state"] for review in latest_reviews(reviews)}

        assert latest == {"alice": "APPROVED", "bob": "COMMENTED"}

    @pytest.mark.asyncio
    async def test_fetch_snapshot_builds_review_state(self):
        pulls = [
            {"id": 1001, "number": 1, "title": "Add API", "state": "open", "user": {"login": "carol"},
             "head": {"ref": "feature"}, "base": {"ref": "main"}, "requested_reviewers": [{"login": "ada"}],
             "updated_at": "2024-03-14T09:00:00Z", "html_url": "https://github.com/acme/api/pull/1"},
            {"id": 1002, "number": 2, "title": "Fix bug", "state": "open", "draft": True,
             "updated_at": "2024-03-14T11:00:00Z"},
        ]
        reviews = {
            1: [
                {"user": {"login": "alice"}, "state": "CHANGES_REQUESTED", "submitted_at": "2024-03-14T09:00:00Z"},
                {"user": {"login": "alice"}, "state": "APPROVED", "submitted_at": "2024-03-14T10:00:00Z"},
            ],
            2: [],
        }
        seen = []

        def handler(request):
            seen.append(request)
            if request.url.path == "/repos/acme/api/pulls":
                return httpx.Response(200, json=pulls)
            number = int(request.url.path.split("/")[-2])
            return httpx.Response(200, json=reviews[number])

        prs = await self.make_adapter(handler).fetch_snapshot()

        assert [pr.number for pr in prs] == [2, 1]
        first = prs[1]
        assert first.has_approval is True
        assert first.has_changes_requested is False
        assert first.review_count == 1
        assert first.review_requested is True
        assert first.head_branch == "feature"
        assert prs[0].draft is True
        assert seen[0].url.params["state"] == "open"

    @pytest.mark.asyncio
    async def test_invalid_repository_name_is_a_source_error(self):
        adapter = self.make_adapter(lambda request: httpx.Response(200, json=[]), repos=("not-a-repo",))

        with pytest.raises(SourceError, match="Invalid repository name"):
            await adapter.fetch_snapshot()

    @pytest.mark.asyncio
    async def test_unauthorized_is_a_source_error(self):
        adapter = self.make_adapter(lambda request: httpx.Response(401, json={"message": "Bad credentials"}))

        with pytest.raises(SourceError) as exc_info:
            await adapter.fetch_notifications()
        assert exc_info.value.status_code == 401
        assert "authentication failed" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_fetch_notifications(self):
        threads = [{
            "id": "123", "unread": True, "reason": "review_requested",
            "updated_at": "2024-03-14T09:00:00Z",
            "subject": {"title": "Add API", "type": "PullRequest", "url": "https://api.github.com/x"},
            "repository": {"name": "api", "owner": {"login": "acme"}},
        }]
        adapter = self.make_adapter(lambda request: httpx.Response(200, json=threads))

        notifications = await adapter.fetch_notifications()

        assert len(notifications) == 1
        assert notifications[0].notification_id == "123"
        assert notifications[0].read is False
        assert notifications[0].repository_owner == "acme"

    @pytest.mark.asyncio
    async def test_mark_read_patches_thread(self):
        requests = []

        def handler(request):
            requests.append(request)
            return httpx.Response(205)

        assert await self.make_adapter(handler).mark_read("123") is True
        assert requests[0].method == "PATCH"
        assert requests[0].url.path == "/notifications/threads/123"

    @pytest.mark.asyncio
    async def test_mark_all_read_accepts_asynchronous_completion(self):
        requests = []

        def handler(request):
            requests.append(request)
            return httpx.Response(202, json={"message": "Unread notifications couldn't be marked in a single request."})

        assert await self.make_adapter(handler).mark_all_read() is True
        assert requests[0].method == "PUT"
        assert json.loads(requests[0].content) == {"read": True}

    @pytest.mark.asyncio
    async def test_mark_read_failure_is_a_source_error(self):
        adapter = self.make_adapter(lambda request: httpx.Response(403))

        with pytest.raises(SourceError):
            await adapter.mark_read("123")

    @pytest.mark.asyncio
    async def test_closed_adapter_raises_source_error(self):
        adapter = self.make_adapter(lambda request: httpx.Response(205))
        await adapter.aclose()

        with pytest.raises(SourceError, match="shut down"):
            await adapter.mark_read("1")


# Todoist

class TestTodoistAdapter:

    def make_adapter(self, handler):
        client = mock_client(handler, base_url="https://api.todoist.com/rest/v2")
        return TodoistAdapter(TodoistSettings(apiToken="td-token"), client=client)

    @pytest.mark.asyncio
    async def test_fetch_snapshot_maps_due_dates(self):
        tasks = [{
            "id": "t1", "content": "Write report", "priority": 4, "labels": ["work"],
            "is_completed": False, "created_at": "2024-03-01T08:00:00Z",
            "due": {"date": "2024-03-14", "string": "today", "datetime": "2024-03-14T15:00:00Z"},
        }]
        adapter = self.make_adapter(lambda request: httpx.Response(200, json=tasks))

        result = await adapter.fetch_snapshot()

        task = result[0]
        assert task.task_id == "t1"
        assert task.due_date == "2024-03-14"
        assert task.due_datetime == datetime(2024, 3, 14, 15, 0, tzinfo=timezone.utc)
        assert task.priority == 4
        assert task.labels == ["work"]
        assert task.is_completed is False
        assert task.url == "https://todoist.com/app/task/t1"

    @pytest.mark.asyncio
    async def test_fetch_snapshot_malformed_payload_is_a_source_error(self):
        adapter = self.make_adapter(lambda request: httpx.Response(200, json=[{"content": "no id"}]))

        with pytest.raises(SourceError, match="unexpected payload"):
            await adapter.fetch_snapshot()

    @pytest.mark.asyncio
    async def test_timeout_is_retried_then_a_source_error(self, no_backoff):
        calls = []

        def handler(request):
            calls.append(request)
            raise httpx.ReadTimeout("timed out", request=request)

        with pytest.raises(SourceError) as exc_info:
            await self.make_adapter(handler).fetch_snapshot()

        assert exc_info.value.source == "todoist"
        assert len(calls) == 4
        assert no_backoff.await_count == 3

    @pytest.mark.asyncio
    async def test_rate_limit_waits_for_retry_after(self, no_backoff):
        responses = [
            httpx.Response(429, headers={"Retry-After": "2"}),
            httpx.Response(200, json=[]),
        ]
        adapter = self.make_adapter(lambda request: responses.pop(0))

        assert await adapter.fetch_snapshot() == []
        no_backoff.assert_awaited_once_with(2.0)

    @pytest.mark.asyncio
    async def test_complete_task_closes_remotely(self):
        requests = []

        def handler(request):
            requests.append(request)
            return httpx.Response(204)

        assert await self.make_adapter(handler).complete_task("t1") is True
        assert requests[0].method == "POST"
        assert requests[0].url.path == "/rest/v2/tasks/t1/close"


# Figma

class TestFigmaAdapter:

    def make_adapter(self, handler, file_keys=("f1", "f2")):
        settings = FigmaSettings(apiToken="figd_token", fileKeys=list(file_keys))
        return FigmaAdapter(settings, client=mock_client(handler, base_url="https://api.figma.com/v1"))

    def test_extract_comment_text_strips_markup_and_truncates(self):
        assert extract_comment_text("Hey <b>@ada</b> look") == "Hey @ada look"
        assert extract_comment_text(None) == ""

        long_text = extract_comment_text("x" * 150)
        assert len(long_text) == 100
        assert long_text.endswith("...")

    @pytest.mark.asyncio
    async def test_fetch_notifications_finds_mentions_and_replies(self):
        me = {"id": "u1", "handle": "Ada", "email": "ada.l@example.com"}
        comments = [
            {"id": "c1", "message": "My note", "user": me, "created_at": "2024-03-14T08:00:00Z"},
            {"id": "c2", "parent_id": "c1", "message": "Agreed", "user": {"id": "u2", "handle": "bob"},
             "created_at": "2024-03-14T09:00:00Z"},
            {"id": "c3", "message": "Hey <b>@ada</b> look", "user": {"id": "u3", "handle": "cy"},
             "created_at": "2024-03-14T10:00:00Z"},
            {"id": "c4", "message": "Unrelated", "user": {"id": "u2", "handle": "bob"},
             "created_at": "2024-03-14T11:00:00Z"},
            {"id": "c5", "message": "cc @ada.l", "user": {"id": "u2", "handle": "bob"},
             "created_at": "2024-03-14T07:00:00Z", "resolved_at": "2024-03-14T07:30:00Z"},
        ]

        def handler(request):
            if request.url.path == "/v1/me":
                return httpx.Response(200, json=me)
            if request.url.path == "/v1/files/f1/comments":
                return httpx.Response(200, json={"comments": comments})
            return httpx.Response(404)

        mentions = await self.make_adapter(handler).fetch_notifications()

        assert [m.comment_id for m in mentions] == ["c3", "c2", "c5"]
        mention, reply, resolved = mentions
        assert mention.is_mention and not mention.is_reply
        assert mention.message == "Hey @ada look"
        assert mention.notification_id == "f1-c3"
        assert mention.url == "https://www.figma.com/file/f1?comment-id=c3"
        assert mention.read is None
        assert reply.is_reply and not reply.is_mention
        assert reply.author == "bob"
        assert resolved.read is True

    @pytest.mark.asyncio
    async def test_uses_recent_files_without_configured_keys(self):
        requested = []

        def handler(request):
            requested.append(request.url.path)
            if request.url.path == "/v1/me":
                return httpx.Response(200, json={"id": "u1", "handle": "ada"})
            if request.url.path == "/v1/me/files":
                return httpx.Response(200, json={"files": [{"key": f"k{i}", "name": "F"} for i in range(12)]})
            return httpx.Response(200, json={"comments": []})

        assert await self.make_adapter(handler, file_keys=()).fetch_notifications() == []
        assert len([path for path in requested if path.endswith("/comments")]) == 10

    @pytest.mark.asyncio
    async def test_server_error_fails_the_fetch(self):
        def handler(request):
            if request.url.path == "/v1/me":
                return httpx.Response(200, json={"id": "u1", "handle": "ada"})
            return httpx.Response(500)

        with pytest.raises(SourceError):
            await self.make_adapter(handler).fetch_notifications()

    @pytest.mark.asyncio
    async def test_mark_operations_have_no_remote_state(self):
        adapter = self.make_adapter(lambda request: httpx.Response(500))

        assert await adapter.mark_read("f1-c3") is True
        assert await adapter.mark_all_read() is True


def test_capability_flags():
    assert TodoistAdapter.supports_completion is True
    assert GitHubAdapter.supports_notifications is True
    assert FigmaAdapter.snapshot_kind is None
    assert CalendarAdapter.notification_kind is None
