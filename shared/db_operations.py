"""Record store: durable keyed storage and reconciliation primitives."""

import logging
from contextlib import contextmanager
from dataclasses import asdict
from datetime import datetime, timedelta, tzinfo
from pathlib import Path
from typing import Dict, Iterable, Iterator, List, Optional, Sequence
from zoneinfo import ZoneInfo

from sqlalchemy import case, create_engine, delete, event, func, select
from sqlalchemy.engine import make_url
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from shared.config import get_database_url, get_schedule_timezone
from shared.db_models import (
    Base, DismissedRecord, KindSpec, REPLACE, UPSERT,
    CalendarEventRow, StoryRow, StoryNotificationRow, PullRequestRow,
    ReviewNotificationRow, TaskRow, DesignMentionRow,
    get_kind_spec, row_to_dict,
)
from shared.errors import ReconciliationError
from shared.models import UpsertSummary, utcnow

logger = logging.getLogger(__name__)

DEFAULT_TOMBSTONE_TTL = timedelta(days=14)


def _enable_wal(dbapi_connection, connection_record):
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.close()


def _build_engine(database_url: str):
    url = make_url(database_url)
    if url.get_backend_name() != "sqlite":
        return create_engine(database_url, pool_pre_ping=True)

    if url.database in (None, "", ":memory:"):
        # One shared connection so every session sees the same in-memory database
        return create_engine(
            database_url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )

    Path(url.database).parent.mkdir(parents=True, exist_ok=True)
    engine = create_engine(
        database_url,
        connect_args={"check_same_thread": False},
        pool_pre_ping=True,
    )
    event.listen(engine, "connect", _enable_wal)
    return engine


def _is_newer(incoming: Optional[datetime], reference: Optional[datetime]) -> bool:
    """True only when the incoming timestamp is known and strictly later."""
    if incoming is None:
        return False
    return reference is None or incoming > reference


class RecordStore:
    """Owns all persisted record state.

    Writers (sync commits and user actions) go through a single transaction per
    call; readers always observe the last committed state.
    """

    def __init__(
        self,
        database_url: Optional[str] = None,
        tombstone_ttl: timedelta = DEFAULT_TOMBSTONE_TTL
    ):
        """Initialize database connection."""
        self.database_url = database_url or get_database_url()
        self.tombstone_ttl = tombstone_ttl
        self.engine = _build_engine(self.database_url)
        self.SessionLocal = sessionmaker(
            autocommit=False, autoflush=False, expire_on_commit=False, bind=self.engine
        )

    def create_tables(self):
        """Create all tables in the database."""
        Base.metadata.create_all(bind=self.engine)

    def get_session(self) -> Session:
        """Get a new database session."""
        return self.SessionLocal()

    def close(self):
        self.engine.dispose()

    @contextmanager
    def _transaction(self, description: str) -> Iterator[Session]:
        """Run a block in one transaction; any database failure rolls back."""
        with self.get_session() as session:
            try:
                with session.begin():
                    yield session
            except SQLAlchemyError as e:
                logger.error(f"Record store commit failed ({description}): {e}", exc_info=True)
                raise ReconciliationError(f"{description} failed: {e}") from e

    # Reconciliation primitives

    def replace_set(
        self,
        kind: str,
        records: Sequence,
        synced_at: Optional[datetime] = None
    ) -> int:
        """
        Atomically replace every row of a replace-wholesale kind.

        Args:
            kind: Record kind identifier
            records: The adapter's latest snapshot for the kind
            synced_at: Sync timestamp stamped on every row

        Returns:
            Number of rows stored
        """
        spec = get_kind_spec(kind)
        synced_at = synced_at or utcnow()
        with self._transaction(f"replace-set of {kind}") as session:
            return self._replace(session, spec, records, synced_at)

    def upsert_merge(
        self,
        kind: str,
        records: Sequence,
        synced_at: Optional[datetime] = None
    ) -> UpsertSummary:
        """
        Insert or update records of an upsert kind by key.

        Rows missing from ``records`` are left in place. The user-mutable field
        only changes when the incoming record carries an explicit, strictly
        newer state; dismissed records stay dismissed unless the source reports
        activity after the dismissal.

        Args:
            kind: Record kind identifier
            records: Records refreshed this cycle
            synced_at: Sync timestamp stamped on every touched row

        Returns:
            UpsertSummary with inserted, updated and skipped counts
        """
        spec = get_kind_spec(kind)
        synced_at = synced_at or utcnow()
        with self._transaction(f"upsert-merge of {kind}") as session:
            return self._upsert(session, spec, records, synced_at)

    def apply_sync(
        self,
        source: str,
        records_by_kind: Dict[str, Sequence],
        synced_at: Optional[datetime] = None
    ) -> Dict[str, int]:
        """
        Commit one sync run of a source in a single transaction.

        Each kind goes through its lifecycle primitive: replace-set for
        replace-wholesale kinds, upsert-merge for the others.

        Args:
            source: Source the run belongs to
            records_by_kind: Records keyed by kind identifier
            synced_at: Sync timestamp

        Returns:
            Number of rows written per kind

        Raises:
            ReconciliationError: If a kind belongs to another source or the
                commit fails; nothing is written in either case
        """
        specs = []
        for kind in records_by_kind:
            spec = get_kind_spec(kind)
            if spec.source != source:
                raise ReconciliationError(
                    f"Sync run for {source} cannot write {kind} records owned by {spec.source}"
                )
            specs.append(spec)

        synced_at = synced_at or utcnow()
        counts = {}
        with self._transaction(f"sync commit for {source}") as session:
            for spec in specs:
                records = records_by_kind[spec.kind]
                if spec.lifecycle == REPLACE:
                    counts[spec.kind] = self._replace(session, spec, records, synced_at)
                else:
                    summary = self._upsert(session, spec, records, synced_at)
                    counts[spec.kind] = summary.total
                    if summary.skipped:
                        counts[f"{spec.kind}_skipped"] = summary.skipped
        return counts

    def _replace(self, session: Session, spec: KindSpec, records: Sequence, synced_at: datetime) -> int:
        if spec.lifecycle != REPLACE:
            raise ReconciliationError(f"{spec.kind} is not a replace-wholesale kind")
        unique = self._dedupe(spec, records)
        session.execute(delete(spec.model))
        session.add_all([self._new_row(spec, record, synced_at) for record in unique])
        session.flush()
        logger.info(f"Replaced {spec.kind}: {len(unique)} rows")
        return len(unique)

    def _upsert(
        self,
        session: Session,
        spec: KindSpec,
        records: Sequence,
        synced_at: datetime
    ) -> UpsertSummary:
        if spec.lifecycle != UPSERT:
            raise ReconciliationError(f"{spec.kind} is not an upsert kind")
        unique = self._dedupe(spec, records)
        keys = [getattr(record, spec.key) for record in unique]
        summary = UpsertSummary()

        # Markers for keys the source still reports never expire
        prune = delete(DismissedRecord).where(
            DismissedRecord.kind == spec.kind,
            DismissedRecord.dismissed_at < synced_at - self.tombstone_ttl
        )
        if keys:
            prune = prune.where(DismissedRecord.record_id.not_in([str(key) for key in keys]))
        session.execute(prune)

        existing = {}
        tombstones = {}
        if keys:
            existing = {
                getattr(row, spec.key): row
                for row in session.scalars(select(spec.model).where(spec.key_column.in_(keys)))
            }
            tombstones = {
                marker.record_id: marker
                for marker in session.scalars(
                    select(DismissedRecord).where(
                        DismissedRecord.kind == spec.kind,
                        DismissedRecord.record_id.in_([str(key) for key in keys])
                    )
                )
            }

        for record in unique:
            key = getattr(record, spec.key)
            row = existing.get(key)

            if row is None:
                marker = tombstones.get(str(key))
                if marker is not None:
                    if not _is_newer(record.source_updated_at, marker.dismissed_at):
                        summary.skipped += 1
                        continue
                    logger.info(f"{spec.kind} {key} has activity after its dismissal, restoring")
                    session.delete(marker)
                session.add(self._new_row(spec, record, synced_at))
                summary.inserted += 1
                continue

            data = asdict(record)
            incoming_state = data.pop(spec.state_field)
            for name, value in data.items():
                setattr(row, name, value)

            local_state = getattr(row, spec.state_field)
            if (
                incoming_state is not None
                and bool(incoming_state) != local_state
                and _is_newer(record.source_updated_at, row.state_changed_at)
            ):
                setattr(row, spec.state_field, bool(incoming_state))
                row.state_changed_at = record.source_updated_at
            row.last_synced_at = synced_at
            summary.updated += 1

        session.flush()
        logger.info(
            f"Upserted {spec.kind}: {summary.inserted} inserted, {summary.updated} updated, "
            f"{summary.skipped} skipped as dismissed"
        )
        return summary

    def _dedupe(self, spec: KindSpec, records: Iterable) -> List:
        by_key = {}
        for record in records:
            if not isinstance(record, spec.record_class):
                raise ReconciliationError(
                    f"Expected {spec.record_class.__name__} for {spec.kind}, got {type(record).__name__}"
                )
            by_key[getattr(record, spec.key)] = record
        unique = list(by_key.values())
        dropped = len(records) - len(unique) if isinstance(records, Sequence) else 0
        if dropped:
            logger.warning(f"Collapsed {dropped} duplicate {spec.kind} records by key")
        return unique

    def _new_row(self, spec: KindSpec, record, synced_at: datetime):
        data = asdict(record)
        if spec.state_field:
            state = data.pop(spec.state_field)
            data[spec.state_field] = bool(state) if state is not None else False
            data['state_changed_at'] = record.source_updated_at or synced_at
        return spec.model(**data, last_synced_at=synced_at)

    # User action operations

    def delete_record(self, kind: str, record_id: str) -> bool:
        """
        Remove one upsert-kind record after a confirmed user action.

        A dismissal marker is written in the same transaction.

        Args:
            kind: Record kind identifier
            record_id: Key of the record

        Returns:
            True if a record was deleted, False if not found
        """
        spec = self._user_mutable_spec(kind)
        with self._transaction(f"delete of {kind} {record_id}") as session:
            result = session.execute(delete(spec.model).where(spec.key_column == record_id))
            if not result.rowcount:
                return False
            session.merge(DismissedRecord(kind=kind, record_id=str(record_id), dismissed_at=utcnow()))
        logger.info(f"Removed {kind} {record_id} after user action")
        return True

    def delete_all(self, kind: str) -> int:
        """
        Remove every record of an upsert kind after a confirmed mark-all.

        Returns:
            Number of records deleted
        """
        spec = self._user_mutable_spec(kind)
        dismissed_at = utcnow()
        with self._transaction(f"delete-all of {kind}") as session:
            keys = list(session.scalars(select(spec.key_column)))
            session.execute(delete(spec.model))
            for key in keys:
                session.merge(DismissedRecord(kind=kind, record_id=str(key), dismissed_at=dismissed_at))
        logger.info(f"Removed all {len(keys)} {kind} records after user action")
        return len(keys)

    def _user_mutable_spec(self, kind: str) -> KindSpec:
        spec = get_kind_spec(kind)
        if spec.lifecycle != UPSERT:
            raise ValueError(f"{kind} records cannot be removed by user action")
        return spec

    # Queries

    def get_records(self, kind: str) -> List:
        """Current committed rows of a kind, ordered by key."""
        spec = get_kind_spec(kind)
        with self.get_session() as session:
            stmt = select(spec.model).order_by(spec.key_column)
            return list(session.scalars(stmt).all())

    def get_record(self, kind: str, record_id) -> Optional[object]:
        spec = get_kind_spec(kind)
        with self.get_session() as session:
            return session.get(spec.model, record_id)

    def count_records(self, kind: str) -> int:
        spec = get_kind_spec(kind)
        with self.get_session() as session:
            return session.scalar(select(func.count()).select_from(spec.model))

    def is_dismissed(self, kind: str, record_id: str) -> bool:
        with self.get_session() as session:
            return session.get(DismissedRecord, (kind, str(record_id))) is not None

    def get_dashboard_data(
        self,
        now: Optional[datetime] = None,
        tz: Optional[tzinfo] = None
    ) -> Dict[str, List[dict]]:
        """
        Get everything the dashboard shows, from one consistent read.

        Args:
            now: Reference time; defaults to the current time
            tz: Timezone that defines "today"; defaults to SCHEDULE_TIMEZONE

        Returns:
            Dictionary of record lists keyed by dashboard section
        """
        tz = tz or ZoneInfo(get_schedule_timezone())
        local_now = (now or utcnow()).astimezone(tz)
        day_start = local_now.replace(hour=0, minute=0, second=0, microsecond=0)
        day_end = day_start + timedelta(days=1)
        today = day_start.date().isoformat()

        with self.get_session() as session, session.begin():
            calendar = session.scalars(
                select(CalendarEventRow).where(
                    CalendarEventRow.start_time < day_end,
                    (CalendarEventRow.start_time >= day_start)
                    | (CalendarEventRow.end_time > day_start)
                ).order_by(CalendarEventRow.start_time.asc())
            ).all()

            stories = session.scalars(
                select(StoryRow).where(StoryRow.completed_at.is_(None)).order_by(
                    StoryRow.deadline.is_(None),
                    StoryRow.deadline.asc(),
                    StoryRow.source_updated_at.desc()
                )
            ).all()

            story_notifications = session.scalars(
                select(StoryNotificationRow).where(StoryNotificationRow.read.is_(False))
                .order_by(StoryNotificationRow.source_updated_at.desc())
            ).all()

            pull_requests = session.scalars(
                select(PullRequestRow).where(PullRequestRow.state == 'open')
                .order_by(PullRequestRow.source_updated_at.desc())
            ).all()

            review_notifications = session.scalars(
                select(ReviewNotificationRow).where(ReviewNotificationRow.read.is_(False))
                .order_by(ReviewNotificationRow.source_updated_at.desc())
            ).all()

            tasks = session.scalars(
                select(TaskRow).where(
                    TaskRow.is_completed.is_(False),
                    TaskRow.due_date.is_(None) | (TaskRow.due_date >= today)
                ).order_by(
                    case((TaskRow.due_date == today, 0), else_=1),
                    TaskRow.priority.desc(),
                    TaskRow.created_at.asc()
                )
            ).all()

            design_mentions = session.scalars(
                select(DesignMentionRow).where(DesignMentionRow.read.is_(False))
                .order_by(DesignMentionRow.source_updated_at.desc())
            ).all()

        return {
            "calendar": [row_to_dict(row) for row in calendar],
            "stories": [row_to_dict(row) for row in stories],
            "story_notifications": [row_to_dict(row) for row in story_notifications],
            "pull_requests": [row_to_dict(row) for row in pull_requests],
            "review_notifications": [row_to_dict(row) for row in review_notifications],
            "tasks": [row_to_dict(row) for row in tasks],
            "design_mentions": [row_to_dict(row) for row in design_mentions],
        }
