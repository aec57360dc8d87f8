import json
import logging
import sqlite3
import threading
from config import (
    DATABASE_PATH,
    ENTITY_FINAL,
    ENTITY_PLACEHOLDER,
    JOB_COMPLETED,
    JOB_FAILED,
    JOB_PENDING,
    JOB_TRANSITIONS,
    TERMINAL_JOB_STATES,
    UNIT_EXTRACTED,
    UNIT_EXTRACTING,
    UNIT_FAILED,
    VISIBILITIES,
)
from contextlib import contextmanager
from core.errors import InvalidTransition, NotFound, PermissionDenied, PersistenceConflict, TourBusy
from core.models import Coordinate, MediaUnit, PlacementEntity, ProcessingJob, Tour, new_id, now_utc, to_iso
from datetime import datetime
from pathlib import Path

logger = logging.getLogger(__name__)

SCHEMA = """
PRAGMA foreign_keys = ON;
CREATE TABLE IF NOT EXISTS tours (
    id TEXT PRIMARY KEY,
    owner_id TEXT NOT NULL,
    title TEXT NOT NULL,
    description TEXT NOT NULL DEFAULT '',
    visibility TEXT NOT NULL CHECK(visibility IN ('public','private')),
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS processing_jobs (
    id TEXT PRIMARY KEY,
    tour_id TEXT NOT NULL,
    state TEXT NOT NULL,
    units_total INTEGER NOT NULL DEFAULT 0,
    units_succeeded INTEGER NOT NULL DEFAULT 0,
    units_failed INTEGER NOT NULL DEFAULT 0,
    route_length_m REAL,
    rejections_json TEXT NOT NULL DEFAULT '[]',
    error TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    FOREIGN KEY (tour_id) REFERENCES tours(id)
);
CREATE TABLE IF NOT EXISTS media_units (
    id TEXT PRIMARY KEY,
    tour_id TEXT NOT NULL,
    job_id TEXT NOT NULL,
    position INTEGER NOT NULL,
    filename TEXT NOT NULL,
    media_kind TEXT NOT NULL CHECK(media_kind IN ('image','video')),
    source_ref TEXT NOT NULL,
    raw_timestamp TEXT,
    status TEXT NOT NULL,
    captured_at TEXT,
    latitude REAL,
    longitude REAL,
    attempts INTEGER NOT NULL DEFAULT 0,
    failure_reason TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    FOREIGN KEY (tour_id) REFERENCES tours(id),
    FOREIGN KEY (job_id) REFERENCES processing_jobs(id)
);
CREATE TABLE IF NOT EXISTS placement_entities (
    id TEXT PRIMARY KEY,
    tour_id TEXT NOT NULL,
    unit_id TEXT NOT NULL,
    kind TEXT NOT NULL CHECK(kind IN ('placeholder','final')),
    sequence_index INTEGER,
    title TEXT NOT NULL,
    longitude REAL NOT NULL,
    latitude REAL NOT NULL,
    has_panorama INTEGER NOT NULL DEFAULT 0,
    panorama_ref TEXT,
    visibility TEXT NOT NULL CHECK(visibility IN ('public','private')),
    owner_id TEXT NOT NULL,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    FOREIGN KEY (tour_id) REFERENCES tours(id),
    FOREIGN KEY (unit_id) REFERENCES media_units(id)
);
CREATE INDEX IF NOT EXISTS idx_tours_owner ON tours(owner_id);
CREATE INDEX IF NOT EXISTS idx_jobs_tour ON processing_jobs(tour_id);
CREATE INDEX IF NOT EXISTS idx_units_tour ON media_units(tour_id);
CREATE INDEX IF NOT EXISTS idx_units_job ON media_units(job_id);
CREATE INDEX IF NOT EXISTS idx_entities_tour ON placement_entities(tour_id);
CREATE INDEX IF NOT EXISTS idx_entities_visibility ON placement_entities(visibility, owner_id);
CREATE UNIQUE INDEX IF NOT EXISTS idx_entities_placeholder_key
    ON placement_entities(tour_id, unit_id) WHERE kind = 'placeholder';
CREATE UNIQUE INDEX IF NOT EXISTS idx_entities_sequence
    ON placement_entities(tour_id, sequence_index) WHERE kind = 'final';
"""

JOB_COLUMNS = {'units_total', 'units_succeeded', 'units_failed', 'route_length_m', 'rejections', 'error'}


def placeholder_title(tour_title: str) -> str:
    return f"{tour_title} - Processing"


def stop_title(tour_title: str, sequence_index: int) -> str:
    return f"{tour_title} - Stop {sequence_index + 1}"


class PlacementStore:
    """SQLite-backed store for tours, media units, placement entities and jobs

    A single connection is shared between threads and serialized by a
    re-entrant lock. Every multi-row change runs inside one ``BEGIN IMMEDIATE``
    transaction, so readers in this process or any other never observe a
    half-applied promotion or rollback.
    """

    def __init__(self, db_path: Path | str = DATABASE_PATH):
        self.db_path = str(db_path)
        if self.db_path != ':memory:':
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False, isolation_level=None)
        self._conn.row_factory = sqlite3.Row
        self._init_db()

    def _init_db(self):
        with self._lock:
            self._conn.executescript(SCHEMA)

    def close(self):
        with self._lock:
            self._conn.close()

    @contextmanager
    def _transaction(self):
        """Run a block atomically; integrity and locking errors become PersistenceConflict"""
        with self._lock:
            try:
                self._conn.execute("BEGIN IMMEDIATE")
            except sqlite3.OperationalError as e:
                raise PersistenceConflict(f"Could not start transaction: {e}") from e
            try:
                yield self._conn
            except (sqlite3.IntegrityError, sqlite3.OperationalError) as e:
                self._conn.execute("ROLLBACK")
                raise PersistenceConflict(str(e)) from e
            except BaseException:
                self._conn.execute("ROLLBACK")
                raise
            else:
                self._conn.execute("COMMIT")

    def _query(self, sql: str, params: tuple = ()) -> list[sqlite3.Row]:
        with self._lock:
            return self._conn.execute(sql, params).fetchall()

    # Tours

    def create_tour(self, owner_id: str, title: str, description: str = '', visibility: str = 'private') -> Tour:
        if visibility not in VISIBILITIES:
            raise ValueError(f"Unknown visibility: {visibility}")
        ts = now_utc()
        tour = Tour(
            id=new_id(),
            owner_id=owner_id,
            title=title,
            description=description or '',
            visibility=visibility,
            created_at=ts,
            updated_at=ts,
        )
        with self._transaction() as db:
            db.execute(
                """
                INSERT INTO tours (id, owner_id, title, description, visibility, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (tour.id, tour.owner_id, tour.title, tour.description, tour.visibility, to_iso(ts), to_iso(ts)),
            )
        logger.info(f"Created tour {tour.id} '{title}' for owner {owner_id}")
        return tour

    def get_tour(self, tour_id: str) -> Tour:
        rows = self._query("SELECT * FROM tours WHERE id = ?", (tour_id,))
        if not rows:
            raise NotFound(f"Tour not found: {tour_id}")
        return Tour.from_row(rows[0])

    def set_visibility(self, tour_id: str, visibility: str, requester_id: str) -> Tour:
        """Change a tour's visibility and fan it out to every entity of that tour"""
        if visibility not in VISIBILITIES:
            raise ValueError(f"Unknown visibility: {visibility}")
        with self._transaction() as db:
            row = db.execute("SELECT * FROM tours WHERE id = ?", (tour_id,)).fetchone()
            if row is None:
                raise NotFound(f"Tour not found: {tour_id}")
            if row['owner_id'] != requester_id:
                raise PermissionDenied(f"Only the owner may change visibility of tour {tour_id}")
            ts = to_iso(now_utc())
            db.execute("UPDATE tours SET visibility = ?, updated_at = ? WHERE id = ?", (visibility, ts, tour_id))
            cursor = db.execute(
                "UPDATE placement_entities SET visibility = ?, updated_at = ? WHERE tour_id = ?",
                (visibility, ts, tour_id),
            )
        logger.info(f"Tour {tour_id} is now {visibility} ({cursor.rowcount} entities updated)")
        return self.get_tour(tour_id)

    # Media units and placeholders

    def _insert_placeholder(self, db, tour_row, unit_id: str, provisional: Coordinate) -> PlacementEntity:
        existing = db.execute(
            "SELECT * FROM placement_entities WHERE tour_id = ? AND unit_id = ? AND kind = ?",
            (tour_row['id'], unit_id, ENTITY_PLACEHOLDER),
        ).fetchone()
        if existing is not None:
            return PlacementEntity.from_row(existing)

        coordinate = provisional.rounded()
        ts = now_utc()
        entity = PlacementEntity(
            id=new_id(),
            tour_id=tour_row['id'],
            unit_id=unit_id,
            kind=ENTITY_PLACEHOLDER,
            sequence_index=None,
            title=placeholder_title(tour_row['title']),
            longitude=coordinate.longitude,
            latitude=coordinate.latitude,
            has_panorama=False,
            panorama_ref=None,
            visibility=tour_row['visibility'],
            owner_id=tour_row['owner_id'],
            created_at=ts,
            updated_at=ts,
        )
        self._insert_entity(db, entity)
        return entity

    def _insert_entity(self, db, entity: PlacementEntity):
        db.execute(
            """
            INSERT INTO placement_entities (
                id, tour_id, unit_id, kind, sequence_index, title, longitude, latitude,
                has_panorama, panorama_ref, visibility, owner_id, created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                entity.id,
                entity.tour_id,
                entity.unit_id,
                entity.kind,
                entity.sequence_index,
                entity.title,
                entity.longitude,
                entity.latitude,
                int(entity.has_panorama),
                entity.panorama_ref,
                entity.visibility,
                entity.owner_id,
                to_iso(entity.created_at),
                to_iso(entity.updated_at),
            ),
        )

    def _tour_row(self, db, tour_id: str):
        row = db.execute("SELECT * FROM tours WHERE id = ?", (tour_id,)).fetchone()
        if row is None:
            raise NotFound(f"Tour not found: {tour_id}")
        return row

    def register_unit(self, unit: MediaUnit, job_id: str, provisional: Coordinate) -> PlacementEntity:
        """Insert a pending media unit and its placeholder in one transaction"""
        ts = to_iso(now_utc())
        with self._transaction() as db:
            tour_row = self._tour_row(db, unit.tour_id)
            db.execute(
                """
                INSERT INTO media_units (
                    id, tour_id, job_id, position, filename, media_kind, source_ref, raw_timestamp,
                    status, attempts, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, 0, ?, ?)
                """,
                (
                    unit.id,
                    unit.tour_id,
                    job_id,
                    unit.position,
                    unit.filename,
                    unit.media_kind,
                    unit.source_ref,
                    to_iso(unit.raw_timestamp),
                    unit.status,
                    ts,
                    ts,
                ),
            )
            return self._insert_placeholder(db, tour_row, unit.id, provisional)

    def create_placeholder(self, tour_id: str, unit_id: str, provisional: Coordinate) -> PlacementEntity:
        """Create the placeholder for a unit; repeated calls return the existing row"""
        with self._transaction() as db:
            return self._insert_placeholder(db, self._tour_row(db, tour_id), unit_id, provisional)

    def get_unit(self, unit_id: str) -> MediaUnit:
        rows = self._query("SELECT * FROM media_units WHERE id = ?", (unit_id,))
        if not rows:
            raise NotFound(f"Media unit not found: {unit_id}")
        return MediaUnit.from_row(rows[0])

    def list_units(self, tour_id: str, job_id: str | None = None) -> list[MediaUnit]:
        if job_id is None:
            rows = self._query("SELECT * FROM media_units WHERE tour_id = ? ORDER BY created_at, position", (tour_id,))
        else:
            rows = self._query(
                "SELECT * FROM media_units WHERE tour_id = ? AND job_id = ? ORDER BY position", (tour_id, job_id)
            )
        return [MediaUnit.from_row(row) for row in rows]

    def mark_unit_extracting(self, unit_id: str) -> int:
        """Record the start of an extraction attempt and return the attempt number"""
        with self._transaction() as db:
            db.execute(
                "UPDATE media_units SET status = ?, attempts = attempts + 1, updated_at = ? WHERE id = ?",
                (UNIT_EXTRACTING, to_iso(now_utc()), unit_id),
            )
            row = db.execute("SELECT attempts FROM media_units WHERE id = ?", (unit_id,)).fetchone()
        if row is None:
            raise NotFound(f"Media unit not found: {unit_id}")
        return row['attempts']

    def mark_unit_extracted(self, unit_id: str, captured_at: datetime, coordinate: Coordinate):
        coordinate = coordinate.rounded()
        with self._transaction() as db:
            db.execute(
                """
                UPDATE media_units
                SET status = ?, captured_at = ?, latitude = ?, longitude = ?, failure_reason = NULL, updated_at = ?
                WHERE id = ?
                """,
                (
                    UNIT_EXTRACTED,
                    to_iso(captured_at),
                    coordinate.latitude,
                    coordinate.longitude,
                    to_iso(now_utc()),
                    unit_id,
                ),
            )

    def mark_unit_failed(self, unit_id: str, reason: str):
        with self._transaction() as db:
            db.execute(
                "UPDATE media_units SET status = ?, failure_reason = ?, updated_at = ? WHERE id = ?",
                (UNIT_FAILED, reason, to_iso(now_utc()), unit_id),
            )

    # Promotion and rollback

    def commit_final(self, tour_id: str, entries: list, job_id: str | None = None) -> list[PlacementEntity]:
        """Atomically replace a tour's placeholders with its ordered final entities

        ``entries`` are linked units carrying ``unit``, ``sequence_index`` and
        ``coordinate``. When ``job_id`` is given the job moves to completed in
        the same transaction.
        """
        if not entries:
            raise ValueError(f"Refusing to commit an empty sequence for tour {tour_id}")
        indices = [entry.sequence_index for entry in entries]
        if sorted(indices) != list(range(len(entries))):
            raise ValueError(f"Sequence indices for tour {tour_id} are not contiguous from 0: {indices}")

        ts = now_utc()
        with self._transaction() as db:
            tour_row = self._tour_row(db, tour_id)
            removed = db.execute("DELETE FROM placement_entities WHERE tour_id = ?", (tour_id,)).rowcount

            committed = []
            for entry in sorted(entries, key=lambda e: e.sequence_index):
                if entry.unit.tour_id != tour_id:
                    raise PersistenceConflict(f"Unit {entry.unit.id} does not belong to tour {tour_id}")
                coordinate = entry.coordinate.rounded()
                entity = PlacementEntity(
                    id=new_id(),
                    tour_id=tour_id,
                    unit_id=entry.unit.id,
                    kind=ENTITY_FINAL,
                    sequence_index=entry.sequence_index,
                    title=stop_title(tour_row['title'], entry.sequence_index),
                    longitude=coordinate.longitude,
                    latitude=coordinate.latitude,
                    has_panorama=True,
                    panorama_ref=entry.unit.source_ref,
                    visibility=tour_row['visibility'],
                    owner_id=tour_row['owner_id'],
                    created_at=ts,
                    updated_at=ts,
                )
                self._insert_entity(db, entity)
                committed.append(entity)

            if job_id is not None:
                self._transition(db, job_id, JOB_COMPLETED, units_succeeded=len(committed))

        logger.info(f"Committed {len(committed)} final entities for tour {tour_id} (replaced {removed} rows)")
        return committed

    def rollback(self, tour_id: str, job_id: str | None = None, error: str | None = None) -> int:
        """Delete every entity of a tour; with ``job_id`` also fail the job in the same transaction

        Earlier final stops go too, so a tour never shows stops from a batch
        other than its latest job.
        """
        with self._transaction() as db:
            removed = db.execute("DELETE FROM placement_entities WHERE tour_id = ?", (tour_id,)).rowcount
            if job_id is not None:
                self._transition(db, job_id, JOB_FAILED, error=error)
        logger.info(f"Rolled back tour {tour_id}: removed {removed} entities")
        return removed

    # Read API

    def list_entities(self, requester_id: str | None, include_placeholders: bool = True) -> list[PlacementEntity]:
        """Entities visible to a requester: public ones plus everything they own"""
        sql = "SELECT * FROM placement_entities WHERE (visibility = 'public' OR owner_id = ?)"
        params = [requester_id]
        if not include_placeholders:
            sql += " AND kind = ?"
            params.append(ENTITY_FINAL)
        sql += " ORDER BY tour_id, kind, sequence_index, created_at"
        return [PlacementEntity.from_row(row) for row in self._query(sql, tuple(params))]

    def list_tour_entities(
        self, tour_id: str, requester_id: str | None = None, kind: str | None = None
    ) -> list[PlacementEntity]:
        """Entities of one tour ordered by sequence; ``requester_id=None`` skips the access filter"""
        sql = "SELECT * FROM placement_entities WHERE tour_id = ?"
        params = [tour_id]
        if requester_id is not None:
            sql += " AND (visibility = 'public' OR owner_id = ?)"
            params.append(requester_id)
        if kind is not None:
            sql += " AND kind = ?"
            params.append(kind)
        sql += " ORDER BY kind, sequence_index, created_at"
        return [PlacementEntity.from_row(row) for row in self._query(sql, tuple(params))]

    # Jobs

    def create_job(self, tour_id: str) -> ProcessingJob:
        """Open a pending job; a tour with a job still in flight is rejected"""
        ts = now_utc()
        job = ProcessingJob(id=new_id(), tour_id=tour_id, state=JOB_PENDING, created_at=ts, updated_at=ts)
        with self._transaction() as db:
            self._tour_row(db, tour_id)
            active = self._active_job_row(db, tour_id)
            if active is not None:
                raise TourBusy(f"Tour {tour_id} already has job {active['id']} in state {active['state']}")
            db.execute(
                """
                INSERT INTO processing_jobs (id, tour_id, state, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (job.id, tour_id, job.state, to_iso(ts), to_iso(ts)),
            )
        return job

    def _active_job_row(self, db, tour_id: str):
        placeholders = ', '.join('?' for _ in TERMINAL_JOB_STATES)
        return db.execute(
            f"SELECT * FROM processing_jobs WHERE tour_id = ? AND state NOT IN ({placeholders})",
            (tour_id, *sorted(TERMINAL_JOB_STATES)),
        ).fetchone()

    def get_active_job(self, tour_id: str) -> ProcessingJob | None:
        with self._lock:
            row = self._active_job_row(self._conn, tour_id)
        return self._job_from_row(row) if row is not None else None

    def _job_from_row(self, row) -> ProcessingJob:
        return ProcessingJob.from_row(row, json.loads(row['rejections_json'] or '[]'))

    def get_job(self, job_id: str) -> ProcessingJob:
        rows = self._query("SELECT * FROM processing_jobs WHERE id = ?", (job_id,))
        if not rows:
            raise NotFound(f"Job not found: {job_id}")
        return self._job_from_row(rows[0])

    def _apply_job_fields(self, db, job_id: str, fields: dict, state: str | None = None):
        unknown = set(fields) - JOB_COLUMNS
        if unknown:
            raise ValueError(f"Unknown job fields: {sorted(unknown)}")
        assignments = ['updated_at = ?']
        params = [to_iso(now_utc())]
        if state is not None:
            assignments.append('state = ?')
            params.append(state)
        for name, value in fields.items():
            if name == 'rejections':
                assignments.append('rejections_json = ?')
                params.append(json.dumps(value))
            else:
                assignments.append(f"{name} = ?")
                params.append(value)
        params.append(job_id)
        db.execute(f"UPDATE processing_jobs SET {', '.join(assignments)} WHERE id = ?", tuple(params))

    def _transition(self, db, job_id: str, new_state: str, **fields) -> str:
        row = db.execute("SELECT state FROM processing_jobs WHERE id = ?", (job_id,)).fetchone()
        if row is None:
            raise NotFound(f"Job not found: {job_id}")
        current = row['state']
        if new_state not in JOB_TRANSITIONS[current]:
            raise InvalidTransition(f"Job {job_id} cannot move from {current} to {new_state}")
        self._apply_job_fields(db, job_id, fields, state=new_state)
        logger.debug(f"Job {job_id}: {current} -> {new_state}")
        return current

    def transition_job(self, job_id: str, new_state: str, **fields) -> ProcessingJob:
        """Move a job to ``new_state`` if the state machine allows it"""
        with self._transaction() as db:
            self._transition(db, job_id, new_state, **fields)
        return self.get_job(job_id)

    def update_job(self, job_id: str, **fields) -> ProcessingJob:
        """Update job counters without changing state"""
        with self._transaction() as db:
            self._apply_job_fields(db, job_id, fields)
        return self.get_job(job_id)
