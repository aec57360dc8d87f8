import uuid
from config import (
    COORDINATE_PRECISION,
    ENTITY_FINAL,
    MAX_VALID_LATITUDE,
    MAX_VALID_LONGITUDE,
    MIN_VALID_LATITUDE,
    MIN_VALID_LONGITUDE,
)
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from dateutil.parser import parse as parse_date
from pathlib import Path


def new_id() -> str:
    return uuid.uuid4().hex


def now_utc() -> datetime:
    return datetime.now(UTC)


def ensure_utc(value) -> datetime | None:
    """Coerce epoch seconds, ISO strings and naive datetimes to aware UTC datetimes"""
    if value is None or value == '':
        return None
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, (int, float)):
        dt = datetime.fromtimestamp(value, tz=UTC)
    else:
        dt = parse_date(str(value))
    if dt.tzinfo is None:
        return dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC)


def to_iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


@dataclass(frozen=True)
class Coordinate:
    latitude: float
    longitude: float

    def is_valid(self) -> bool:
        """Validate coordinate ranges"""
        return (
            MIN_VALID_LATITUDE <= self.latitude <= MAX_VALID_LATITUDE
            and MIN_VALID_LONGITUDE <= self.longitude <= MAX_VALID_LONGITUDE
        )

    def rounded(self) -> 'Coordinate':
        return Coordinate(round(self.latitude, COORDINATE_PRECISION), round(self.longitude, COORDINATE_PRECISION))

    def as_tuple(self) -> tuple[float, float]:
        return (self.latitude, self.longitude)


@dataclass
class MediaDescriptor:
    """A file offered for inclusion in a tour, as handed over by the transport"""

    filename: str
    path: Path
    content_type: str | None = None
    size: int | None = None
    last_modified: object = None

    def __post_init__(self):
        self.path = Path(self.path)


@dataclass
class Tour:
    id: str
    owner_id: str
    title: str
    description: str
    visibility: str
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_row(cls, row) -> 'Tour':
        return cls(
            id=row['id'],
            owner_id=row['owner_id'],
            title=row['title'],
            description=row['description'],
            visibility=row['visibility'],
            created_at=ensure_utc(row['created_at']),
            updated_at=ensure_utc(row['updated_at']),
        )

    def to_dict(self) -> dict:
        data = asdict(self)
        data['created_at'] = to_iso(self.created_at)
        data['updated_at'] = to_iso(self.updated_at)
        return data


@dataclass
class MediaUnit:
    id: str
    tour_id: str
    position: int
    filename: str
    media_kind: str
    source_ref: str
    raw_timestamp: datetime | None
    status: str
    captured_at: datetime | None = None
    coordinate: Coordinate | None = None
    attempts: int = 0
    failure_reason: str | None = None

    @classmethod
    def from_row(cls, row) -> 'MediaUnit':
        coordinate = None
        if row['latitude'] is not None and row['longitude'] is not None:
            coordinate = Coordinate(row['latitude'], row['longitude'])
        return cls(
            id=row['id'],
            tour_id=row['tour_id'],
            position=row['position'],
            filename=row['filename'],
            media_kind=row['media_kind'],
            source_ref=row['source_ref'],
            raw_timestamp=ensure_utc(row['raw_timestamp']),
            status=row['status'],
            captured_at=ensure_utc(row['captured_at']),
            coordinate=coordinate,
            attempts=row['attempts'],
            failure_reason=row['failure_reason'],
        )


@dataclass
class PlacementEntity:
    id: str
    tour_id: str
    unit_id: str
    kind: str
    sequence_index: int | None
    title: str
    longitude: float
    latitude: float
    has_panorama: bool
    panorama_ref: str | None
    visibility: str
    owner_id: str
    created_at: datetime
    updated_at: datetime

    @property
    def is_final(self) -> bool:
        return self.kind == ENTITY_FINAL

    @classmethod
    def from_row(cls, row) -> 'PlacementEntity':
        return cls(
            id=row['id'],
            tour_id=row['tour_id'],
            unit_id=row['unit_id'],
            kind=row['kind'],
            sequence_index=row['sequence_index'],
            title=row['title'],
            longitude=row['longitude'],
            latitude=row['latitude'],
            has_panorama=bool(row['has_panorama']),
            panorama_ref=row['panorama_ref'],
            visibility=row['visibility'],
            owner_id=row['owner_id'],
            created_at=ensure_utc(row['created_at']),
            updated_at=ensure_utc(row['updated_at']),
        )

    def to_dict(self, panorama_url: str | None = None) -> dict:
        data = asdict(self)
        data['created_at'] = to_iso(self.created_at)
        data['updated_at'] = to_iso(self.updated_at)
        data['panorama_url'] = panorama_url
        return data


@dataclass
class ProcessingJob:
    id: str
    tour_id: str
    state: str
    units_total: int = 0
    units_succeeded: int = 0
    units_failed: int = 0
    route_length_m: float | None = None
    rejections: list[dict] = field(default_factory=list)
    error: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @classmethod
    def from_row(cls, row, rejections: list[dict]) -> 'ProcessingJob':
        return cls(
            id=row['id'],
            tour_id=row['tour_id'],
            state=row['state'],
            units_total=row['units_total'],
            units_succeeded=row['units_succeeded'],
            units_failed=row['units_failed'],
            route_length_m=row['route_length_m'],
            rejections=rejections,
            error=row['error'],
            created_at=ensure_utc(row['created_at']),
            updated_at=ensure_utc(row['updated_at']),
        )

    def to_dict(self) -> dict:
        data = asdict(self)
        data['created_at'] = to_iso(self.created_at)
        data['updated_at'] = to_iso(self.updated_at)
        return data
