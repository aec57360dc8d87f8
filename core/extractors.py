"""
Geolocation extractors

Every extractor turns one MediaUnit into an ExtractionResult: either a capture
timestamp plus coordinate, or a failure reason flagged transient or permanent.
Extractors hold no per-unit state and are safe to call from many threads.
"""

import exifread
import json
import logging
import re
import subprocess
import threading
import time
from config import EXTRACTION_TIMEOUT_SECONDS, FFPROBE_BINARY
from core.errors import ExtractionFailure, StorageFailure
from core.models import Coordinate, MediaUnit, ensure_utc
from dataclasses import dataclass
from datetime import datetime
from utils.object_store import LocalObjectStore

logger = logging.getLogger(__name__)

EXIF_DATETIME_FORMAT = '%Y:%m:%d %H:%M:%S'
EXIF_DATETIME_TAGS = ('EXIF DateTimeOriginal', 'EXIF DateTimeDigitized', 'Image DateTime')

VIDEO_LOCATION_TAGS = ('com.apple.quicktime.location.ISO6709', 'location', 'location-eng')

# ISO 6709 point, e.g. "+37.7749-122.4194+010.000/"
ISO6709_PATTERN = re.compile(r'^([+-]\d+(?:\.\d+)?)([+-]\d+(?:\.\d+)?)([+-]\d+(?:\.\d+)?)?/?$')


@dataclass(frozen=True)
class ExtractionResult:
    ok: bool
    captured_at: datetime | None = None
    coordinate: Coordinate | None = None
    reason: str | None = None
    transient: bool = False

    @classmethod
    def success(cls, captured_at: datetime, coordinate: Coordinate) -> 'ExtractionResult':
        return cls(ok=True, captured_at=captured_at, coordinate=coordinate)

    @classmethod
    def failure(cls, reason: str, transient: bool = False) -> 'ExtractionResult':
        return cls(ok=False, reason=reason, transient=transient)


class GeoExtractor:
    """Base class for geolocation capabilities

    Subclasses implement ``_extract`` and raise ExtractionFailure (or
    StorageFailure for blob access problems); ``extract`` converts those into
    results so the pipeline never sees an exception from a unit.
    """

    name = 'base'

    def extract(self, unit: MediaUnit) -> ExtractionResult:
        try:
            captured_at, coordinate = self._extract(unit)
        except ExtractionFailure as e:
            return ExtractionResult.failure(e.reason, transient=e.transient)
        except StorageFailure as e:
            return ExtractionResult.failure(f"Storage error: {e}", transient=True)
        except TimeoutError as e:
            return ExtractionResult.failure(f"Timed out: {e}", transient=True)

        if captured_at is None:
            captured_at = unit.raw_timestamp
        if captured_at is None:
            return ExtractionResult.failure("No capture timestamp available")
        if not coordinate.is_valid():
            return ExtractionResult.failure(f"Coordinate out of range: {coordinate.latitude}, {coordinate.longitude}")
        return ExtractionResult.success(ensure_utc(captured_at), coordinate)

    def _extract(self, unit: MediaUnit) -> tuple[datetime | None, Coordinate]:
        raise NotImplementedError


def ratio_to_float(value) -> float:
    """Convert an exifread Ratio (or plain number) to float"""
    num = getattr(value, 'num', None)
    den = getattr(value, 'den', None)
    if num is not None and den is not None:
        if den == 0:
            raise ExtractionFailure("GPS value has zero denominator")
        return float(num) / float(den)
    return float(value)


def dms_to_degrees(values, ref: str) -> float:
    """Degrees/minutes/seconds triplet plus N/S/E/W reference to signed degrees"""
    parts = [ratio_to_float(v) for v in values]
    if not parts or len(parts) > 3:
        raise ExtractionFailure(f"Malformed GPS component: {values}")
    parts += [0.0] * (3 - len(parts))
    degrees = parts[0] + parts[1] / 60.0 + parts[2] / 3600.0
    if ref.strip().upper() in ('S', 'W'):
        degrees = -degrees
    return degrees


class ExifGeoExtractor(GeoExtractor):
    """Read GPS position and capture time from image EXIF tags"""

    name = 'image-exif'

    def __init__(self, object_store: LocalObjectStore):
        self.object_store = object_store

    def read_tags(self, unit: MediaUnit) -> dict:
        with self.object_store.open(unit.source_ref) as f:
            try:
                return exifread.process_file(f, details=False)
            except Exception as e:
                raise ExtractionFailure(f"Unreadable EXIF data: {e}") from e

    def parse_timestamp(self, tags: dict) -> datetime | None:
        for tag in EXIF_DATETIME_TAGS:
            if tag in tags:
                raw = str(tags[tag]).strip()
                try:
                    return datetime.strptime(raw, EXIF_DATETIME_FORMAT)
                except ValueError:
                    logger.debug(f"Ignoring malformed {tag}: '{raw}'")
        return None

    def parse_coordinate(self, tags: dict) -> Coordinate:
        required = ('GPS GPSLatitude', 'GPS GPSLatitudeRef', 'GPS GPSLongitude', 'GPS GPSLongitudeRef')
        missing = [tag for tag in required if tag not in tags]
        if missing:
            raise ExtractionFailure(f"Missing GPS tags: {', '.join(missing)}")
        try:
            latitude = dms_to_degrees(tags['GPS GPSLatitude'].values, str(tags['GPS GPSLatitudeRef']))
            longitude = dms_to_degrees(tags['GPS GPSLongitude'].values, str(tags['GPS GPSLongitudeRef']))
        except (TypeError, ValueError, AttributeError) as e:
            raise ExtractionFailure(f"Malformed GPS tags: {e}") from e
        return Coordinate(latitude, longitude)

    def _extract(self, unit: MediaUnit) -> tuple[datetime | None, Coordinate]:
        tags = self.read_tags(unit)
        if not tags:
            raise ExtractionFailure("No EXIF metadata")
        return self.parse_timestamp(tags), self.parse_coordinate(tags)


def parse_iso6709(value: str) -> Coordinate:
    match = ISO6709_PATTERN.match(value.strip())
    if not match:
        raise ExtractionFailure(f"Malformed ISO 6709 location: '{value}'")
    return Coordinate(float(match.group(1)), float(match.group(2)))


class VideoGpsExtractor(GeoExtractor):
    """Read the recorded location and creation time of a 360° video via ffprobe"""

    name = 'video-gps'

    def __init__(
        self,
        object_store: LocalObjectStore,
        ffprobe_binary: str = FFPROBE_BINARY,
        timeout: float = EXTRACTION_TIMEOUT_SECONDS,
    ):
        self.object_store = object_store
        self.ffprobe_binary = ffprobe_binary
        self.timeout = timeout

    def run_ffprobe(self, unit: MediaUnit) -> dict:
        """Run ffprobe and return its JSON output"""
        path = self.object_store.local_path(unit.source_ref)
        cmd = [
            self.ffprobe_binary, '-v', 'quiet',
            '-print_format', 'json',
            '-show_format', '-show_streams',
            str(path),
        ]
        try:
            result = subprocess.run(cmd, capture_output=True, text=True, check=True, timeout=self.timeout)
        except subprocess.TimeoutExpired as e:
            raise ExtractionFailure(f"ffprobe timed out after {self.timeout}s", transient=True) from e
        except FileNotFoundError as e:
            raise ExtractionFailure(f"ffprobe not available: {self.ffprobe_binary}") from e
        except subprocess.CalledProcessError as e:
            raise ExtractionFailure(f"ffprobe failed: {(e.stderr or '').strip() or e.returncode}") from e
        try:
            return json.loads(result.stdout)
        except json.JSONDecodeError as e:
            raise ExtractionFailure(f"Failed to parse ffprobe output: {e}") from e

    def collect_tags(self, metadata: dict) -> dict:
        """Merge format-level and stream-level tags, format tags taking precedence"""
        tags = {}
        for stream in metadata.get('streams', []):
            for key, value in (stream.get('tags') or {}).items():
                tags.setdefault(key, value)
        tags.update(metadata.get('format', {}).get('tags') or {})
        return tags

    def _extract(self, unit: MediaUnit) -> tuple[datetime | None, Coordinate]:
        tags = self.collect_tags(self.run_ffprobe(unit))
        location = next((tags[tag] for tag in VIDEO_LOCATION_TAGS if tags.get(tag)), None)
        if location is None:
            raise ExtractionFailure("No GPS location tag in video metadata")

        captured_at = None
        creation_time = tags.get('com.apple.quicktime.creationdate') or tags.get('creation_time')
        if creation_time:
            try:
                captured_at = ensure_utc(creation_time)
            except (ValueError, OverflowError):
                logger.debug(f"Ignoring malformed creation time '{creation_time}' in {unit.filename}")
        return captured_at, parse_iso6709(location)


class MediaKindExtractor(GeoExtractor):
    """Route each unit to the extractor registered for its media kind"""

    name = 'media-kind'

    def __init__(self, extractors: dict[str, GeoExtractor]):
        self.extractors = extractors

    def extract(self, unit: MediaUnit) -> ExtractionResult:
        extractor = self.extractors.get(unit.media_kind)
        if extractor is None:
            return ExtractionResult.failure(f"No extractor for media kind '{unit.media_kind}'")
        return extractor.extract(unit)


def default_extractor(object_store: LocalObjectStore) -> MediaKindExtractor:
    return MediaKindExtractor(
        {
            'image': ExifGeoExtractor(object_store),
            'video': VideoGpsExtractor(object_store),
        }
    )


class StaticGeoExtractor(GeoExtractor):
    """Deterministic extractor scripted per filename, for tests and dry runs

    ``script`` maps a filename to an ExtractionResult or a list of them; a list
    is consumed one entry per attempt and its last entry repeats. Files not in
    the script fail permanently. ``delay`` holds every call for that many
    seconds, which lets tests observe in-flight states.
    """

    name = 'static'

    def __init__(self, script: dict, delay: float = 0.0):
        self.script = {
            name: list(outcomes) if isinstance(outcomes, list) else [outcomes] for name, outcomes in script.items()
        }
        self.delay = delay
        self.calls: dict[str, int] = {}
        self._lock = threading.Lock()

    def extract(self, unit: MediaUnit) -> ExtractionResult:
        with self._lock:
            attempt = self.calls.get(unit.filename, 0)
            self.calls[unit.filename] = attempt + 1
        if self.delay:
            time.sleep(self.delay)

        outcomes = self.script.get(unit.filename)
        if not outcomes:
            return ExtractionResult.failure(f"No scripted outcome for {unit.filename}")
        return outcomes[min(attempt, len(outcomes) - 1)]
