import logging
import mimetypes
import time
from config import (
    DEFAULT_PROVISIONAL_LATITUDE,
    DEFAULT_PROVISIONAL_LONGITUDE,
    MAX_IMAGE_BYTES,
    MAX_VIDEO_BYTES,
    STORAGE_MAX_ATTEMPTS,
    UNIT_PENDING,
)
from core.errors import StorageFailure, ValidationError
from core.models import Coordinate, MediaDescriptor, MediaUnit, Tour, ensure_utc, new_id
from core.store import PlacementStore
from dataclasses import dataclass
from utils.object_store import LocalObjectStore

logger = logging.getLogger(__name__)


@dataclass
class Accepted:
    unit: MediaUnit
    accepted = True


@dataclass
class Rejected:
    filename: str
    reason: str
    accepted = False


class MediaValidator:
    """Screen submitted files and register the ones worth extracting"""

    def __init__(
        self,
        store: PlacementStore,
        object_store: LocalObjectStore,
        max_image_bytes: int = MAX_IMAGE_BYTES,
        max_video_bytes: int = MAX_VIDEO_BYTES,
        storage_max_attempts: int = STORAGE_MAX_ATTEMPTS,
        provisional_coordinate: Coordinate = Coordinate(DEFAULT_PROVISIONAL_LATITUDE, DEFAULT_PROVISIONAL_LONGITUDE),
    ):
        self.store = store
        self.object_store = object_store
        self.max_bytes = {'image': max_image_bytes, 'video': max_video_bytes}
        self.storage_max_attempts = max(1, storage_max_attempts)
        self.provisional_coordinate = provisional_coordinate

    def detect_media_kind(self, descriptor: MediaDescriptor) -> str | None:
        """Media kind from the declared content type, falling back to the file extension"""
        content_type = descriptor.content_type
        if not content_type:
            content_type, _ = mimetypes.guess_type(descriptor.filename)
        if not content_type:
            return None
        major = content_type.split('/', 1)[0].strip().lower()
        return major if major in self.max_bytes else None

    def check(self, descriptor: MediaDescriptor) -> str:
        """Run all input checks and return the media kind; raises ValidationError"""
        media_kind = self.detect_media_kind(descriptor)
        if media_kind is None:
            raise ValidationError(f"Unsupported media type: {descriptor.content_type or descriptor.filename}")

        path = descriptor.path
        if not path.exists():
            raise ValidationError(f"File not found: {path}")
        if not path.is_file():
            raise ValidationError(f"Not a regular file: {path}")

        size = path.stat().st_size
        if size == 0:
            raise ValidationError("File is empty")
        if size > self.max_bytes[media_kind]:
            raise ValidationError(f"File too large: {size} bytes (limit {self.max_bytes[media_kind]} for {media_kind})")
        if descriptor.size is not None and descriptor.size != size:
            raise ValidationError(f"Declared size {descriptor.size} does not match actual size {size}")

        try:
            with open(path, 'rb') as f:
                f.read(1)
        except OSError as e:
            raise ValidationError(f"File is not readable: {e}") from e

        return media_kind

    def _store_blob(self, descriptor: MediaDescriptor) -> str:
        """Upload to the object store, retrying transient storage failures"""
        for attempt in range(1, self.storage_max_attempts + 1):
            try:
                return self.object_store.put_file(descriptor.path)
            except StorageFailure as e:
                if attempt == self.storage_max_attempts:
                    raise
                delay = 0.1 * 2 ** (attempt - 1)
                logger.warning(f"Storing {descriptor.filename} failed (attempt {attempt}): {e} - retrying in {delay}s")
                time.sleep(delay)

    def raw_timestamp(self, descriptor: MediaDescriptor):
        """Client-declared last-modified time, else the file's mtime"""
        try:
            parsed = ensure_utc(descriptor.last_modified)
        except (ValueError, OverflowError):
            logger.warning(f"Ignoring unparseable last_modified '{descriptor.last_modified}' for {descriptor.filename}")
            parsed = None
        if parsed is None:
            parsed = ensure_utc(descriptor.path.stat().st_mtime)
        return parsed

    def validate(self, tour: Tour, job_id: str, descriptor: MediaDescriptor, position: int) -> Accepted | Rejected:
        """Accept a file into the tour as a pending unit with a placeholder, or reject it"""
        try:
            media_kind = self.check(descriptor)
            source_ref = self._store_blob(descriptor)
        except (ValidationError, StorageFailure) as e:
            logger.warning(f"Rejected {descriptor.filename}: {e}")
            return Rejected(filename=descriptor.filename, reason=str(e))

        unit = MediaUnit(
            id=new_id(),
            tour_id=tour.id,
            position=position,
            filename=descriptor.filename,
            media_kind=media_kind,
            source_ref=source_ref,
            raw_timestamp=self.raw_timestamp(descriptor),
            status=UNIT_PENDING,
        )
        self.store.register_unit(unit, job_id, self.provisional_coordinate)
        logger.debug(f"Accepted {descriptor.filename} as unit {unit.id} ({media_kind})")
        return Accepted(unit=unit)
