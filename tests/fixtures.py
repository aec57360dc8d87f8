"""Test data fixtures for geotour tests"""

from core.extractors import ExtractionResult
from core.models import Coordinate, MediaDescriptor
from datetime import UTC, datetime, timedelta
from pathlib import Path

BASE_TIME = datetime(2024, 5, 1, 9, 0, 0, tzinfo=UTC)


class TestDataFixtures:
    """Centralized test data fixtures"""

    @staticmethod
    def create_media_file(directory: Path, filename: str, payload: bytes | None = None) -> Path:
        """Write a small fake media file; distinct names get distinct content"""
        directory.mkdir(parents=True, exist_ok=True)
        path = directory / filename
        path.write_bytes(payload if payload is not None else f"fake-media:{filename}".encode())
        return path

    @classmethod
    def create_descriptor(cls, directory: Path, filename: str, content_type: str | None = None, **kwargs):
        """Create a media file on disk and a descriptor pointing at it"""
        path = cls.create_media_file(directory, filename, kwargs.pop('payload', None))
        if content_type is None:
            content_type = 'video/mp4' if filename.endswith('.mp4') else 'image/jpeg'
        return MediaDescriptor(filename=filename, path=path, content_type=content_type, **kwargs)

    @classmethod
    def create_descriptors(cls, directory: Path, filenames: list[str]) -> list[MediaDescriptor]:
        return [cls.create_descriptor(directory, name) for name in filenames]

    @staticmethod
    def located(minutes: int, latitude: float, longitude: float) -> ExtractionResult:
        """Successful extraction captured ``minutes`` after the base time"""
        return ExtractionResult.success(BASE_TIME + timedelta(minutes=minutes), Coordinate(latitude, longitude))

    @staticmethod
    def no_gps() -> ExtractionResult:
        return ExtractionResult.failure("Missing GPS tags: GPS GPSLatitude")

    @staticmethod
    def flaky(reason: str = "Storage error: connection reset") -> ExtractionResult:
        return ExtractionResult.failure(reason, transient=True)

    @classmethod
    def get_city_walk_script(cls) -> dict:
        """Three panoramas around Mogadishu, submitted out of capture order"""
        return {
            'lido.jpg': cls.located(20, 2.0580, 45.3570),
            'market.jpg': cls.located(0, 2.0371, 45.3438),
            'lighthouse.jpg': cls.located(10, 2.0329, 45.3468),
        }
