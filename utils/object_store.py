import hashlib
import logging
import os
import tempfile
from config import OBJECT_STORE_BASE_URL, OBJECT_STORE_DIR
from core.errors import StorageFailure
from pathlib import Path

logger = logging.getLogger(__name__)

CHUNK_SIZE = 1024 * 1024


class LocalObjectStore:
    """Content-addressed blob store on the local filesystem

    Refs are ``<sha256>`` plus the original file suffix. Writing the same
    content twice yields the same ref and a single blob on disk.
    """

    def __init__(self, root_dir: Path = OBJECT_STORE_DIR, base_url: str = OBJECT_STORE_BASE_URL):
        self.root_dir = Path(root_dir)
        self.base_url = base_url.rstrip('/')

    def _blob_path(self, ref: str) -> Path:
        if not ref or '/' in ref or ref.startswith('.'):
            raise StorageFailure(f"Invalid object ref: {ref!r}")
        return self.root_dir / ref[:2] / ref

    def _commit_temp(self, tmp_path: Path, ref: str) -> str:
        target = self._blob_path(ref)
        target.parent.mkdir(parents=True, exist_ok=True)
        if target.exists():
            tmp_path.unlink()
        else:
            os.replace(tmp_path, target)
        return ref

    def put(self, data: bytes, suffix: str = '') -> str:
        """Store raw bytes and return their ref"""
        ref = hashlib.sha256(data).hexdigest() + suffix.lower()
        try:
            self.root_dir.mkdir(parents=True, exist_ok=True)
            with tempfile.NamedTemporaryFile(dir=self.root_dir, delete=False) as tmp:
                tmp.write(data)
            return self._commit_temp(Path(tmp.name), ref)
        except OSError as e:
            raise StorageFailure(f"Failed to store object: {e}") from e

    def put_file(self, path: Path) -> str:
        """Stream a file into the store without loading it into memory"""
        path = Path(path)
        digest = hashlib.sha256()
        try:
            self.root_dir.mkdir(parents=True, exist_ok=True)
            with open(path, 'rb') as src, tempfile.NamedTemporaryFile(dir=self.root_dir, delete=False) as tmp:
                while chunk := src.read(CHUNK_SIZE):
                    digest.update(chunk)
                    tmp.write(chunk)
            ref = digest.hexdigest() + path.suffix.lower()
            stored = self._commit_temp(Path(tmp.name), ref)
            logger.debug(f"Stored {path.name} as {stored}")
            return stored
        except OSError as e:
            raise StorageFailure(f"Failed to store {path.name}: {e}") from e

    def exists(self, ref: str) -> bool:
        return self._blob_path(ref).exists()

    def local_path(self, ref: str) -> Path:
        """Filesystem path for a stored object"""
        blob = self._blob_path(ref)
        if not blob.exists():
            raise StorageFailure(f"Object not found: {ref}")
        return blob

    def open(self, ref: str):
        try:
            return open(self.local_path(ref), 'rb')
        except OSError as e:
            raise StorageFailure(f"Failed to read object {ref}: {e}") from e

    def get_url(self, ref: str) -> str:
        if self.base_url:
            return f"{self.base_url}/{ref[:2]}/{ref}"
        return self._blob_path(ref).resolve().as_uri()
