import logging
import uuid
from dataclasses import dataclass
from pathlib import Path

from errors import DependencyFailure


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StoredObject:
    url: str
    key: str


class ObjectStorage:
    """Where profile pictures live. ``key`` is what ``delete`` needs later."""

    def put(self, content: bytes, *, folder: str, filename: str) -> StoredObject:
        raise NotImplementedError

    def delete(self, key: str) -> bool:
        raise NotImplementedError


class LocalObjectStorage(ObjectStorage):
    def __init__(self, root: Path, url_prefix: str = "/uploads") -> None:
        self.root = Path(root).resolve()
        self.url_prefix = url_prefix.rstrip("/")

    def _path(self, key: str) -> Path:
        path = (self.root / key).resolve()
        if self.root not in path.parents:
            raise DependencyFailure(f"Storage key outside upload root: {key}")
        return path

    def put(self, content: bytes, *, folder: str, filename: str) -> StoredObject:
        suffix = Path(filename).suffix.lower()[:10]
        key = f"{folder}/{uuid.uuid4().hex}{suffix}"
        path = self._path(key)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(content)
        except OSError as exc:
            raise DependencyFailure(f"Could not store file: {exc}") from exc
        logger.info(f"storage_put: key={key} bytes={len(content)}")
        return StoredObject(url=f"{self.url_prefix}/{key}", key=key)

    def delete(self, key: str) -> bool:
        path = self._path(key)
        if not path.exists():
            return False
        try:
            path.unlink()
        except OSError as exc:
            raise DependencyFailure(f"Could not delete file: {exc}") from exc
        logger.info(f"storage_delete: key={key}")
        return True
