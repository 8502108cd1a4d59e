from __future__ import annotations

import mimetypes
import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from urllib.parse import quote

from jose import JWTError, jwt

from crm_rocket.core.config import get_settings

_SIGNED_URL_AUDIENCE = "storage"
_UNSAFE_NAME_RE = re.compile(r"[^A-Za-z0-9._ -]+")


class StorageError(Exception):
    """Base error for bucket operations."""


class ObjectExistsError(StorageError):
    pass


class ObjectNotFoundError(StorageError):
    pass


class InvalidSignatureError(StorageError):
    pass


def safe_object_name(filename: str | None) -> str:
    cleaned = _UNSAFE_NAME_RE.sub("_", Path(filename or "").name).strip()
    return cleaned or "file.bin"


@dataclass
class StoredObject:
    bucket: str
    path: str
    size: int
    content_type: str


class DocumentStorage:
    """Filesystem-backed bucket store with signed download links."""

    def __init__(self, bucket: str, root: str | Path | None = None) -> None:
        self.bucket = bucket
        self._root = Path(root) if root is not None else None

    @property
    def base_dir(self) -> Path:
        root = self._root if self._root is not None else Path(get_settings().storage_root)
        base = root / self.bucket
        base.mkdir(parents=True, exist_ok=True)
        return base

    def _resolve(self, path: str) -> Path:
        base = self.base_dir.resolve()
        target = (base / path).resolve()
        if base != target and base not in target.parents:
            raise StorageError(f"Invalid object path: {path}")
        return target

    def upload(self, path: str, content: bytes, content_type: str | None = None, *, upsert: bool = False) -> StoredObject:
        target = self._resolve(path)
        if target.exists() and not upsert:
            raise ObjectExistsError(f"Object already exists: {path}")
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(content)
        resolved_type = content_type or mimetypes.guess_type(target.name)[0] or "application/octet-stream"
        return StoredObject(bucket=self.bucket, path=path, size=len(content), content_type=resolved_type)

    def read(self, path: str) -> bytes:
        target = self._resolve(path)
        if not target.is_file():
            raise ObjectNotFoundError(f"Object not found: {path}")
        return target.read_bytes()

    def exists(self, path: str) -> bool:
        return self._resolve(path).is_file()

    def remove(self, paths: list[str]) -> list[str]:
        removed: list[str] = []
        for path in paths:
            target = self._resolve(path)
            if not target.is_file():
                raise ObjectNotFoundError(f"Object not found: {path}")
            target.unlink()
            removed.append(path)
        return removed

    def create_signed_url(self, path: str, expires_in: int | None = None) -> str:
        settings = get_settings()
        ttl = expires_in if expires_in is not None else settings.signed_url_expires_seconds
        token = jwt.encode(
            {
                "aud": _SIGNED_URL_AUDIENCE,
                "bucket": self.bucket,
                "path": path,
                "exp": datetime.now(timezone.utc) + timedelta(seconds=ttl),
            },
            settings.jwt_secret,
            algorithm=settings.jwt_algorithm,
        )
        return f"/api/storage/{quote(self.bucket)}?token={token}"

    def resolve_signed_token(self, token: str) -> str:
        settings = get_settings()
        try:
            claims = jwt.decode(
                token,
                settings.jwt_secret,
                algorithms=[settings.jwt_algorithm],
                audience=_SIGNED_URL_AUDIENCE,
            )
        except JWTError as exc:
            raise InvalidSignatureError(str(exc)) from exc
        if claims.get("bucket") != self.bucket or not isinstance(claims.get("path"), str):
            raise InvalidSignatureError("Signed URL does not match bucket")
        return claims["path"]


_buckets: dict[str, DocumentStorage] = {}


def get_bucket(name: str) -> DocumentStorage:
    bucket = _buckets.get(name)
    if bucket is None:
        bucket = DocumentStorage(name)
        _buckets[name] = bucket
    return bucket
