import hashlib
import hmac
import logging
import os
import shutil
import tempfile
import time
from typing import BinaryIO, Iterator
from urllib.parse import quote, urlencode
from app.core import errors
from app.modules.media.keys import content_type_for
from app.platform.ports.object_storage import ObjectStoragePort, StoredObject, Visibility

log = logging.getLogger("storage.local")

class LocalFilesystemStorage(ObjectStoragePort):
    """Object store rooted at a directory, served through a signed static mapping.

    The filesystem has no ACLs, so ``visibility`` is accepted for interface
    parity and every read through the mapping needs a presigned URL.
    """

    def __init__(self, root: str, base_url: str, signing_secret: str):
        self.root = os.path.abspath(root)
        self.base_url = base_url.rstrip("/")
        self._secret = signing_secret.encode()
        os.makedirs(self.root, exist_ok=True)

    def _path(self, key: str) -> str:
        safe = key.strip("/")
        path = os.path.abspath(os.path.join(self.root, safe))
        if not safe or os.path.commonpath([self.root, path]) != self.root:
            raise errors.ValidationError(f"Invalid storage key: {key!r}")
        return path

    def _key(self, path: str) -> str:
        return os.path.relpath(path, self.root).replace(os.sep, "/")

    def put(self, key: str, data: bytes | BinaryIO, content_type: str, visibility: Visibility = "private") -> None:
        path = self._path(key)
        try:
            os.makedirs(os.path.dirname(path), exist_ok=True)
            # write next to the target and swap in, so readers never see a torn object
            fd, tmp = tempfile.mkstemp(dir=os.path.dirname(path), prefix=".tmp-")
            try:
                with os.fdopen(fd, "wb") as f:
                    if isinstance(data, (bytes, bytearray)):
                        f.write(data)
                    else:
                        shutil.copyfileobj(data, f)
                os.replace(tmp, path)
            except BaseException:
                if os.path.exists(tmp):
                    os.remove(tmp)
                raise
        except PermissionError as e:
            raise errors.PermanentStorageError(f"Local write denied for {key}: {e}") from e
        except OSError as e:
            raise errors.TransientStorageError(f"Local write failed for {key}: {e}") from e
        log.debug(f"PUT {key} ({content_type}, {visibility})")

    def get(self, key: str) -> bytes:
        path = self._path(key)
        try:
            with open(path, "rb") as f:
                return f.read()
        except FileNotFoundError as e:
            raise errors.StorageNotFound(f"Object not found: {key}") from e
        except OSError as e:
            raise errors.TransientStorageError(f"Local read failed for {key}: {e}") from e

    def open(self, key: str, chunk_size: int = 64 * 1024) -> StoredObject:
        path = self._path(key)
        if not os.path.isfile(path):
            raise errors.StorageNotFound(f"Object not found: {key}")

        def body() -> Iterator[bytes]:
            with open(path, "rb") as f:
                for chunk in iter(lambda: f.read(chunk_size), b""):
                    yield chunk

        return StoredObject(
            key=key,
            body=body(),
            content_type=content_type_for(key),
            content_length=os.path.getsize(path),
        )

    def delete(self, key: str) -> None:
        path = self._path(key)
        try:
            if os.path.exists(path):
                os.remove(path)
        except OSError as e:
            raise errors.TransientStorageError(f"Local delete failed for {key}: {e}") from e

    def delete_prefix(self, prefix: str) -> list[str]:
        deleted, remaining = [], []
        for key in self.list_keys(prefix):
            try:
                self.delete(key)
                deleted.append(key)
            except errors.StorageError:
                log.exception(f"Failed to delete {key}")
                remaining.append(key)
        if remaining:
            raise errors.DeletePrefixError(
                f"{len(remaining)} object(s) left under {prefix}", remaining_keys=remaining
            )
        self._prune_dirs(prefix)
        return deleted

    def _prune_dirs(self, prefix: str) -> None:
        top = self._path(prefix)
        if not os.path.isdir(top):
            return
        for dirpath, _dirs, _files in os.walk(top, topdown=False):
            try:
                os.rmdir(dirpath)
            except OSError:
                pass  # not empty

    def exists(self, key: str) -> bool:
        return os.path.isfile(self._path(key))

    def list_keys(self, prefix: str) -> list[str]:
        prefix = prefix.lstrip("/")
        start = self._path(prefix.rsplit("/", 1)[0]) if "/" in prefix else self.root
        keys = []
        for dirpath, _dirs, files in os.walk(start):
            for name in files:
                if name.startswith(".tmp-"):
                    continue
                key = self._key(os.path.join(dirpath, name))
                if key.startswith(prefix):
                    keys.append(key)
        return sorted(keys)

    def _signature(self, key: str, expires: int) -> str:
        msg = f"{key.strip('/')}\n{expires}".encode()
        return hmac.new(self._secret, msg, hashlib.sha256).hexdigest()

    def presign(self, key: str, ttl_seconds: int) -> str:
        self._path(key)
        expires = int(time.time()) + int(ttl_seconds)
        query = urlencode({"expires": expires, "signature": self._signature(key, expires)})
        return f"{self.base_url}/{quote(key.strip('/'))}?{query}"

    def verify(self, key: str, expires: int, signature: str, now: float | None = None) -> None:
        """Check a presigned URL handed back to the static mapping."""
        if expires < (now if now is not None else time.time()):
            raise errors.AccessDenied("Signed URL has expired")
        if not hmac.compare_digest(self._signature(key, expires), signature or ""):
            raise errors.AccessDenied("Invalid signature")

    def check(self) -> None:
        if not os.access(self.root, os.W_OK):
            raise errors.PermanentStorageError(f"Storage root not writable: {self.root}")
