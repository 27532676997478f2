from dataclasses import dataclass
from typing import BinaryIO, Iterator, Literal, Protocol, runtime_checkable

Visibility = Literal["private", "public"]

@dataclass
class StoredObject:
    key: str
    body: Iterator[bytes]
    content_type: str
    content_length: int | None = None

@runtime_checkable
class ObjectStoragePort(Protocol):
    """Blob store the media pipeline writes HLS output into.

    Implementations are shared by every request in the process and must be
    safe to call from several threads at once. Errors are raised as
    ``app.core.errors.StorageError`` subclasses.
    """

    def put(self, key: str, data: bytes | BinaryIO, content_type: str, visibility: Visibility = "private") -> None: ...

    def get(self, key: str) -> bytes: ...

    def open(self, key: str, chunk_size: int = 64 * 1024) -> StoredObject: ...

    def delete(self, key: str) -> None: ...

    def delete_prefix(self, prefix: str) -> list[str]: ...

    def exists(self, key: str) -> bool: ...

    def list_keys(self, prefix: str) -> list[str]: ...

    def presign(self, key: str, ttl_seconds: int) -> str: ...

    def check(self) -> None: ...
