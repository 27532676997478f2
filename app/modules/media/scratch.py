import logging
import os
import secrets
import shutil
import time
from typing import BinaryIO
from app.core import errors

log = logging.getLogger("media.scratch")

CHUNK = 1024 * 1024

class ScratchSpace:
    """Request-scoped working directory; everything under it goes away on cleanup()."""

    def __init__(self, base_dir: str):
        name = f"upload-{int(time.time() * 1000)}-{secrets.token_hex(4)}"
        self.root = os.path.abspath(os.path.join(base_dir, name))
        os.makedirs(self.root)
        self.cleaned = False

    def path(self, *parts: str) -> str:
        return os.path.join(self.root, *parts)

    def save(self, src: BinaryIO, filename: str, max_bytes: int | None = None, stem: str = "source") -> str:
        # only the extension of the client filename is kept
        ext = os.path.splitext(os.path.basename(filename or ""))[1].lower()[:10]
        dest = self.path(f"{stem}{ext}")
        written = 0
        with open(dest, "wb") as out:
            while True:
                chunk = src.read(CHUNK)
                if not chunk:
                    break
                written += len(chunk)
                if max_bytes is not None and written > max_bytes:
                    raise errors.PayloadTooLarge(
                        f"Upload exceeds {max_bytes // (1024 * 1024)}MB limit", bound="max_upload_bytes"
                    )
                out.write(chunk)
        if written == 0:
            raise errors.ValidationError("Uploaded file is empty", bound="required_file")
        return dest

    def cleanup(self) -> None:
        if self.cleaned:
            return
        try:
            shutil.rmtree(self.root)
        except FileNotFoundError:
            pass
        except OSError:
            # never mask the error that sent us here
            log.exception(f"Failed to remove scratch dir {self.root}")
            return
        self.cleaned = True
