"""Error taxonomy for the upload and playback paths.

Every error carries the HTTP status it is rendered with and a short machine
readable ``code``; ``app.main`` installs a single handler for ``MediaError``.
"""


class MediaError(Exception):
    status_code: int = 500
    code: str = "media_error"

    def __init__(self, message: str | None = None):
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__


class ValidationError(MediaError):
    status_code = 400
    code = "validation_error"

    def __init__(self, message: str, *, bound: str | None = None):
        super().__init__(message)
        # which business rule was violated, e.g. "min_duration"
        self.bound = bound


class PayloadTooLarge(ValidationError):
    status_code = 413
    code = "payload_too_large"


class DecodeError(MediaError):
    status_code = 422
    code = "decode_error"


class ToolUnavailable(MediaError):
    status_code = 503
    code = "encoder_unavailable"


class TranscodeError(MediaError):
    status_code = 422
    code = "transcode_failed"

    def __init__(self, message: str, *, diagnostic: str = ""):
        super().__init__(message)
        self.diagnostic = diagnostic


class StorageError(MediaError):
    status_code = 500
    code = "storage_error"
    retryable = False


class StorageNotFound(StorageError):
    status_code = 404
    code = "object_not_found"


class TransientStorageError(StorageError):
    status_code = 503
    code = "storage_unavailable"
    retryable = True


class PermanentStorageError(StorageError):
    code = "storage_misconfigured"


class DeletePrefixError(StorageError):
    code = "partial_delete"

    def __init__(self, message: str, *, remaining_keys: list[str]):
        super().__init__(message)
        self.remaining_keys = remaining_keys


class SigningError(MediaError):
    code = "signing_misconfigured"


class NotFound(MediaError):
    status_code = 404
    code = "not_found"


class NotReady(MediaError):
    status_code = 425
    code = "not_ready"


class AccessDenied(MediaError):
    status_code = 403
    code = "access_denied"
