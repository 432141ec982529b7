"""Exception taxonomy shared by the upload pipeline, workers and routers."""


class MediaPipelineError(Exception):
    code = "media_error"
    status_code = 500
    public_message = "The media request could not be completed."

    def __init__(self, message: str | None = None, *, code: str | None = None):
        super().__init__(message or self.public_message)
        if code is not None:
            self.code = code

    def to_detail(self) -> dict:
        # Only the stable code and a generic message ever reach the client.
        return {"code": self.code, "message": self.public_message}


class ValidationError(MediaPipelineError):
    code = "upload_invalid"
    status_code = 422
    public_message = "The uploaded file is not acceptable."

    def __init__(self, message: str | None = None, *, code: str | None = None, reason: str | None = None):
        super().__init__(message, code=code)
        self.reason = reason


class ScanRejection(ValidationError):
    code = "upload_rejected"
    public_message = "The uploaded file was rejected by the content scanner."

    def __init__(self, scanner: str, reason: str = "infected", message: str | None = None):
        super().__init__(message or f"{scanner} rejected upload ({reason})")
        self.scanner = scanner
        self.reason = reason


class ScanFailed(MediaPipelineError):
    code = "scan_unavailable"
    status_code = 503
    public_message = "File scanning is temporarily unavailable."
    retryable = True


class AntivirusError(ScanFailed):
    def __init__(self, scanner: str, reason: str, message: str | None = None):
        super().__init__(message or f"{scanner} failed: {reason}")
        self.scanner = scanner
        self.reason = reason


class AntivirusInfraError(AntivirusError):
    retryable = True


class AntivirusConfigError(AntivirusError):
    code = "scan_misconfigured"
    retryable = False


class CircuitOpenError(ScanFailed):
    def __init__(self, scanner: str, failures: int):
        super().__init__(f"{scanner} circuit open after {failures} failures")
        self.scanner = scanner
        self.failures = failures


class PathSafetyError(MediaPipelineError):
    code = "invalid_path"
    status_code = 400
    public_message = "The requested path is not allowed."

    def __init__(self, path: str, reason: str):
        super().__init__(f"rejected path ({reason})")
        self.path = path
        self.reason = reason


class QuarantineIntegrityError(MediaPipelineError):
    code = "quarantine_integrity"

    def __init__(self, message: str, reason: str = "integrity"):
        super().__init__(message)
        self.reason = reason


class QuarantineStateError(QuarantineIntegrityError):
    def __init__(self, message: str):
        super().__init__(message, reason="illegal_transition")


class OwnerNotFound(MediaPipelineError):
    code = "owner_not_found"
    status_code = 404
    public_message = "The media owner does not exist."


class StorageError(MediaPipelineError):
    code = "storage_error"
