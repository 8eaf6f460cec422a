class KMemError(Exception):
    """Base error. ``code`` travels in the API envelope, ``status_code`` is the HTTP status."""

    code = "internal_error"
    status_code = 500

    def __init__(self, message: str = "", status_code: int | None = None) -> None:
        super().__init__(message or self.code)
        self.message = message or self.code
        if status_code is not None:
            self.status_code = status_code


class InvalidRequest(KMemError):
    code = "invalid_request"
    status_code = 400


class MalformedCandidate(KMemError):
    code = "malformed_candidate"
    status_code = 400

    def __init__(self, message: str = "", position: int | None = None) -> None:
        if position is not None:
            message = f"candidate #{position}: {message}"
        super().__init__(message)
        self.position = position


class ValidationFailure(KMemError):
    code = "validation_failure"
    status_code = 422


class UnsupportedPackageVersion(ValidationFailure):
    code = "unsupported_package_version"


class MemoryNotFound(KMemError):
    code = "not_found"
    status_code = 404


class PreviewNotFound(KMemError):
    code = "preview_not_found"
    status_code = 404


class HandleAlreadyConsumed(KMemError):
    code = "handle_already_consumed"
    status_code = 409


class PreviewStale(KMemError):
    code = "preview_stale"
    status_code = 409


class NetworkFailure(KMemError):
    code = "network_failure"
    status_code = 503


class APIError(KMemError):
    """Server-reported failure whose code has no dedicated class."""

    def __init__(self, message: str = "", code: str | None = None, status_code: int | None = None) -> None:
        super().__init__(message, status_code=status_code)
        if code:
            self.code = code


_BY_CODE: dict[str, type[KMemError]] = {
    cls.code: cls
    for cls in (
        InvalidRequest,
        MalformedCandidate,
        ValidationFailure,
        UnsupportedPackageVersion,
        MemoryNotFound,
        PreviewNotFound,
        HandleAlreadyConsumed,
        PreviewStale,
        NetworkFailure,
    )
}


def error_from_code(code: str | None, message: str, status_code: int | None = None) -> KMemError:
    cls = _BY_CODE.get(code or "")
    if cls is None:
        return APIError(message, code=code, status_code=status_code)
    err = cls(message)
    if status_code is not None:
        err.status_code = status_code
    return err
