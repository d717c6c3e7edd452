from __future__ import annotations

# Author: Daniel Neugent


class PhotoError(Exception):
    """Failure that the HTTP layer turns into a small JSON error body."""

    code = "error"
    status = 500

    def __init__(self, detail: str | None = None) -> None:
        super().__init__(detail or self.code)
        self.detail = detail or self.code

    def payload(self) -> dict[str, str]:
        return {"error": self.code}


class BadRequest(PhotoError):
    code = "bad_request"
    status = 400


class MissingCredentials(PhotoError):
    code = "missing"
    status = 400


class InvalidCredentials(PhotoError):
    code = "invalid"
    status = 401


class AuthRequired(PhotoError):
    code = "auth_required"
    status = 401


class Forbidden(PhotoError):
    code = "forbidden"
    status = 403


class ForbiddenAnonymous(PhotoError):
    """Photos without an owner cannot be deleted by anybody."""

    code = "forbidden_anonymous"
    status = 403


class BadScope(PhotoError):
    code = "bad_scope"
    status = 400


class NoFile(PhotoError):
    code = "no_file"
    status = 400


class PayloadTooLarge(PhotoError):
    code = "too_large"
    status = 413


class NotFound(PhotoError):
    code = "not_found"
    status = 404


class WriteFail(PhotoError):
    code = "write_fail"
    status = 500


class MetaWriteFailed(PhotoError):
    code = "meta_write_failed"
    status = 500


class DbFailed(PhotoError):
    code = "db"
    status = 500


class DbDeleteFailed(PhotoError):
    code = "db_delete_failed"
    status = 500


class InternalError(PhotoError):
    code = "internal"
    status = 500
