from typing import Any


class VoteXError(Exception):
    """Base for every error rendered to API callers.

    ``status_code`` and ``code`` are stable; ``extra`` is merged into the
    JSON error body.
    """

    status_code = 500
    code = "INTERNAL_ERROR"

    def __init__(self, message: str, **extra: Any) -> None:
        super().__init__(message)
        self.message = message
        self.extra = extra

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {"error": self.message, "code": self.code}
        body.update(self.extra)
        return body


class BadRequest(VoteXError):
    status_code = 400
    code = "BAD_REQUEST"


class NotFound(VoteXError):
    status_code = 404
    code = "NOT_FOUND"


class InvalidState(VoteXError):
    status_code = 409
    code = "INVALID_STATE"


class InvalidTransition(InvalidState):
    code = "INVALID_TRANSITION"


class Conflict(VoteXError):
    status_code = 409
    code = "CONFLICT"


class AlreadyVoted(Conflict):
    code = "ALREADY_VOTED"


class Unauthorized(VoteXError):
    status_code = 401
    code = "UNAUTHORIZED"

    def __init__(self, message: str = "Unauthorized", **extra: Any) -> None:
        super().__init__(message, **extra)


class Forbidden(VoteXError):
    status_code = 403
    code = "FORBIDDEN"


class InvalidChallenge(VoteXError):
    status_code = 400
    code = "INVALID_CHALLENGE"


class SignatureMismatch(VoteXError):
    status_code = 401
    code = "SIGNATURE_MISMATCH"


class LedgerError(VoteXError):
    status_code = 502
    code = "LEDGER_ERROR"


class LedgerSubmissionFailed(LedgerError):
    code = "LEDGER_SUBMISSION_FAILED"


class LedgerTimeout(LedgerError):
    status_code = 504
    code = "LEDGER_TIMEOUT"


class AlreadyWhitelisted(LedgerError):
    """Benign outcome of a repeated global whitelist request."""

    status_code = 200
    code = "ALREADY_WHITELISTED"


class LedgerUnavailable(LedgerError):
    status_code = 503
    code = "LEDGER_UNAVAILABLE"


class VoteRecordingFailed(VoteXError):
    """The ledger accepted the vote but the off-chain audit trail was not written."""

    status_code = 500
    code = "OFFCHAIN_LOG_FAILED"


class TooManyRequests(VoteXError):
    status_code = 429
    code = "TOO_MANY_REQUESTS"


class OffchainSyncFailed(VoteXError):
    """A ledger transition succeeded but the matching off-chain update did not."""

    status_code = 500
    code = "OFFCHAIN_SYNC_FAILED"
