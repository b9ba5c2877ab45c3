"""Error taxonomy for the rank-up pipeline and its intake layer.

Each error carries a stable ``code`` reported to clients, the HTTP status the
API maps it to, and whether retrying the whole attempt can help.
"""

from typing import Any, Dict


class RankupError(Exception):
    """Base class for all reportable rank-up failures."""

    code = "rankup_error"
    status_code = 500
    retryable = False

    def __init__(self, message: str = ""):
        super().__init__(message or self.code)
        self.message = message or self.code

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": "error",
            "code": self.code,
            "error": self.message,
            "retryable": self.retryable,
        }


# Collection Verifier
class NotInCollection(RankupError):
    code = "not_in_collection"
    status_code = 403


# Off-chain Metadata Store
class FetchFailed(RankupError):
    code = "fetch_failed"
    status_code = 502
    retryable = True


class WriteFailed(RankupError):
    code = "write_failed"
    status_code = 500
    retryable = True


class NoRankAttribute(RankupError):
    code = "no_rank_attribute"
    status_code = 422


# Rank Table / Progression Engine
class InvalidRank(RankupError):
    code = "invalid_rank"
    status_code = 422


# Publication Pipeline
class UploadFailed(RankupError):
    code = "upload_failed"
    status_code = 502
    retryable = True


class CommitFailed(RankupError):
    """On-chain URI update failed.

    The uploaded document may already be live; retry through reconciliation,
    which re-commits the stored CID instead of uploading again.
    """

    code = "commit_failed"
    status_code = 502


class KeystoreError(RankupError):
    code = "keystore_error"
    status_code = 500


# Payment confirmation
class ConfirmationTimeout(RankupError):
    code = "confirmation_timeout"
    status_code = 504
    retryable = True


class PaymentNotConfirmed(RankupError):
    code = "payment_not_confirmed"
    status_code = 402


class LedgerUnavailable(RankupError):
    code = "ledger_unavailable"
    status_code = 503
    retryable = True


# Intake
class CooldownActive(RankupError):
    code = "cooldown_active"
    status_code = 400


class RankupInProgress(RankupError):
    code = "rankup_in_progress"
    status_code = 409
    retryable = True


class PublicationPending(RankupError):
    """An earlier advance is uploaded but its on-chain commit has not landed yet."""

    code = "publication_pending"
    status_code = 409
    retryable = True


class TaskNotFound(RankupError):
    code = "task_not_found"
    status_code = 404


class PaymentNotFound(RankupError):
    code = "payment_not_found"
    status_code = 404


class TaskAlreadyFinalized(RankupError):
    code = "task_already_finalized"
    status_code = 409


class AuthenticationFailed(RankupError):
    code = "authentication_failed"
    status_code = 403


ERROR_STATUS = {cls.code: cls.status_code for cls in RankupError.__subclasses__()}


def status_for_code(code: str) -> int:
    return ERROR_STATUS.get(code, 500)
