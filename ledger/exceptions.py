class LedgerServiceError(Exception):
    status_code = 400


class NotFound(LedgerServiceError):
    status_code = 404


class UserNotFound(NotFound):
    pass


class WithdrawalNotFound(NotFound):
    pass


class MissionNotFound(NotFound):
    pass


class InsufficientBalance(LedgerServiceError):
    status_code = 400


class InvalidState(LedgerServiceError):
    status_code = 409


class DailyLimitReached(LedgerServiceError):
    status_code = 429


class PolicyViolation(LedgerServiceError):
    status_code = 400


class ValidationFailed(LedgerServiceError):
    status_code = 400


class SignatureInvalid(LedgerServiceError):
    status_code = 403


class StorageUnavailable(LedgerServiceError):
    """Persistence failed; the caller should retry. Nothing was written."""
    status_code = 503


class PayoutGatewayFailure(LedgerServiceError):
    """The payout provider refused or timed out. The withdrawal stays pending."""
    status_code = 502
