class LedgerError(Exception):
    status_code = 500
    detail = "Priority match operation failed"

    def __init__(self, detail: str | None = None):
        super().__init__(detail or self.detail)
        self.detail = detail or self.detail


class NotAuthenticated(LedgerError):
    status_code = 401
    detail = "Authentication required"


class InvalidPair(LedgerError):
    status_code = 400
    detail = "Profiles cannot be matched"


class InvalidPriority(LedgerError):
    status_code = 400
    detail = "Priority must be one of high, medium, low or none"


class UnknownProfile(InvalidPair):
    status_code = 404
    detail = "Profile not found"


class QuotaExceeded(LedgerError):
    status_code = 409
    detail = "You can only have up to 5 high priority matches"


class MutationInFlight(LedgerError):
    status_code = 409
    detail = "An update for this profile is already in progress"


class Conflict(LedgerError):
    """Uniqueness violation outside the upsert path. Not retryable."""

    status_code = 500
    detail = "Priority match uniqueness violated"


class StoreUnavailable(LedgerError):
    status_code = 503
    detail = "Match store unavailable"
