class LedgerError(Exception):
    """Base class for rent ledger errors. `kind` is what API callers see."""
    kind = "ledger_error"
    http_status = 400

    def __init__(self, message: str = "", **context):
        super().__init__(message or self.kind)
        self.message = message or self.kind
        self.context = context


class InvalidCoverage(LedgerError):
    kind = "invalid_coverage"
    http_status = 422


class InvalidRange(LedgerError):
    kind = "invalid_range"
    http_status = 422


class InvalidAmount(LedgerError):
    kind = "invalid_amount"
    http_status = 422


class UnsupportedCurrency(LedgerError):
    kind = "unsupported_currency"
    http_status = 422


class InvalidTransition(LedgerError):
    kind = "invalid_transition"
    http_status = 409


class StaleWrite(LedgerError):
    kind = "stale_write"
    http_status = 409


class NotFound(LedgerError):
    kind = "not_found"
    http_status = 404
