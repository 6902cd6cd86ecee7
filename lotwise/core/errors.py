from __future__ import annotations


class LotwiseError(Exception):
    code = "error"


class NoDataError(LotwiseError):
    """Nothing to analyze. Distinct from a failed analysis."""

    code = "no_data"


class NoPositionsError(NoDataError):
    code = "no_positions"


class NoTransactionsError(NoDataError):
    code = "no_transactions"


class NoHoldingsError(NoDataError):
    code = "no_holdings"


class InvalidArgumentsError(LotwiseError, ValueError):
    """Raised for malformed tax years, symbol ids, rates or amounts."""

    code = "invalid_arguments"


class NotFoundError(LotwiseError, LookupError):
    code = "not_found"
