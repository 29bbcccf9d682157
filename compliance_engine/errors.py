"""
Exception hierarchy for the compliance engine.

Filter errors describe input the caller can fix; store errors describe a
failure of the backing record store and map to server-side failures.
"""


class ComplianceEngineError(Exception):
    """Base class for all compliance engine errors."""


class FilterError(ComplianceEngineError):
    """Raised when a label filter cannot be used as given."""


class FilterDecodeError(FilterError):
    """Raised when a filter document does not have the expected shape."""


class UnsupportedOperatorError(FilterError):
    """Raised in strict mode when a condition or query operator is unknown.

    Attributes:
        operator: The offending operator token
        kind: Either 'condition' or 'query'
    """

    def __init__(self, operator: str, kind: str):
        self.operator = operator
        self.kind = kind
        super().__init__(f"Unsupported {kind} operator: {operator!r}")


class StoreError(ComplianceEngineError):
    """Base class for failures of the record store."""


class StoreUnavailableError(StoreError):
    """Raised when the record store cannot be reached."""


class QueryFailedError(StoreError):
    """Raised when the record store rejects or fails to run a query."""
