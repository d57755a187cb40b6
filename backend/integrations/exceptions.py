"""Typed exception hierarchy for bank-data aggregator errors.

Lets callers tell credential problems apart from transient network
failures and from malformed payloads.
"""


class AggregatorError(Exception):
    """Base exception for all aggregator-related errors.

    Carries the aggregator name so log lines and API errors can say which
    upstream failed.
    """

    def __init__(self, message: str, aggregator_name: str = "GoCardless"):
        self.aggregator_name = aggregator_name
        super().__init__(message)

    @property
    def retriable(self) -> bool:
        return False


class AggregatorAuthError(AggregatorError):
    """Credentials missing, expired, or rejected (HTTP 401/403)."""

    pass


class AggregatorConnectionError(AggregatorError):
    """Network failures: timeouts, DNS resolution, connection refused.

    Retriable by default.
    """

    def __init__(
        self,
        message: str,
        aggregator_name: str = "GoCardless",
        retriable: bool = True,
    ):
        self._retriable = retriable
        super().__init__(message, aggregator_name)

    @property
    def retriable(self) -> bool:
        return self._retriable


class AggregatorAPIError(AggregatorError):
    """HTTP 4xx/5xx responses from the aggregator API."""

    def __init__(
        self,
        message: str,
        aggregator_name: str = "GoCardless",
        status_code: int | None = None,
    ):
        self.status_code = status_code
        super().__init__(message, aggregator_name)

    @property
    def retriable(self) -> bool:
        """429 (rate limit) and 5xx errors are generally retriable."""
        if self.status_code is None:
            return False
        return self.status_code == 429 or self.status_code >= 500


class AggregatorDataError(AggregatorError):
    """Malformed or unparseable response from the aggregator."""

    pass
