"""Error taxonomy for the pricing engine."""


class PricingError(Exception):
    """Base class for pricing engine errors."""


class InvalidArgumentError(PricingError, ValueError):
    """Raised when a caller violates an operation's contract."""


class InvalidTokenIdError(InvalidArgumentError):
    """Raised for malformed token identifiers."""

    def __init__(self, token_id: object):
        self.token_id = token_id
        super().__init__(f"Invalid token id: {token_id!r}")


class ReserveMathError(PricingError, ValueError):
    """Raised for raw amounts that cannot be used in reserve math."""


class ZeroReserveError(ReserveMathError):
    """Raised when a price is requested from a pair with an empty side."""


class OracleError(PricingError):
    """Base class for typed on-chain oracle errors."""

    # Errors for which pricing may fall back to the pair's reserves.
    recoverable = False

    def __init__(self, pair_address: str, message: str | None = None):
        self.pair_address = pair_address
        self.message = message or self.__class__.__name__
        super().__init__(f"Oracle error for pair {pair_address}: {self.message}")


class OracleNotInitializedError(OracleError):
    recoverable = True


class StalePriceError(OracleError):
    recoverable = True


class InvalidPeriodError(OracleError):
    recoverable = True


class InsufficientDataError(OracleError):
    recoverable = True


class InvalidPairError(OracleError):
    pass


class InvalidTokenError(OracleError):
    pass
