"""
Exception classes for the bot core.
"""


class FinancyError(Exception):
    """Base class for errors raised by the bot core."""


class ExtractionError(FinancyError):
    """Raised when a model strategy cannot produce a usable completion."""

    def __init__(self, strategy: str, message: str):
        super().__init__(f"{strategy}: {message}")
        self.strategy = strategy


class RateUnavailableError(FinancyError):
    """Raised when an exchange-rate provider cannot supply a rate."""

    def __init__(self, provider: str, from_currency: str, to_currency: str, message: str = ""):
        detail = f"{provider} could not provide {from_currency}->{to_currency}"
        if message:
            detail = f"{detail}: {message}"
        super().__init__(detail)
        self.provider = provider


class ContextResolutionError(FinancyError):
    """Raised when no context can be determined for a chat."""


class LinkTokenError(FinancyError):
    """Raised when a Telegram link token is invalid, expired, or already used."""
