class SettlementError(Exception):
    """Base exception for settlement engine errors."""


class SettlementValidationError(SettlementError):
    """Raised when input is rejected before any write."""


class AmountMismatchError(SettlementValidationError):
    """Raised when a paid amount does not match the catalog price."""


class LockNotAcquiredError(SettlementError):
    """Raised when another transaction already holds the payment lock."""


class InsufficientBalanceError(SettlementError):
    """Raised when a wallet cannot cover a withdrawal deduction."""


class PayoutProviderError(SettlementError):
    """Raised when the payout provider call fails or is rejected."""

    def __init__(self, message, detail=None):
        super().__init__(message)
        self.detail = detail or {}


class CompensationFailedError(SettlementError):
    """Raised when a compensating wallet refund could not be committed."""


class EscrowError(SettlementError):
    """Raised when escrow release runs outside a transaction or before payment."""
