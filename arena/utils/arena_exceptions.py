"""
Custom exceptions for the arena backend with client-facing messages.
"""

class ArenaException(Exception):
    """Base exception for arena errors that may be shown to a client."""
    def __init__(self, message: str, user_message: str = None):
        super().__init__(message)
        self.user_message = user_message or message

class PlayerNotFoundError(ArenaException):
    """Raised when no account exists for an identity."""
    def __init__(self, external_id: str):
        super().__init__(
            f"Player '{external_id}' not found",
            "Account not found. Sign in again."
        )

class InsufficientFundsError(ArenaException):
    """Raised when a spend would take a balance below zero."""
    def __init__(self, currency: str, balance: int, required: int, player_id: int = None):
        super().__init__(
            f"Insufficient {currency} for player {player_id}. Current: {balance}, Required: {required}",
            f"Insufficient {currency}"
        )
        self.currency = currency
        self.balance = balance
        self.required = required
        self.player_id = player_id

class RateLimitError(ArenaException):
    """Raised when rate limit is exceeded."""
    def __init__(self, action: str):
        super().__init__(
            f"Rate limit exceeded for {action}",
            "Too many requests. Please slow down."
        )

class LedgerInvariantError(AssertionError):
    """
    Raised when balance bookkeeping contradicts itself.
    
    This indicates a logic bug, never a user error, and must not be caught
    by business-rule handling.
    """
