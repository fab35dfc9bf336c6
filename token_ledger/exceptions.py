"""
Exception Classes - Strongly typed exception hierarchy.

All exceptions carry typed attributes. Insufficient balance is normally
reported through DeductionResult rather than raised; the exception exists for
callers that want to turn a failed result into control flow.
"""


class LedgerError(Exception):
    """Base exception for all ledger errors."""

    pass


class InsufficientBalanceError(LedgerError):
    """Raised when an account cannot cover the cost of a request."""

    def __init__(self, balance: int, required: int) -> None:
        self.balance = balance
        self.required = required
        super().__init__(f"Insufficient balance. Balance: {balance}, Required: {required}")

    @property
    def shortfall(self) -> int:
        """Tokens missing to cover the request."""
        return max(self.required - self.balance, 0)


class AccountNotFoundError(LedgerError):
    """Raised when account doesn't exist."""

    def __init__(self, user_id: str) -> None:
        self.user_id = user_id
        super().__init__(f"Account not found: {user_id}")


class AccountNotProvisionedError(LedgerError):
    """Raised when an account is still missing after the provisioning retries."""

    def __init__(self, user_id: str, attempts: int) -> None:
        self.user_id = user_id
        self.attempts = attempts
        super().__init__(f"Account {user_id} not provisioned after {attempts} attempts")


class StoreUnavailableError(LedgerError):
    """Raised when the balance store cannot be reached or fails transiently."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Balance store unavailable: {message}")


class WriteVerificationError(LedgerError):
    """Raised when database write verification fails."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Write verification failed: {message}")


class DataIntegrityError(LedgerError):
    """Raised when data integrity constraint violated."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Data integrity error: {message}")
