"""Domain errors raised by the ledger, inventory and payment rules."""

from typing import Any


class ShopError(Exception):
    status_code = 400

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.message = message
        self.context = context


class NotFound(ShopError):
    status_code = 404


class DuplicateRecord(ShopError):
    status_code = 409


class InvalidOperation(ShopError):
    """A mutation whose inputs would leave balances or stock inconsistent."""


class ConcurrencyConflict(ShopError):
    """The document changed after it was read; reload and retry."""

    status_code = 409
