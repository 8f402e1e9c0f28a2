"""Domain error taxonomy for the escrow engine

Every expected failure carries a stable ``error_code`` that the command
facade hands back to callers verbatim.
"""

from typing import Optional


class EscrowEngineError(Exception):
    """Base class for expected domain failures"""

    default_code = "ESCROW_ENGINE_ERROR"

    def __init__(self, message: str, error_code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.error_code = error_code or self.default_code


# State machine / authorization

class InvalidTransition(EscrowEngineError):
    default_code = "INVALID_TRANSITION"


class DisputeAlreadyOpen(InvalidTransition):
    default_code = "DISPUTE_ALREADY_OPEN"


class Unauthorized(EscrowEngineError):
    default_code = "UNAUTHORIZED"


class NotFound(EscrowEngineError):
    default_code = "NOT_FOUND"


# Input validation

class ValidationError(EscrowEngineError):
    default_code = "VALIDATION_ERROR"


class RatingRequired(ValidationError):
    default_code = "RATING_REQUIRED"


class ReasonTooShort(ValidationError):
    default_code = "REASON_TOO_SHORT"


# Escrow ordering and races

class EscrowAlreadyExists(EscrowEngineError):
    default_code = "ESCROW_ALREADY_EXISTS"


class CannotFreezeReleased(EscrowEngineError):
    default_code = "CANNOT_FREEZE_RELEASED"


class DisputePending(EscrowEngineError):
    default_code = "DISPUTE_PENDING"


class NotYetDue(EscrowEngineError):
    default_code = "NOT_YET_DUE"


class UnknownCondition(EscrowEngineError):
    default_code = "UNKNOWN_CONDITION"


# Dispute resolution arithmetic

class SplitMismatch(EscrowEngineError):
    default_code = "SPLIT_MISMATCH"


class AmountOutOfRange(EscrowEngineError):
    default_code = "AMOUNT_OUT_OF_RANGE"


class MissingAmount(EscrowEngineError):
    default_code = "MISSING_AMOUNT"


# Money utility

class CurrencyMismatch(EscrowEngineError):
    default_code = "CURRENCY_MISMATCH"


class InvalidAmount(EscrowEngineError):
    default_code = "INVALID_AMOUNT"


__all__ = [
    "EscrowEngineError",
    "InvalidTransition",
    "DisputeAlreadyOpen",
    "Unauthorized",
    "NotFound",
    "ValidationError",
    "RatingRequired",
    "ReasonTooShort",
    "EscrowAlreadyExists",
    "CannotFreezeReleased",
    "DisputePending",
    "NotYetDue",
    "UnknownCondition",
    "SplitMismatch",
    "AmountOutOfRange",
    "MissingAmount",
    "CurrencyMismatch",
    "InvalidAmount",
]
