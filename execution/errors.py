"""Error taxonomy for the execution layer.

Every error carries a stable ``code`` tag. ``OrderExecutor`` converts these
into tagged ``OrderResult`` values, so callers branch on ``result.error``
rather than catching exceptions. ``retryable`` tells the scheduler whether
a dispatch failing with this error is worth another attempt.
"""

from __future__ import annotations


class ExecutionError(RuntimeError):
    code = "EXECUTION_ERROR"
    retryable = False


class ValidationError(ExecutionError, ValueError):
    """Bad input; raised before any network call."""

    code = "VALIDATION_ERROR"


class QuantizationError(ExecutionError):
    code = "QUANTIZATION_ERROR"


class TickSizeError(ExecutionError):
    code = "TICK_SIZE_ERROR"


class StepSizeError(ExecutionError):
    code = "STEP_SIZE_ERROR"


class RateLimitError(ExecutionError):
    """Throttled by the exchange; the scheduler backs off and retries."""

    code = "RATE_LIMIT_ERROR"
    retryable = True


class ExchangeError(ExecutionError):
    """Generic exchange rejection, message passed through."""

    code = "EXCHANGE_ERROR"


class NotReadyError(ExecutionError):
    """Wallet or exchange client unavailable."""

    code = "NOT_READY"


class AssetNotFoundError(ExecutionError):
    code = "ASSET_NOT_FOUND"


def error_message(exc: BaseException) -> str:
    message = getattr(exc, "message", None)
    if isinstance(message, str) and message:
        return message
    return str(exc) or exc.__class__.__name__
