"""
CampusBid Escrow — Error Taxonomy
Every service error carries a stable machine-readable reason and the HTTP
status the API boundary maps it to.
"""
from typing import Optional


class EngineError(Exception):
    """Base class for all escrow-engine errors."""

    reason = "engine_error"
    status_code = 400

    def __init__(self, message: str = "", **details):
        super().__init__(message or self.reason)
        self.message = message or self.reason
        self.details = details

    def to_dict(self) -> dict:
        body = {"success": False, "reason": self.reason, "message": self.message}
        if self.details:
            body["details"] = self.details
        return body


class NotFoundError(EngineError):
    reason = "not_found"
    status_code = 404


class InvalidStateTransition(EngineError):
    reason = "invalid_state_transition"
    status_code = 409


class DeliveryNotConfirmed(InvalidStateTransition):
    reason = "delivery_not_confirmed"


class AlreadyReleased(InvalidStateTransition):
    reason = "already_released"


class AlreadyRefunded(InvalidStateTransition):
    reason = "already_refunded"


class UnauthorizedError(EngineError):
    reason = "unauthorized"
    status_code = 403


class InvalidCodeError(EngineError):
    reason = "invalid_code"
    status_code = 400

    def __init__(self, message: str = "Invalid code", attempts_remaining: Optional[int] = None):
        super().__init__(message, attempts_remaining=attempts_remaining)
        self.attempts_remaining = attempts_remaining


class CodeLockedError(EngineError):
    reason = "code_locked"
    status_code = 423


class CodeExpiredError(EngineError):
    reason = "code_expired"
    status_code = 410


class AlreadyUsedError(EngineError):
    reason = "already_used"
    status_code = 409


class RateLimitedError(EngineError):
    reason = "rate_limited"
    status_code = 429


class InvalidRequestError(EngineError):
    reason = "invalid_request"
    status_code = 400


class DuplicateKeyConflict(EngineError):
    reason = "duplicate_key_conflict"
    status_code = 409


class GatewayFailure(EngineError):
    """Payment provider error; the provider's reason is kept verbatim."""

    reason = "gateway_failure"
    status_code = 502

    def __init__(self, message: str = "Payment gateway error", provider_reason: Optional[str] = None):
        super().__init__(message, provider_reason=provider_reason)
        self.provider_reason = provider_reason


class InvalidSignatureError(EngineError):
    """Webhook body does not match its HMAC signature."""

    reason = "invalid_signature"
    status_code = 401
