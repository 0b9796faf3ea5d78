from typing import Any, Dict, Optional


class OrderServiceError(Exception):
    """Base error carrying a stable code and the HTTP status it maps to."""

    code = "OrderServiceError"
    status_code = 500

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "message": self.message,
            "details": self.details,
        }


class ValidationError(OrderServiceError):
    code = "ValidationError"
    status_code = 400


class InvalidAmount(ValidationError):
    code = "InvalidAmount"


class InvalidTransition(OrderServiceError):
    code = "InvalidTransition"
    status_code = 409


class InvalidState(OrderServiceError):
    code = "InvalidState"
    status_code = 409


class NotFound(OrderServiceError):
    code = "NotFound"
    status_code = 404


class Forbidden(OrderServiceError):
    code = "Forbidden"
    status_code = 403


class PaymentError(OrderServiceError):
    """Charge rejected by the gateway."""

    code = "PaymentFailed"
    status_code = 400


class GatewayDeclined(PaymentError):
    code = "GatewayDeclined"


class InsufficientFunds(PaymentError):
    code = "InsufficientFunds"


class FraudSuspected(PaymentError):
    code = "FraudSuspected"


class GatewayUnavailable(OrderServiceError):
    code = "GatewayUnavailable"
    status_code = 503


class RefundExceedsOriginal(OrderServiceError):
    code = "RefundExceedsOriginal"
    status_code = 400


class OrderCreationFailed(OrderServiceError):
    code = "OrderCreationFailed"
    status_code = 500

    def __init__(self, message: str, cause: Optional[BaseException] = None, details=None):
        details = dict(details or {})
        if cause is not None:
            details.setdefault("cause", type(cause).__name__)
        super().__init__(message, details)
        self.cause = cause


# gateway failure codes -> error class raised to the caller
GATEWAY_FAILURES = {
    "card_declined": GatewayDeclined,
    "invalid_amount": GatewayDeclined,
    "amount_too_high": GatewayDeclined,
    "insufficient_funds": InsufficientFunds,
    "fraud_detected": FraudSuspected,
    "gateway_timeout": GatewayUnavailable,
    "gateway_unreachable": GatewayUnavailable,
}


def payment_error_for(failure_code: Optional[str], message: str, details=None) -> OrderServiceError:
    error_cls = GATEWAY_FAILURES.get(failure_code or "", GatewayDeclined)
    return error_cls(message, details)
