"""Error taxonomy shared by the services and mapped to HTTP in main.py."""


class PaymentsError(Exception):
    status_code = 500
    code = "internal_error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class NotFoundError(PaymentsError):
    status_code = 404
    code = "not_found"

    def __init__(self, entity: str, key):
        super().__init__(f"{entity} '{key}' was not found.")
        self.entity = entity
        self.key = key


class DomainError(PaymentsError):
    """A business rule was violated; the caller can correct the request."""

    status_code = 422
    code = "domain_rule_violation"


class AuthenticationError(PaymentsError):
    status_code = 401
    code = "unauthorized"


class ForbiddenError(PaymentsError):
    status_code = 403
    code = "forbidden"


class GatewayError(PaymentsError):
    """Raised by gateway clients when the provider call fails or answers garbage."""

    status_code = 502
    code = "gateway_error"

    def __init__(self, gateway: str, message: str, status: int | None = None):
        super().__init__(f"{gateway}: {message}")
        self.gateway = gateway
        self.status = status


class GatewayUnavailableError(DomainError):
    """Checkout could not reach the provider; the buyer may retry with a new key."""

    code = "gateway_unavailable"
    retryable = True
