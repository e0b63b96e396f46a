# axbilling/errors.py


class AxBillingError(Exception):
    """Base for errors that map onto an HTTP status."""
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationFailed(AxBillingError):
    status_code = 400


class InvalidPhoneNumber(ValidationFailed):
    def __init__(self, number: str):
        super().__init__(f"Invalid WhatsApp number: {number}")
        self.number = number


class SignatureInvalid(AxBillingError):
    status_code = 401


class Forbidden(AxBillingError):
    status_code = 403


class NotFound(AxBillingError):
    status_code = 404


class Conflict(AxBillingError):
    status_code = 409


class InvalidTransition(Conflict):
    def __init__(self, current: str, target: str):
        super().__init__(f"Cannot move order from '{current}' to '{target}'")
        self.current = current
        self.target = target


class AnalysisFailed(AxBillingError):
    status_code = 422

    def __init__(self, message: str, attempts: list | None = None):
        super().__init__(message)
        self.attempts = attempts or []


class GatewayError(AxBillingError):
    """
    Raised when a Gupshup call fails. Carries the provider status and raw text
    so the caller can log them next to the failed message.
    """
    status_code = 502

    def __init__(
        self,
        message: str,
        *,
        api_status: int | None = None,
        raw_response_text: str | None = None,
    ):
        super().__init__(message)
        self.api_status = api_status
        self.raw_response_text = raw_response_text
