"""
Domain errors for the pharmacy order workflow.

Each error is an HTTPException so routes can let it propagate and FastAPI
renders the right status code without a per-route translation table.
"""
from fastapi import HTTPException, status


class PharmacyError(HTTPException):
    """Base class for all domain errors."""
    status_code_default = status.HTTP_400_BAD_REQUEST

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(status_code=status_code or self.status_code_default, detail=message)
        self.message = message

    def __str__(self) -> str:
        return self.message


class InvalidInput(PharmacyError):
    status_code_default = status.HTTP_422_UNPROCESSABLE_ENTITY

    def __init__(self, message: str, field: str | None = None):
        if field:
            message = f"Invalid {field}: {message}"
        super().__init__(message)
        self.field = field


class EmptyCart(PharmacyError):
    def __init__(self, message: str = "Cart is empty"):
        super().__init__(message)


class PrescriptionRequired(PharmacyError):
    def __init__(self, message: str = "A prescription is required for one or more items"):
        super().__init__(message)


class PrescriptionUploadFailed(PharmacyError):
    status_code_default = status.HTTP_502_BAD_GATEWAY


class PaymentFailed(PharmacyError):
    status_code_default = status.HTTP_402_PAYMENT_REQUIRED

    def __init__(self, checkout_request_id: str | None = None):
        super().__init__("M-Pesa payment failed")
        self.checkout_request_id = checkout_request_id


class PaymentTimeout(PharmacyError):
    """The payment was not confirmed in time; it may still land out-of-band."""
    status_code_default = status.HTTP_504_GATEWAY_TIMEOUT

    def __init__(self, checkout_request_id: str | None = None):
        super().__init__("Timed out waiting for M-Pesa confirmation")
        self.checkout_request_id = checkout_request_id


class PaymentGatewayError(PharmacyError):
    """The gateway could not be reached or gave an unusable answer; nothing was confirmed."""
    status_code_default = status.HTTP_502_BAD_GATEWAY

    def __init__(self, checkout_request_id: str | None = None):
        super().__init__("M-Pesa gateway unavailable, please try again")
        self.checkout_request_id = checkout_request_id


class PaymentCancelled(PharmacyError):
    status_code_default = status.HTTP_409_CONFLICT

    def __init__(self, message: str = "Payment confirmation was cancelled"):
        super().__init__(message)


class ConfirmationInProgress(PharmacyError):
    status_code_default = status.HTTP_409_CONFLICT

    def __init__(self, message: str = "A payment confirmation is already in progress"):
        super().__init__(message)


class InvalidTransition(PharmacyError):
    status_code_default = status.HTTP_409_CONFLICT

    def __init__(self, from_status: str, to_status: str, message: str | None = None):
        super().__init__(message or f"Cannot move order from {from_status} to {to_status}")
        self.from_status = from_status
        self.to_status = to_status


class Forbidden(PharmacyError):
    status_code_default = status.HTTP_403_FORBIDDEN

    def __init__(self, message: str = "Permission denied"):
        super().__init__(message)


class Unauthorized(PharmacyError):
    status_code_default = status.HTTP_401_UNAUTHORIZED

    def __init__(self, message: str = "Could not validate credentials"):
        super().__init__(message)
        self.headers = {"WWW-Authenticate": "Bearer"}


class NotFound(PharmacyError):
    status_code_default = status.HTTP_404_NOT_FOUND

    def __init__(self, resource_type: str, identifier: str):
        super().__init__(f"{resource_type} not found: {identifier}")
        self.resource_type = resource_type
        self.identifier = identifier


class OrderPersistenceError(PharmacyError):
    """Payment went through but the order could not be saved."""
    status_code_default = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, checkout_request_id: str):
        super().__init__(
            f"Payment {checkout_request_id} was confirmed but the order could not be saved"
        )
        self.checkout_request_id = checkout_request_id
