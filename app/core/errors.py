import logging

from fastapi import Request, status
from fastapi.responses import JSONResponse

logger = logging.getLogger("[PAYMENTS]")


class ServiceError(Exception):
	"""
	Base of the service error taxonomy.
	Every subclass maps to one HTTP status and a stable machine code.
	"""
	code = "SERVICE_ERROR"
	status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
	message = "Internal Server Error."

	def __init__(self, message: str | None = None, **context):
		self.message = message or self.message
		self.context = context
		super().__init__(self.message)


class Unauthenticated(ServiceError):
	code = "UNAUTHENTICATED"
	status_code = status.HTTP_401_UNAUTHORIZED
	message = "Not authenticated."


class Forbidden(ServiceError):
	code = "FORBIDDEN"
	status_code = status.HTTP_403_FORBIDDEN
	message = "Forbidden."


class InvalidOperation(ServiceError):
	code = "INVALID_OPERATION"
	status_code = status.HTTP_400_BAD_REQUEST
	message = "Invalid operation."


class InvalidPack(ServiceError):
	code = "INVALID_PACK"
	status_code = status.HTTP_400_BAD_REQUEST
	message = "Invalid credit pack."


class InsufficientCredits(ServiceError):
	code = "INSUFFICIENT_CREDITS"
	status_code = status.HTTP_400_BAD_REQUEST
	message = "Insufficient credits."


class UserNotFound(ServiceError):
	code = "USER_NOT_FOUND"
	status_code = status.HTTP_404_NOT_FOUND
	message = "User not found."


class PaymentNotFound(ServiceError):
	code = "PAYMENT_NOT_FOUND"
	status_code = status.HTTP_404_NOT_FOUND
	message = "Payment not found."


class AlreadyRefunded(ServiceError):
	code = "ALREADY_REFUNDED"
	status_code = status.HTTP_400_BAD_REQUEST
	message = "Payment already refunded."


class OperationConflict(ServiceError):
	code = "OPERATION_CONFLICT"
	status_code = status.HTTP_409_CONFLICT
	message = "Operation id already used for a different operation."


class UnresolvableOrder(ServiceError):
	code = "UNRESOLVABLE_ORDER"
	status_code = status.HTTP_400_BAD_REQUEST
	message = "Invalid order data."


class GatewayUnavailable(ServiceError):
	code = "GATEWAY_UNAVAILABLE"
	status_code = status.HTTP_502_BAD_GATEWAY
	message = "Payment provider unavailable."


class VerificationFailed(ServiceError):
	code = "VERIFICATION_FAILED"
	status_code = status.HTTP_400_BAD_REQUEST
	message = "Invalid signature."


async def service_error_handler(request: Request, exc: ServiceError):
	if exc.status_code >= 500:
		logger.error(
			f"{exc.code} on {request.method} {request.url.path}: {exc.message}",
			extra=exc.context
		)
	headers = None
	if isinstance(exc, Unauthenticated):
		headers = {"WWW-Authenticate": "Bearer"}
	return JSONResponse(
		status_code=exc.status_code,
		content={"detail": exc.message, "code": exc.code},
		headers=headers,
	)


async def unhandled_error_handler(request: Request, exc: Exception):
	logger.exception(
		f"Unhandled error on {request.method} {request.url.path}: {exc!r}"
	)
	return JSONResponse(
		status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
		content={"detail": "Internal Server Error."},
	)
