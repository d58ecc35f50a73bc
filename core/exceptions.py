from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse


class SubscriptionError(Exception):
    status_code = status.HTTP_400_BAD_REQUEST

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(SubscriptionError):
    """Malformed input to an admin or gate call. Nothing was mutated."""
    status_code = status.HTTP_400_BAD_REQUEST


class NotFoundError(SubscriptionError):
    status_code = status.HTTP_404_NOT_FOUND


class ExternalProviderError(SubscriptionError):
    """Email or billing provider call failed."""
    status_code = status.HTTP_502_BAD_GATEWAY


class ConcurrencyConflict(SubscriptionError):
    """Another writer changed the subscription between read and write."""
    status_code = status.HTTP_409_CONFLICT


class IllegalTransition(SubscriptionError):
    status_code = status.HTTP_409_CONFLICT


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(SubscriptionError)
    async def _subscription_error_handler(request: Request, exc: SubscriptionError):
        return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})
