from fastapi import HTTPException

from services.exceptions import AuthenticationFailed, RaffleError, TicketUnavailable


def to_http_exception(error: RaffleError) -> HTTPException:
    if isinstance(error, TicketUnavailable):
        return HTTPException(
            status_code=error.status_code,
            detail={"message": str(error), "rejected": error.numbers}
        )
    if isinstance(error, AuthenticationFailed):
        return HTTPException(
            status_code=error.status_code,
            detail=str(error),
            headers={"WWW-Authenticate": "Bearer"},
        )
    return HTTPException(status_code=error.status_code, detail=str(error))
