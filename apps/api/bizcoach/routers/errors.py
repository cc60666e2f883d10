from fastapi import HTTPException, status

from bizcoach.services.errors import PipelineError, RunFailed, RunTimeout, ServiceUnavailable

STILL_THINKING_MESSAGE = "The coach is still working on your message. Please try again in a moment."


def pipeline_error_to_http(e: PipelineError) -> HTTPException:
    """Map a failed coaching turn to its HTTP status."""
    if isinstance(e, ServiceUnavailable):
        if e.rate_limited:
            return HTTPException(status_code=status.HTTP_429_TOO_MANY_REQUESTS, detail=e.message)
        return HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=e.message)
    if isinstance(e, RunTimeout):
        return HTTPException(status_code=status.HTTP_504_GATEWAY_TIMEOUT, detail=STILL_THINKING_MESSAGE)
    if isinstance(e, RunFailed):
        return HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=e.message)
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=e.message)
