from fastapi import HTTPException

from container import Container, get_container
from errors import MediaPipelineError


def get_services() -> Container:
    return get_container()


def raise_http(exc: MediaPipelineError) -> HTTPException:
    """Map a pipeline error to the response the client sees."""
    headers = {"Retry-After": "60"} if exc.status_code == 503 else None
    return HTTPException(status_code=exc.status_code, detail=exc.to_detail(), headers=headers)
