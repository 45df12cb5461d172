"""
Domain errors raised by the service layer.

Each error is an HTTPException so FastAPI turns it into the matching client
response without extra handlers. Services raise them; endpoints let them
propagate.
"""

from fastapi import HTTPException, status


class NotFoundError(HTTPException):
    """Entity absent, soft-deleted, or not owned by the caller."""

    def __init__(self, detail: str = "Not found"):
        super().__init__(status_code=status.HTTP_404_NOT_FOUND, detail=detail)


class ForbiddenError(HTTPException):
    """Acting user lacks the required permission level."""

    def __init__(self, detail: str = "Forbidden"):
        super().__init__(status_code=status.HTTP_403_FORBIDDEN, detail=detail)


class InvalidStateError(HTTPException):
    """Operation not allowed in the entity's current lifecycle state."""

    def __init__(self, detail: str = "Invalid state"):
        super().__init__(status_code=status.HTTP_400_BAD_REQUEST, detail=detail)


class ExpiredError(HTTPException):
    def __init__(self, detail: str = "Expired"):
        super().__init__(status_code=status.HTTP_410_GONE, detail=detail)


class ConflictError(HTTPException):
    """Duplicate pending invitation, or a stale sync_version on a direct update."""

    def __init__(self, detail: str = "Conflict"):
        super().__init__(status_code=status.HTTP_409_CONFLICT, detail=detail)
