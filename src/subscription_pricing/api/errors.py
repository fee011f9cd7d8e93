"""Translation of service errors to HTTP responses."""
from contextlib import contextmanager

from fastapi import HTTPException

from ..services.errors import ConflictError, NotFoundError, ValidationError


@contextmanager
def service_errors():
    """Re-raise service failures as HTTPException with the matching status code."""
    try:
        yield
    except ValidationError as e:
        raise HTTPException(status_code=400, detail={"errors": e.errors})
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ConflictError as e:
        raise HTTPException(status_code=409, detail={"message": str(e), "dependents": e.dependents})
