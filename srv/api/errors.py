import logging
from contextlib import contextmanager

from fastapi import HTTPException

from app.nk_doses.errors import (
    DoseInconsistencyError,
    DoseNotFoundError,
    DoseValidationError,
    InvalidTransitionError,
)

logger = logging.getLogger("nk.doses.api")


@contextmanager
def engine_errors(op: str):
    """Translate engine exceptions raised inside the block to HTTP errors."""
    try:
        yield
    except DoseValidationError as e:
        logger.info("%s invalid -> 400 %s", op, e)
        raise HTTPException(status_code=400, detail=str(e))
    except DoseNotFoundError as e:
        logger.info("%s not_found -> 404 %s", op, e)
        raise HTTPException(status_code=404, detail=str(e))
    except InvalidTransitionError as e:
        logger.info("%s conflict -> 409 %s", op, e)
        raise HTTPException(status_code=409, detail=str(e))
    except DoseInconsistencyError as e:
        logger.error("%s inconsistent -> 500 %s", op, e)
        raise HTTPException(
            status_code=500,
            detail={
                "code": "dose_status_inconsistent",
                "message": str(e),
                "dose_instance_id": e.instance_id,
                "dose_log_id": e.log_id,
            },
        )
