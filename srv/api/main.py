import logging
from fastapi import Depends, FastAPI
from fastapi.responses import JSONResponse

from app.nk_doses.service import DoseService
from srv.api.deps import get_service
from srv.api.logging_setup import configure_logging
from srv.api.middleware.reqlog import RequestLogMiddleware
from srv.api.routers import doses, medications

configure_logging()
logger = logging.getLogger(__name__)

app = FastAPI(title="Navikinder Dose API")

app.add_middleware(RequestLogMiddleware)

app.include_router(doses.router)
app.include_router(medications.router)


@app.get("/healthz")
def healthz():
    return {"ok": True}


@app.get("/readyz")
def readyz(svc: DoseService = Depends(get_service)):
    try:
        svc.store.ping()
    except Exception as e:
        logger.warning("readyz store unreachable: %s", e)
        return JSONResponse(status_code=503, content={"ok": False, "error": "store unreachable"})
    return {"ok": True}
