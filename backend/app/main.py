# School receivables backend entrypoint.

import logging

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from backend.app.api import collections
from backend.app.api import invoices
from backend.app.api import payment_plans
from backend.app.api import payments
from backend.app.api import receivables
from backend.app.core.exceptions import ConflictError, InvalidStateError, LedgerError, NotFoundError, ValidationError
from backend.app.core.logging_config import configure_logging
from backend.app.core.settings import get_settings

logger = logging.getLogger("backend.app.main")

settings = get_settings()
configure_logging()
app = FastAPI(title=settings.app_name, version=settings.api_version)

origins = [
    "http://localhost:5173",
    "http://127.0.0.1:5173",
]

app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

_STATUS_BY_ERROR = {
    ValidationError: 422,
    InvalidStateError: 409,
    ConflictError: 409,
    NotFoundError: 404,
}


@app.exception_handler(LedgerError)
async def ledger_error_handler(request: Request, exc: LedgerError):
    status_code = _STATUS_BY_ERROR.get(type(exc), status.HTTP_400_BAD_REQUEST)
    logger.info(
        "Request rejected",
        extra={"path": request.url.path, "error_code": exc.code, "status_code": status_code},
    )
    return JSONResponse(status_code=status_code, content={"success": False, "error": exc.to_dict()})


@app.exception_handler(SQLAlchemyError)
async def storage_error_handler(request: Request, exc: SQLAlchemyError):
    logger.error("Storage failure", exc_info=exc, extra={"path": request.url.path})
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"success": False, "error": {"code": "STORAGE_ERROR", "message": "The ledger store is unavailable"}},
    )


app.include_router(receivables.router)
app.include_router(payments.router)
app.include_router(payment_plans.router)
app.include_router(invoices.router)
app.include_router(collections.router)


@app.get("/")
def read_root():
    return {"app": settings.app_name, "status": "ok"}


@app.get("/health")
def health_check():
    return {"status": "ok"}
