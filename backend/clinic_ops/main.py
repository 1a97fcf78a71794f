import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from clinic_ops.core.settings import settings, validate_settings
from clinic_ops.db.session import engine
from clinic_ops.models import Base
from clinic_ops.routers.audit import router as audit_router
from clinic_ops.routers.consult_queue import router as consult_queue_router
from clinic_ops.routers.consultations import router as consultations_router
from clinic_ops.routers.followups import patient_router as patient_followups_router
from clinic_ops.routers.followups import router as followups_router
from clinic_ops.services.errors import ContentionError, ServiceError

app = FastAPI(title="Clinic Ops API", version="0.1.0")
logger = logging.getLogger("clinic_ops.startup")


def _error_payload(message: str, request: Request, **extra) -> dict:
    payload = {"error": message, **extra}
    request_id = request.headers.get("x-request-id")
    if request_id:
        payload["request_id"] = request_id
    return payload


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    message = exc.detail if isinstance(exc.detail, str) else "Request failed"
    return JSONResponse(
        status_code=exc.status_code,
        content=_error_payload(message, request),
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    parts = []
    for error in exc.errors():
        location = ".".join(str(item) for item in error.get("loc", ()) if item != "body")
        parts.append(f"{location}: {error.get('msg')}" if location else str(error.get("msg")))
    return JSONResponse(
        status_code=422,
        content=_error_payload("; ".join(parts) or "Invalid request", request),
    )


@app.exception_handler(ServiceError)
async def service_exception_handler(request: Request, exc: ServiceError):
    extra = {"retryable": True} if isinstance(exc, ContentionError) else {}
    return JSONResponse(
        status_code=exc.status_code,
        content=_error_payload(exc.message, request, **extra),
    )


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    request_id = request.headers.get("x-request-id")
    logger.exception("Unhandled server error", extra={"request_id": request_id})
    return JSONResponse(status_code=500, content=_error_payload("Internal server error", request))


@app.on_event("startup")
def startup():
    validate_settings(settings)
    Base.metadata.create_all(bind=engine)
    logger.info("Database tables ensured (%s).", engine.url.get_backend_name())


app.include_router(followups_router)
app.include_router(patient_followups_router)
app.include_router(consult_queue_router)
app.include_router(consultations_router)
app.include_router(audit_router)


@app.get("/health")
def health():
    return {"status": "ok"}
