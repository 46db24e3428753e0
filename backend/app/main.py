from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from starlette.exceptions import HTTPException
import logging
import os
from backend.app.routers import status as status_router
from backend.app.routers import events as events_router
from backend.app.routers import folders as folders_router
from backend.app.routers import photos as photos_router
from backend.app.routers import admin as admin_router
from backend.app.routers import family as family_router
from backend.app.routers import payments as payments_router
from backend.app.routers import storage as storage_router
from backend.app.config import settings as C
from backend.app.db import init_db
from backend.app.errors import LookEscolarError
from backend.app.limiter import limiter
from backend.app.telemetry import telemetry

log = logging.getLogger(__name__)

app = FastAPI(title="lookescolar-api")

app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

app.add_middleware(
    CORSMiddleware,
    allow_origins=C.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# --- error envelope: {"ok": false, "error": ...} ------------------------------
@app.exception_handler(LookEscolarError)
async def _service_error(request: Request, exc: LookEscolarError):
    if exc.status_code >= 500:
        telemetry.set_error(f"{request.url.path}: {exc.message}")
    return JSONResponse(exc.to_dict(), status_code=exc.status_code)


@app.exception_handler(HTTPException)
async def _http_error(request: Request, exc: HTTPException):
    body = exc.detail if isinstance(exc.detail, dict) else {"ok": False, "error": exc.detail}
    return JSONResponse(body, status_code=exc.status_code, headers=getattr(exc, "headers", None))


@app.exception_handler(RequestValidationError)
async def _validation_error(request: Request, exc: RequestValidationError):
    details = [
        {"field": ".".join(str(p) for p in err.get("loc", ()) if p != "body"), "message": err.get("msg")}
        for err in exc.errors()
    ]
    return JSONResponse({"ok": False, "error": "Datos inválidos", "details": details}, status_code=400)


@app.exception_handler(Exception)
async def _unhandled(request: Request, exc: Exception):
    log.exception(f"[api] unhandled error on {request.method} {request.url.path}: {exc}")
    telemetry.set_error(f"{request.url.path}: {exc}")
    return JSONResponse({"ok": False, "error": "Error interno del servidor"}, status_code=500)


# Include all routers
app.include_router(status_router.router)
app.include_router(events_router.router)
app.include_router(folders_router.router)
app.include_router(photos_router.router)
app.include_router(admin_router.router)
app.include_router(family_router.router)
app.include_router(payments_router.router)
app.include_router(storage_router.router)


@app.on_event("startup")
async def _startup_log():
    logging.info(f"[api] ENVIRONMENT={C.ENVIRONMENT}  STORAGE_BACKEND={C.STORAGE_BACKEND}")
    try:
        init_db()
    except Exception as e:
        logging.warning(f"[api] init_db skipped due to error: {e}")
    logging.info(
        "[api] Routes: /health /status /api/admin/* /api/family/* /api/store/* /api/public/* /api/payments/webhook"
    )


@app.get("/")
async def root():
    return {"message": "LookEscolar API"}


if __name__ == "__main__":
    import uvicorn

    port = int(os.getenv("PORT_API", "8000"))
    uvicorn.run(app, host="0.0.0.0", port=port)
