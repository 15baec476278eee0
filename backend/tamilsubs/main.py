import logging
import os

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, JSONResponse
from fastapi.staticfiles import StaticFiles
from sqlalchemy import inspect, text
from sqlalchemy.engine import Engine
from starlette.exceptions import HTTPException as StarletteHTTPException

from tamilsubs.api.endpoints import account, auth, billing, usage
from tamilsubs.core.database import Base, engine
from tamilsubs.core.errors import ServiceError
from tamilsubs.core.settings import settings
from tamilsubs.models import account as account_models  # noqa: F401

logger = logging.getLogger(__name__)

API_PREFIXES = ("auth", "status", "subscription", "usage", "transcribe", "health")

app = FastAPI(title="Tamil Subtitles API")

origins = settings.resolved_cors_origins()
if origins:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )


def upgrade_accounts_table(bind: Engine) -> list[str]:
    inspector = inspect(bind)
    if "accounts" not in inspector.get_table_names():
        return []
    existing = {c["name"] for c in inspector.get_columns("accounts")}
    missing = [col for col in ("processed_payment_ids",) if col not in existing]
    if missing:
        with bind.begin() as conn:
            for col in missing:
                conn.execute(text(f"ALTER TABLE accounts ADD COLUMN {col} JSON"))
        logger.info("db.accounts_upgraded columns=%s", ",".join(missing))
    return missing


@app.on_event("startup")
def startup() -> None:
    missing = settings.missing_required()
    if missing:
        raise RuntimeError(f"Missing required configuration: {', '.join(missing)}")
    if settings.dev_bypass_login:
        logger.warning(
            "auth.dev_login_enabled production=%s origins=%s",
            settings.is_production,
            ",".join(settings.dev_bypass_allowed_origins),
        )
    if settings.db_auto_create:
        Base.metadata.create_all(bind=engine)
    upgrade_accounts_table(engine)


@app.exception_handler(ServiceError)
async def service_error_handler(request: Request, exc: ServiceError):
    if exc.status_code >= 500:
        logger.warning("request.failed path=%s status=%s error=%s", request.url.path, exc.status_code, exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.payload())


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    logger.info("request.invalid path=%s errors=%s", request.url.path, len(exc.errors()))
    return JSONResponse(status_code=400, content={"error": "Invalid request body"})


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(status_code=exc.status_code, content={"error": str(exc.detail)}, headers=exc.headers)


@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, exc: Exception):
    logger.exception("request.unhandled path=%s", request.url.path)
    return JSONResponse(status_code=500, content={"error": "Something went wrong, please retry later"})


app.include_router(auth.router, tags=["auth"])
app.include_router(account.router, tags=["account"])
app.include_router(billing.router, tags=["subscription"])
app.include_router(usage.router, tags=["usage"])


@app.get("/health")
async def health_check():
    return {"ok": True}


frontend_dist_path = os.path.abspath(settings.static_dist) if settings.static_dist else None

if frontend_dist_path and os.path.isdir(frontend_dist_path):
    assets_dir = os.path.join(frontend_dist_path, "assets")
    if os.path.isdir(assets_dir):
        app.mount("/assets", StaticFiles(directory=assets_dir), name="assets")

    @app.get("/{full_path:path}")
    async def serve_spa(full_path: str):
        if full_path.split("/", 1)[0] in API_PREFIXES:
            return JSONResponse(status_code=404, content={"error": "Not found"})
        file_path = os.path.abspath(os.path.join(frontend_dist_path, full_path))
        if file_path.startswith(frontend_dist_path + os.sep) and os.path.isfile(file_path):
            return FileResponse(file_path)
        return FileResponse(os.path.join(frontend_dist_path, "index.html"))

else:

    @app.get("/")
    async def read_root():
        return {"message": "Tamil Subtitles API (frontend not built/served)"}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("tamilsubs.main:app", host="0.0.0.0", port=settings.port)
