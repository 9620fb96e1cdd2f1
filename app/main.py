from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from app.db import Base, engine
import app.models  # noqa: F401 ensure models are imported so tables are known
from app.api.routes import router as api_router
from app.config import settings
from app.scheduler import start_scheduler, stop_scheduler
from app.utils import logger

# create FastAPI instance
app = FastAPI(title="Graded Comics Marketplace")
app.include_router(api_router)


@app.exception_handler(StarletteHTTPException)
async def http_error(request: Request, exc: StarletteHTTPException):
    # clients read {"error": ...}; structured details pass through untouched
    content = exc.detail if isinstance(exc.detail, dict) else {"error": exc.detail}
    return JSONResponse(status_code=exc.status_code, content=content, headers=getattr(exc, "headers", None))


@app.on_event("startup")
def on_startup():
    # Ensure database tables are created on startup
    try:
        Base.metadata.create_all(bind=engine)
    except Exception:
        # migrations may own the schema; keep serving
        logger.exception("create_all failed")
    if settings.scheduler_enabled:
        start_scheduler(settings.scheduler_interval_minutes)


@app.on_event("shutdown")
def on_shutdown():
    stop_scheduler()
