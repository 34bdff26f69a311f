import logging
import time
from datetime import datetime, timezone

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from booking_api.core import config
from booking_api.core.errors import SchedulingError
from booking_api.core.logging_config import configure_logging
from booking_api.database import Base, engine, ensure_slot_schema
from booking_api.models import api_key, availability, company, professional, service, slot, user  # noqa: F401
from booking_api.routes import api_key_routes, slot_routes
from booking_api.scheduling.timestamps import to_utc_iso

configure_logging()
logger = logging.getLogger(__name__)

app = FastAPI(title=config.APP_NAME)

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ALLOWED_ORIGINS,
    allow_origin_regex=config.CORS_ORIGIN_REGEX,
    allow_credentials=True,
    allow_methods=['GET', 'POST', 'PUT', 'PATCH', 'DELETE', 'OPTIONS'],
    allow_headers=['Content-Type', 'Authorization', 'X-API-Key'],
    max_age=config.CORS_MAX_AGE_SECONDS,
)


@app.middleware('http')
async def log_api_requests(request: Request, call_next):
    if not request.url.path.startswith('/api/'):
        return await call_next(request)

    started = time.perf_counter()
    response = await call_next(request)
    logger.info(
        '%s %s -> %s (%.1f ms)',
        request.method,
        request.url.path,
        response.status_code,
        (time.perf_counter() - started) * 1000,
    )
    return response


@app.exception_handler(SchedulingError)
async def scheduling_error_handler(request: Request, exc: SchedulingError):
    if exc.status_code >= 500:
        logger.error('%s %s failed: %s', request.method, request.url.path, exc.reason, exc_info=exc.__cause__)
    else:
        logger.warning('%s %s rejected (%s): %s', request.method, request.url.path, exc.status_code, exc.reason)
    return JSONResponse(status_code=exc.status_code, content={'success': False, 'error': exc.reason})


@app.exception_handler(SQLAlchemyError)
async def database_error_handler(request: Request, exc: SQLAlchemyError):
    logger.exception('Database error on %s %s', request.method, request.url.path, exc_info=exc)
    return JSONResponse(status_code=503, content={'success': False, 'error': 'Database unavailable'})


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    logger.warning('Validation error on %s %s: %s', request.method, request.url.path, exc.errors())
    return JSONResponse(
        status_code=400,
        content={'success': False, 'error': 'Validation error', 'errors': jsonable_errors(exc)},
    )


def jsonable_errors(exc: RequestValidationError) -> list[dict]:
    return [
        {'loc': [str(part) for part in error.get('loc', ())], 'msg': error.get('msg', '')}
        for error in exc.errors()
    ]


@app.on_event('startup')
def initialize_database() -> None:
    config.validate_runtime_config()
    try:
        Base.metadata.create_all(bind=engine)
        ensure_slot_schema()
    except SQLAlchemyError:
        logger.exception('Database initialization failed. Check DATABASE_URL and database credentials.')


@app.get('/api/v1/health')
def health():
    return {'ok': True, 'name': config.APP_NAME, 'time': to_utc_iso(datetime.now(timezone.utc))}


app.include_router(slot_routes.router, prefix='/api/v1')
app.include_router(api_key_routes.router, prefix='/api/v1')
