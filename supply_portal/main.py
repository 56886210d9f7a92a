import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import PlainTextResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from supply_portal.config import settings
from supply_portal.errors import DomainError
from supply_portal.responses import envelope, error_envelope
from supply_portal.routers import auth, requests, stock
from supply_portal.security.headers import install_security_headers

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
)
logger = logging.getLogger(__name__)

app = FastAPI(title='Diocesan Supply Portal')

install_security_headers(app)

app.include_router(auth.router)
app.include_router(requests.router)
app.include_router(stock.router)


@app.exception_handler(DomainError)
async def domain_error_handler(request: Request, exc: DomainError):
    if exc.status_code >= 500:
        logger.error('%s %s failed: %s', request.method, request.url.path, exc.message, exc_info=True)
    return error_envelope(exc.message, status_code=exc.status_code)


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    first = errors[0] if errors else {}
    location = '.'.join(str(part) for part in first.get('loc', ()) if part != 'body')
    message = f"{location}: {first.get('msg')}" if location else str(first.get('msg', 'Invalid input'))
    return error_envelope(message, status_code=400)


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    return error_envelope(str(exc.detail), status_code=exc.status_code)


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.error('Unhandled exception on %s %s', request.method, request.url.path, exc_info=True)
    message = 'Internal server error'
    if not settings.is_production:
        message = f'{message}: {exc}'
    return error_envelope(message, status_code=500)


@app.get('/api/health')
def health():
    return envelope({'status': 'ok'}, 'Service is healthy')


@app.get('/robots.txt', response_class=PlainTextResponse)
def robots_txt() -> str:
    return 'User-agent: *\nDisallow: /\n'
