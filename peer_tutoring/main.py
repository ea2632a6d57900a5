from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from datetime import datetime
from peer_tutoring.logger import logger
from peer_tutoring.config import get_settings
from peer_tutoring.errors import TutoringError
from peer_tutoring.rate_limit import limiter

### ROUTERS
from peer_tutoring.routers.session import router as session_router


class LoggingMiddleware(BaseHTTPMiddleware):
    """
    Middleware for logging all HTTP requests and responses.

    Logs request method, URL, response status, and timing information.
    Handles errors by logging exceptions.
    """
    async def dispatch(self, request: Request, call_next):
        # Log request
        start_time = datetime.now()
        logger.info(f"Request: {request.method} {request.url}")

        try:
            response = await call_next(request)
            # Log response
            duration = (datetime.now() - start_time).total_seconds()
            logger.info(f"Response: {response.status_code} - Duration: {duration:.3f}s")
            return response
        except Exception as e:
            # Log error
            logger.error(f"Error processing request: {str(e)}")
            raise

app = FastAPI(
    title=get_settings().app_name,
    version=get_settings().app_version,
    openapi_url="/openapi.json",
    docs_url="/docs",
    redoc_url="/redoc"
)

# Add logging middleware
app.add_middleware(LoggingMiddleware)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=['*'], # Allow all origins for now
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE"],
    allow_headers=["*"],
    max_age=3600
)

# Rate limiting
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

@app.exception_handler(TutoringError)
async def tutoring_error_handler(request: Request, exc: TutoringError):
    """Render domain errors as {"detail", "code"} with the error's HTTP status."""
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc}")
    else:
        logger.warning(f"{request.method} {request.url.path} rejected: {exc}")
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message, "code": exc.code.value})

@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    """Malformed request bodies and parameters are client errors (400), like every other validation failure."""
    messages = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error.get("loc", ()) if part != "body")
        messages.append(f"{location}: {error.get('msg')}" if location else error.get("msg"))
    logger.warning(f"{request.method} {request.url.path} invalid request: {messages}")
    return JSONResponse(status_code=400, content={"detail": ", ".join(messages), "code": "VALIDATION_ERROR", "errors": messages})

# Include routers
app.include_router(session_router, tags=['sessions'])

@app.get("/")
def read_root():
    """
    Root endpoint returning API welcome message.

    Returns:
    - dict: Welcome message
    """
    return {"message": f"Welcome to the {get_settings().app_name}!"}

@app.on_event("startup")
async def startup_event():
    """
    Application startup handler.
    Logs startup and whether calendar sync is configured.
    """
    logger.info("Server starting up...")
    if not get_settings().calendar_configured:
        logger.info("Calendar sync disabled (no Google credentials)")

@app.on_event("shutdown")
async def shutdown_event():
    logger.info("Server shutting down...")

if __name__ == '__main__':
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
