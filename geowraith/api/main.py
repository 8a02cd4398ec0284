"""
HTTP surface for the geolocation service.
"""

import threading

from fastapi import Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .schemas import ErrorResponse, HealthResponse, PredictRequest, PredictResponse
from ..core.config import VERSION
from ..core.errors import IndexBuildFailed, InvalidImage, PredictionCancelled
from ..core.service import GeolocationService
from util.logging import logger


class ApiError(Exception):
    """Error rendered as {error, message} with an HTTP status."""

    def __init__(self, status_code: int, error_code: str, message: str):
        self.status_code = status_code
        self.error_code = error_code
        self.message = message
        super().__init__(message)


# Initialize the FastAPI application
app = FastAPI(
    title="GeoWraith API",
    version=VERSION,
    description="Local image geolocation by embedding retrieval",
)

# Add CORS middleware to allow the demo UI to call the API
app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:3000", "http://127.0.0.1:3000", "http://localhost:5173", "http://127.0.0.1:5173"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

_service = None
_service_lock = threading.Lock()


def get_service() -> GeolocationService:
    """Process-wide service, created on first request."""
    global _service
    with _service_lock:
        if _service is None:
            _service = GeolocationService()
        return _service


@app.exception_handler(ApiError)
async def api_error_handler(request: Request, exc: ApiError):
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(error=exc.error_code, message=exc.message).model_dump(),
    )


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    messages = "; ".join(str(err.get("msg", "")) for err in exc.errors())
    return JSONResponse(
        status_code=400,
        content=ErrorResponse(error="invalid_request", message=messages or "invalid request").model_dump(),
    )


@app.get("/health", response_model=HealthResponse)
def health_check_endpoint(service: GeolocationService = Depends(get_service)):
    """Report readiness of the reference index."""
    state = service.health()
    return HealthResponse(status="healthy", version=VERSION, **state)


@app.post("/predict", response_model=PredictResponse)
def predict_endpoint(req: PredictRequest, service: GeolocationService = Depends(get_service)):
    """Predict a location for a base64 or data-URL image."""
    try:
        image_bytes = req.image_bytes()
    except ValueError as e:
        raise ApiError(400, "invalid_image", str(e))

    try:
        result = service.predict(image_bytes, mode=req.options.mode)
    except InvalidImage as e:
        raise ApiError(400, "invalid_image", str(e))
    except PredictionCancelled as e:
        raise ApiError(499, "cancelled", str(e))
    except IndexBuildFailed as e:
        logger.error(f"Reference index unavailable: {e}")
        raise ApiError(503, "index_unavailable", str(e))

    return result.to_payload()
