from pathlib import Path
from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from starlette.exceptions import HTTPException as StarletteHTTPException
from prometheus_fastapi_instrumentator import Instrumentator
from storefront.version import VERSION
from storefront.api import activity, orders
from storefront.core.config import settings
from storefront.core.errors import CheckoutError
from storefront.core.logger import setup_logger

logger = setup_logger(__name__)

instrumentator = Instrumentator()

app = FastAPI(title="Storefront Service", version=VERSION)

instrumentator.instrument(app).expose(
    app,
    include_in_schema=False,
    endpoint="/metrics",
    should_gzip=True,
)

# Health endpoints
@app.get("/health")
def health():
    return {"status": "ok"}

@app.get("/v1/_info")
def info():
    return {"service": "storefront", "version": VERSION}

# Error bodies are always {"success": false, "message": ...}
@app.exception_handler(CheckoutError)
async def checkout_error_handler(request: Request, exc: CheckoutError):
    return JSONResponse(status_code=exc.status_code, content={"success": False, "message": exc.message})

@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "message": str(exc.detail)},
        headers=getattr(exc, "headers", None),
    )

@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=400,
        content={"success": False, "message": "Invalid request.", "errors": jsonable_encoder(exc.errors())},
    )

@app.on_event("startup")
async def startup_event():
    Path(settings.INVOICE_DIR).mkdir(parents=True, exist_ok=True)
    for route in app.routes:
        if hasattr(route, "methods") and hasattr(route, "path"):
            logger.info(f"{sorted(route.methods)} {route.path}")

app.mount("/invoices", StaticFiles(directory=settings.INVOICE_DIR, check_dir=False), name="invoices")

# Include routers
app.include_router(orders.router, prefix="/orders", tags=["orders"])
app.include_router(activity.router, prefix="/activity", tags=["activity"])
