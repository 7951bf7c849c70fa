import logging
import os
from contextlib import asynccontextmanager
from pathlib import Path

import uvicorn
from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from starlette.exceptions import HTTPException as StarletteHTTPException

from carehub import __version__
from carehub.api import (
    auth_router,
    appointments_router,
    orders_router,
    prescriptions_router,
    payments_router,
    upload_router,
)
from carehub.api.upload import UPLOAD_BASE_DIR
from carehub.database.connection import engine, Base

load_dotenv()

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s"
)
logger = logging.getLogger(__name__)

CORS_ORIGINS = [
    origin.strip()
    for origin in os.getenv("CORS_ORIGINS", "http://localhost:19006,http://localhost:5173").split(",")
    if origin.strip()
]


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Create database tables
    Base.metadata.create_all(bind=engine)
    logger.info("CareHub API %s started", __version__)
    yield


app = FastAPI(
    title="CareHub API",
    description="Healthcare marketplace: appointments, medicine orders, prescriptions and payments",
    version=__version__,
    lifespan=lifespan
)

# ✅ IMPORTANT: Serve uploaded files
UPLOAD_BASE_DIR.mkdir(parents=True, exist_ok=True)
app.mount("/uploads", StaticFiles(directory=str(UPLOAD_BASE_DIR)), name="uploads")

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# ==================== ERROR HANDLERS ====================

@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "message": str(exc.detail)},
        headers=getattr(exc, "headers", None)
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    errors = [
        {
            "field": ".".join(str(part) for part in err.get("loc", []) if part != "body"),
            "message": err.get("msg", "Invalid value")
        }
        for err in exc.errors()
    ]
    first = errors[0] if errors else {"field": "", "message": "Invalid request"}
    message = f"{first['field']}: {first['message']}" if first["field"] else first["message"]
    return JSONResponse(
        status_code=400,
        content={"success": False, "message": message, "errors": errors}
    )


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=500,
        content={"success": False, "message": "Internal server error", "error": str(exc)}
    )

# Include routers
app.include_router(auth_router)
app.include_router(appointments_router)
app.include_router(orders_router)
app.include_router(prescriptions_router)
app.include_router(payments_router)
app.include_router(upload_router)


@app.get("/")
async def root():
    return {
        "message": "CareHub API",
        "status": "running",
        "version": __version__,
        "endpoints": {
            "auth": "/api/auth",
            "appointments": "/api/appointments",
            "orders": "/api/orders",
            "prescriptions": "/api/prescriptions",
            "payments": "/api/payments",
            "uploads": "/api/uploads",
            "docs": "/docs"
        }
    }


@app.get("/health")
async def health_check():
    return {"status": "healthy"}


if __name__ == "__main__":
    uvicorn.run("carehub.main:app", host="0.0.0.0", port=int(os.getenv("PORT", "8000")), reload=True)
