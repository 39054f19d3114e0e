from pathlib import Path

import uvicorn
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from starlette.exceptions import HTTPException as StarletteHTTPException

from app.api.routes_auth import router as auth_router
from app.api.routes_chat import router as chat_router
from app.api.routes_conversation import router as conversation_router
from app.api.routes_image import router as image_router

from app.core.config_loader import settings
from app.core.errors import RelayError
from app.core.logger import logger


app = FastAPI(
    title="Wallet Chat Relay",
    description="Streaming chat relay with image analysis/generation and wallet-owned conversation history",
    version="1.0.0"
)

# -------------------------------------------------------------
# CORS
# -------------------------------------------------------------
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["X-Reply-Kind"],
)


# -------------------------------------------------------------
# ERRORS -> {"error": ...}
# -------------------------------------------------------------
@app.exception_handler(RelayError)
async def relay_error_handler(request: Request, exc: RelayError):
    if exc.http_status >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    else:
        logger.info("%s %s rejected: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.http_status, content={"error": exc.message})


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(status_code=exc.status_code, content={"error": exc.detail}, headers=exc.headers)


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(status_code=400, content={"error": "Invalid request body"})


# -------------------------------------------------------------
# ROUTES
# -------------------------------------------------------------
app.include_router(auth_router)
app.include_router(chat_router)
app.include_router(image_router)
app.include_router(conversation_router)

media_root = Path(settings.MEDIA_ROOT)
media_root.mkdir(parents=True, exist_ok=True)
app.mount("/media", StaticFiles(directory=str(media_root)), name="media")


# -------------------------------------------------------------
# ROOT ENDPOINT
# -------------------------------------------------------------
@app.get("/")
def root():
    return {
        "status": "ok",
        "message": "Wallet Chat Relay backend is running",
        "env": settings.environment
    }


# -------------------------------------------------------------
# RUN LOCAL
# -------------------------------------------------------------
if __name__ == "__main__":
    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=8000,
        reload=True
    )
