from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from .config import settings
from .database import engine
from .models import Base
from .dependencies import get_character_engine, get_rag_service, get_safety_gate
import asyncio
import logging
import os

# Configure logging
os.makedirs(os.path.dirname(settings.log_file), exist_ok=True)
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper()),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    handlers=[
        logging.FileHandler(settings.log_file),
        logging.StreamHandler()
    ]
)

logger = logging.getLogger(__name__)

# Create FastAPI app
app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    debug=settings.debug
)

_monitor_task = None


@app.on_event("startup")
async def startup_event():
    """Create tables and start the resource monitor"""
    global _monitor_task
    logger.info("Initializing services...")

    Base.metadata.create_all(bind=engine)

    _monitor_task = asyncio.create_task(get_safety_gate().monitor())
    get_character_engine()

    logger.info("Application startup complete")


@app.on_event("shutdown")
async def shutdown_event():
    if _monitor_task is not None:
        _monitor_task.cancel()
    logger.info("Application shutdown complete")


# Add CORS middleware
logger.info(f"CORS Origins: {settings.cors_origins}")
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["*"],
)


# Health check endpoint
@app.get("/health")
async def health_check():
    """Health check endpoint"""
    engine_health = get_character_engine().health_check()
    retrieval = await get_rag_service().health_check()
    gate = get_safety_gate()

    status = "healthy" if retrieval["status"] == "healthy" else "degraded"
    return {
        "status": status,
        "app": settings.app_name,
        "version": settings.app_version,
        "llm": {"api_type": settings.llm_api_type, "model": settings.llm_model},
        "embedding": retrieval["embedding"],
        "active_generations": gate.active_count,
        "active_characters": engine_health["active_characters"],
        "total_messages": engine_health["total_messages"],
    }


# Import and include routers
from .api import characters, chat, emergency

app.include_router(characters.router, prefix="/api/characters", tags=["characters"])
app.include_router(chat.router, prefix="/api/chat", tags=["chat"])
app.include_router(emergency.router, prefix="/api/emergency", tags=["emergency"])


# Root endpoint
@app.get("/")
async def root():
    """Root endpoint"""
    return {
        "message": f"Welcome to {settings.app_name}",
        "version": settings.app_version,
        "docs": "/docs"
    }


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", "9876"))
    uvicorn.run(app, host="0.0.0.0", port=port)
