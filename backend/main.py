import logging
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse
from fastapi.staticfiles import StaticFiles

from config import get_log_level_from_env, get_settings, set_log_level
from database import init_db
from log_utils import install_safe_logging
from routers import data_mapping, filters, proxies, settings

logging.basicConfig(
    level=get_log_level_from_env(),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
install_safe_logging()
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    set_log_level(get_settings().backend_log_level)
    logger.info("[MAIN] Channel rule service started")
    yield


app = FastAPI(
    title="Channel Rule Manager",
    description="Data-mapping rules, filters and proxy assembly for IPTV channel lineups",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS for development
app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:5173", "http://localhost:3000"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(data_mapping.router)
app.include_router(filters.router)
app.include_router(proxies.router)
app.include_router(settings.router)


# Health check
@app.get("/api/health")
async def health_check():
    return {"status": "healthy", "service": "channel-rule-manager"}


# Serve static files in production
static_dir = os.path.join(os.path.dirname(__file__), "static")
if os.path.exists(static_dir):
    app.mount(
        "/assets", StaticFiles(directory=os.path.join(static_dir, "assets")), name="assets"
    )

    @app.get("/{full_path:path}")
    async def serve_spa(full_path: str):
        # Serve index.html for all non-API routes (SPA routing)
        index_path = os.path.join(static_dir, "index.html")
        if os.path.exists(index_path):
            return FileResponse(index_path)
        return {"error": "Frontend not built"}
