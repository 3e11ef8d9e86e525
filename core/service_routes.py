"""Service-level routes: health check and public client configuration."""

from datetime import datetime

from config import config
from models import PublicConfigResponse

from .app_state import APP_VERSION, app


@app.get("/health")
async def health_check():
    """Health check endpoint"""
    return {
        "status": "healthy",
        "version": APP_VERSION,
        "timestamp": datetime.now().isoformat()
    }


@app.get("/api/config", response_model=PublicConfigResponse)
async def public_config() -> PublicConfigResponse:
    """Settings the editor front end needs to recognise already-rehosted images"""
    return PublicConfigResponse(cdn_base_url=config.STORAGE.public_base_url)
