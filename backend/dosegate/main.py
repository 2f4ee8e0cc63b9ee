"""
🔥 THINK ULTRA! Dosegate Service
Dose-response dataset detection for raw spreadsheet grids

Port: 8004
"""

from dotenv import load_dotenv

load_dotenv()  # Load .env file

from contextlib import asynccontextmanager
from typing import Any, Dict

from fastapi import FastAPI

from shared.config.settings import get_settings
from shared.services.service_factory import DOSEGATE_SERVICE_INFO, create_fastapi_service, run_service
from shared.utils.app_logger import configure_logging, get_logger

from dosegate.routers.detection_router import router as detection_router

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """애플리케이션 시작/종료 이벤트"""
    settings = get_settings()
    configure_logging(settings.log_level)
    app.state.detection_settings = settings.detection
    logger.info(f"🚀 Dosegate Service starting ({settings.environment.value})")

    yield

    logger.info("🔄 Dosegate Service stopped")


app = create_fastapi_service(
    service_info=DOSEGATE_SERVICE_INFO,
    custom_lifespan=lifespan,
    include_health_check=False,
    include_logging_middleware=True
)

app.include_router(detection_router, prefix="/api/v1")


@app.get("/")
async def root() -> Dict[str, Any]:
    """루트 엔드포인트"""
    return {
        "service": "dosegate",
        "version": DOSEGATE_SERVICE_INFO.version,
        "status": "running",
        "description": DOSEGATE_SERVICE_INFO.description,
        "endpoints": {
            "health": "/health",
            "analyze": "/api/v1/dosegate/analyze",
            "analyze_gate": "/api/v1/dosegate/analyze/gate",
            "analyze_excel": "/api/v1/dosegate/analyze/excel",
            "analyze_csv": "/api/v1/dosegate/analyze/csv",
            "analyze_workbook": "/api/v1/dosegate/analyze/workbook",
            "extract": "/api/v1/dosegate/extract",
            "docs": "/docs",
        },
    }


@app.get("/health")
async def health_check() -> Dict[str, Any]:
    """서비스 상태 확인"""
    return DOSEGATE_SERVICE_INFO.health()


if __name__ == "__main__":
    run_service(app, DOSEGATE_SERVICE_INFO, "dosegate.main:app")
