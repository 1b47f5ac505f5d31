from fastapi import APIRouter
from typing import Any

from formtester.core.config import get_settings

router = APIRouter()

@router.get("/health")
def health() -> dict[str, Any]:
    settings = get_settings()
    return {
        "status": "ok",
        "app": settings.APP_NAME,
        "version": settings.VERSION,
        "timerBackend": settings.TIMER_BACKEND,
        "screenshotBackend": settings.SCREENSHOT_BACKEND,
    }
