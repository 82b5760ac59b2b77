# styleslot/health.py
from fastapi import APIRouter

from styleslot.config import get_settings

router = APIRouter()


@router.get("/health")
def health():
    settings = get_settings()
    return {
        "ok": True,
        "mode": "mock" if settings.use_mock_data or not settings.api_base_url else "live",
        "push": settings.push_enabled,
    }
