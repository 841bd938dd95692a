from functools import lru_cache

from app.nk_doses.service import DoseService
from app.nk_doses.settings import Settings


@lru_cache(maxsize=1)
def _service() -> DoseService:
    return DoseService.from_settings(Settings.from_env())


def get_service() -> DoseService:
    """FastAPI dependency; tests override it with a memory-backed service."""
    return _service()
