from fastapi import APIRouter

from .. import runtime
from ..schemas import CacheStatus, DataStatus
from ..services.status import get_status

router = APIRouter(prefix="/status", tags=["status"])


@router.get("/components", response_model=list[DataStatus])
def components():
    return get_status(runtime.refresher)


@router.get("/cache")
def cache_status():
    return {
        "store": runtime.store.health_check(),
        "in_flight": [str(key) for key in runtime.refresher.in_flight()],
        "series": [CacheStatus(**row) for row in runtime.refresher.status()],
    }
