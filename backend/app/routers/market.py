import logging

from fastapi import APIRouter, HTTPException

from .. import runtime
from ..market_data import normalize_return_mode
from ..schemas import MetaResponse, SimulationRequest, SimulationResponse
from ..services.backtest import describe_assets, run_backtest
from ..services.upstream import AllProvidersFailedError

router = APIRouter(prefix="/market", tags=["market"])
logger = logging.getLogger(__name__)


def _raise_market_error(exc: Exception) -> None:
    detail = str(exc)
    if isinstance(exc, ValueError):
        raise HTTPException(status_code=400, detail=detail)
    logger.exception("Market data error: %s", detail)
    if isinstance(exc, AllProvidersFailedError):
        raise HTTPException(status_code=502, detail=detail)
    raise HTTPException(status_code=503, detail=detail)


@router.get("/meta", response_model=MetaResponse)
async def meta(return_mode: str = "total_return"):
    try:
        return await describe_assets(runtime.refresher, normalize_return_mode(return_mode))
    except Exception as exc:
        _raise_market_error(exc)


@router.post("/simulate", response_model=SimulationResponse)
async def simulate(payload: SimulationRequest):
    try:
        return await run_backtest(runtime.refresher, payload)
    except Exception as exc:
        _raise_market_error(exc)


@router.post("/refresh")
async def refresh_all():
    return await runtime.refresher.refresh_all("manual")
