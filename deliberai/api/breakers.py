from typing import Any, List

import structlog
from fastapi import APIRouter, Depends

from deliberai.api import deps
from deliberai.core.circuit_breaker import PersistedCircuitBreaker
from deliberai.schemas import CircuitBreakerStateOut

router = APIRouter()
logger = structlog.get_logger(__name__)


@router.get("", response_model=List[CircuitBreakerStateOut])
async def list_breakers(breaker: PersistedCircuitBreaker = Depends(deps.get_breaker)) -> Any:
    """All breakers that have ever recorded a failure."""
    return await breaker.get_all_states()


@router.get("/{name}", response_model=CircuitBreakerStateOut)
async def get_breaker_state(name: str, breaker: PersistedCircuitBreaker = Depends(deps.get_breaker)) -> Any:
    """Current state of one breaker. Does not grant a half-open probe."""
    return await breaker.get_state(name)


@router.post("/{name}/reset", response_model=CircuitBreakerStateOut)
async def reset_breaker(name: str, breaker: PersistedCircuitBreaker = Depends(deps.get_breaker)) -> Any:
    await breaker.reset(name)
    logger.info("Circuit breaker manually reset", operation=name)
    return await breaker.get_state(name)
