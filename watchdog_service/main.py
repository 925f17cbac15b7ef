from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

from fastapi import Body, Depends, FastAPI, HTTPException, Request, Response
from loguru import logger

from watchdog_service.db import Settings
from watchdog_service.errors import ValidationError
from watchdog_service.models import AggregateHealth, CheckDefinition
from watchdog_service.service import WatchdogService


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start the watchdog with the app, stop it on shutdown"""
    if getattr(app.state, "watchdog", None) is None:
        app.state.watchdog = WatchdogService.from_settings(Settings())
    await app.state.watchdog.start()
    try:
        yield
    finally:
        await app.state.watchdog.stop()


app = FastAPI(title="Watchdog Service", lifespan=lifespan)


def get_watchdog(request: Request) -> WatchdogService:
    watchdog = getattr(request.app.state, "watchdog", None)
    if watchdog is None or not watchdog.started:
        raise HTTPException(status_code=500, detail="Watchdog service not started")
    return watchdog


# Watchdog health, for self monitoring. "health" is reserved as an application name


@app.get("/healthcheck/health")
async def get_watchdog_health(watchdog: WatchdogService = Depends(get_watchdog)) -> Response:
    """200 when checks are being monitored, 204 when there are none"""
    if watchdog.registry.count() == 0:
        return Response(status_code=204)
    return Response(status_code=200)


@app.get("/summary", response_model=AggregateHealth)
async def get_aggregate_health(watchdog: WatchdogService = Depends(get_watchdog)) -> AggregateHealth:
    """Worst-case health across all checks"""
    try:
        return await watchdog.current_aggregate_health()
    except Exception as e:
        logger.exception("Failed to aggregate health")
        raise HTTPException(status_code=500, detail=str(e))


@app.get("/metrics")
async def get_metrics(watchdog: WatchdogService = Depends(get_watchdog)) -> Dict[str, int]:
    return watchdog.metrics()


# Health checks


@app.get("/healthcheck", response_model=List[CheckDefinition])
@app.get("/healthcheck/{application}", response_model=List[CheckDefinition])
@app.get("/healthcheck/{application}/{service}", response_model=List[CheckDefinition])
@app.get("/healthcheck/{application}/{service}/{partition}", response_model=List[CheckDefinition])
async def get_health_checks(
    application: Optional[str] = None,
    service: Optional[str] = None,
    partition: Optional[str] = None,
    watchdog: WatchdogService = Depends(get_watchdog),
) -> List[CheckDefinition]:
    """List health checks, optionally filtered by application, service and partition"""
    try:
        return await watchdog.list(application, service, partition)
    except Exception as e:
        logger.exception("Failed to list health checks")
        raise HTTPException(status_code=500, detail=str(e))


@app.post("/healthcheck", response_model=CheckDefinition)
async def post_health_check(
    definition: Dict[str, Any] = Body(...),
    reset_history: bool = False,
    watchdog: WatchdogService = Depends(get_watchdog),
) -> CheckDefinition:
    """Register a health check, replacing any existing one for the same service partition"""
    try:
        return await watchdog.register(definition, reset_history=reset_history)
    except ValidationError as e:
        logger.warning(f"Rejected health check: {e}")
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        logger.exception("Failed to register health check")
        raise HTTPException(status_code=500, detail=str(e))


if __name__ == "__main__":
    from dotenv import load_dotenv

    load_dotenv()
    import uvicorn

    settings = Settings()
    uvicorn.run(app, host=settings.api_host, port=settings.api_port)
