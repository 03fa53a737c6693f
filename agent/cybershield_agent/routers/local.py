"""Local status API endpoints (bound to localhost)."""
import logging
import secrets
from dataclasses import dataclass
from typing import Any, Dict, Optional

from fastapi import APIRouter, Body, Depends, FastAPI, Header, HTTPException, Request

from .. import __version__
from ..models import CREDENTIAL_KEYS
from ..schemas.local_api import (
    AgentInfoResponse,
    HealthResponse,
    ScanAccepted,
    ScanRequest,
)
from ..services.config_store import ConfigStore
from ..services.scheduler import SchedulerService
from ..services.state import AgentState
from ..services.task_runner import ScanInProgressError, TaskRunner

logger = logging.getLogger(__name__)

# Never returned by GET /api/config and never writable through POST /api/config
HIDDEN_KEYS = CREDENTIAL_KEYS
READ_ONLY_KEYS = ("agentId",) + CREDENTIAL_KEYS


@dataclass
class LocalApiContext:
    state: AgentState
    store: ConfigStore
    runner: TaskRunner
    scheduler: Optional[SchedulerService] = None


def get_context(request: Request) -> LocalApiContext:
    return request.app.state.context


async def require_token(
    authorization: Optional[str] = Header(None),
    context: LocalApiContext = Depends(get_context),
) -> None:
    """Check the ``Authorization: Bearer <localApiToken>`` header."""
    expected = await context.store.get("localApiToken", None)
    if not authorization or not authorization.startswith("Bearer "):
        raise HTTPException(status_code=401, detail="Missing bearer token")
    token = authorization[len("Bearer "):].strip()
    if not expected or not secrets.compare_digest(token, expected):
        raise HTTPException(status_code=401, detail="Invalid token")


router = APIRouter(prefix="/api", tags=["agent"], dependencies=[Depends(require_token)])


@router.get("/info", response_model=AgentInfoResponse)
async def get_info(context: LocalApiContext = Depends(get_context)):
    identity = context.state.identity
    active = context.runner.active
    return AgentInfoResponse(
        agent_id=identity.agent_id,
        client_id=identity.client_id,
        hostname=identity.hostname,
        platform=identity.platform,
        arch=identity.arch,
        version=identity.version,
        status=context.state.status.value,
        session_state=context.state.session_state.value,
        server_url=await context.store.get("serverUrl", None),
        last_scan=context.state.last_scan,
        active_scan=active.id if active else None,
        system_info=await context.store.get("systemInfo", None),
    )


@router.post("/scan", response_model=ScanAccepted, status_code=202)
async def start_scan(data: ScanRequest, context: LocalApiContext = Depends(get_context)):
    try:
        task = context.runner.submit(data.type)
    except ScanInProgressError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    logger.info(f"Scan {task.id} requested through the local API")
    return ScanAccepted(scan_id=task.id, type=task.type, status=task.status.value)


@router.get("/config")
async def get_config(context: LocalApiContext = Depends(get_context)):
    values = await context.store.get_all()
    return {k: v for k, v in values.items() if k not in HIDDEN_KEYS}


@router.post("/config")
async def update_config(
    data: Dict[str, Any] = Body(...),
    context: LocalApiContext = Depends(get_context),
):
    """Merge a raw key/value map into the configuration."""
    rejected = sorted(k for k in data if k in READ_ONLY_KEYS)
    if rejected:
        raise HTTPException(status_code=400, detail=f"Cannot modify protected keys: {', '.join(rejected)}")

    values = dict(data)
    cron_expression = values.pop("scanInterval", None)
    if cron_expression is not None:
        try:
            if context.scheduler is not None:
                await context.scheduler.reschedule(cron_expression)
            else:
                SchedulerService.parse(cron_expression)
                await context.store.set("scanInterval", cron_expression)
        except ValueError as e:
            raise HTTPException(status_code=400, detail=f"Invalid scanInterval: {e}")

    await context.store.set_many(values)
    logger.info(f"Configuration updated through the local API: {', '.join(sorted(data))}")
    return {"success": True}


def create_local_api(context: LocalApiContext) -> FastAPI:
    """Create the local status API app."""
    app = FastAPI(
        title="CyberShieldX Agent API",
        description="Local agent status and control",
        version=__version__,
    )
    app.state.context = context
    app.include_router(router)

    @app.get("/health", response_model=HealthResponse)
    async def health_check():
        return HealthResponse(version=context.state.identity.version, agent_status=context.state.status.value)

    return app
