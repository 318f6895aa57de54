from __future__ import annotations

import time
from typing import Any, Dict, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import RedirectResponse
from pydantic import ValidationError

from printsentry import __version__
from printsentry.agent import AgentOrchestrator
from printsentry.config import merge_configuration
from printsentry.log import get_logger
from printsentry.models import AgentCommand, DeviceStatus

logger = get_logger("api")

# ---------------------------------------------------------------------------
# App setup
# ---------------------------------------------------------------------------

app = FastAPI(title="PrintSentry Agent", version=__version__, docs_url="/docs", redoc_url="/redoc")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

_agent: Optional[AgentOrchestrator] = None
_api_key: Optional[str] = None


def attach(agent: Optional[AgentOrchestrator], api_key: Optional[str] = None) -> None:
    """Bind the app to a running agent (``None`` detaches it)."""
    global _agent, _api_key
    _agent = agent
    _api_key = api_key or None


@app.middleware("http")
async def log_requests(request: Request, call_next):
    start = time.monotonic()
    response = await call_next(request)
    elapsed = (time.monotonic() - start) * 1000
    logger.info("%s %s %d (%.1fms)", request.method, request.url.path,
                response.status_code, elapsed)
    return response

# ---------------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------------

async def verify_api_key(
    authorization: Optional[str] = Header(default=None),
    token: Optional[str] = Query(default=None),
):
    if not _api_key:
        return
    bearer_token = None
    if authorization and authorization.startswith("Bearer "):
        bearer_token = authorization[7:]
    actual = bearer_token or token
    if not actual or actual != _api_key:
        raise HTTPException(status_code=401, detail="Invalid or missing API key")


def require_agent() -> AgentOrchestrator:
    if _agent is None:
        raise HTTPException(status_code=503, detail="Agent not running")
    return _agent

# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------

@app.get("/")
def read_root():
    return RedirectResponse(url="/docs")

# --- Status ---

@app.get("/api/v1/health", dependencies=[Depends(verify_api_key)])
def get_health(agent: AgentOrchestrator = Depends(require_agent)):
    return agent.get_health_status().to_wire()

@app.get("/api/v1/metrics", dependencies=[Depends(verify_api_key)])
def get_metrics(agent: AgentOrchestrator = Depends(require_agent)):
    return agent.get_metrics().to_wire()

# --- Devices ---

@app.get("/api/v1/devices", dependencies=[Depends(verify_api_key)])
def list_devices(
    status: Optional[DeviceStatus] = None,
    agent: AgentOrchestrator = Depends(require_agent),
):
    devices = agent.get_devices()
    if status is not None:
        devices = [device for device in devices if device.status == status]
    return {"items": [device.to_wire() for device in devices], "total": len(devices)}

@app.get("/api/v1/devices/{address}", dependencies=[Depends(verify_api_key)])
def get_device(address: str, agent: AgentOrchestrator = Depends(require_agent)):
    device = agent.get_device(address)
    if device is None:
        raise HTTPException(status_code=404, detail="Device not found")
    return device.to_wire()

# --- Actions ---

@app.post("/api/v1/scan", dependencies=[Depends(verify_api_key)])
def trigger_scan(agent: AgentOrchestrator = Depends(require_agent)):
    found = agent.scan_network()
    return {"status": "completed", "devicesFound": len(found), "devicesMonitored": len(agent.registry)}

@app.post("/api/v1/report", dependencies=[Depends(verify_api_key)])
def trigger_report(agent: AgentOrchestrator = Depends(require_agent)):
    return {"sent": agent.send_report()}

@app.post("/api/v1/commands", dependencies=[Depends(verify_api_key)])
def run_command(command: AgentCommand, agent: AgentOrchestrator = Depends(require_agent)):
    return agent.process_command(command).to_wire()

# --- Configuration ---

def _public_configuration(agent: AgentOrchestrator) -> Dict[str, Any]:
    data = agent.config.to_wire()
    if data.get("apiKey"):
        data["apiKey"] = "***"
    return data

@app.get("/api/v1/configuration", dependencies=[Depends(verify_api_key)])
def get_configuration(agent: AgentOrchestrator = Depends(require_agent)):
    return _public_configuration(agent)

@app.put("/api/v1/configuration", dependencies=[Depends(verify_api_key)])
def update_configuration(
    changes: Dict[str, Any],
    agent: AgentOrchestrator = Depends(require_agent),
):
    try:
        config = merge_configuration(agent.config, changes)
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=e.errors(include_url=False, include_context=False))
    agent.update_configuration(config)
    return _public_configuration(agent)
