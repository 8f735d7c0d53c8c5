"""Fleet server — /api/* endpoints for demand signals, manual provisioning,
task reports and agent launch logs.

Wires together the Multipass client, the in-memory host registry, the
controller and the agent lifecycle.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from sse_starlette.sse import EventSourceResponse

from vmfleet.agent import AgentLifecycle, AgentRecord, ConnectionState
from vmfleet.backend.client import MultipassClient
from vmfleet.config import FleetConfig, load_fleet_file
from vmfleet.controller import FleetController, ProvisionRequest
from vmfleet.errors import FleetError
from vmfleet.events import EventBuffer
from vmfleet.host import InMemoryHostRegistry, StaticCredentialResolver

logger = logging.getLogger(__name__)

_controller: FleetController | None = None
_registry: InMemoryHostRegistry = InMemoryHostRegistry()
_events: EventBuffer = EventBuffer()
_config: FleetConfig = FleetConfig()
_lifecycle: AgentLifecycle = AgentLifecycle()


def _get_controller() -> FleetController:
    if _controller is None:
        raise RuntimeError("Server not initialized")
    return _controller


def _get_agent(name: str) -> AgentRecord:
    agent = _registry.get_node(name)
    if agent is None:
        raise HTTPException(status_code=404, detail=f"Agent not found: {name}")
    return agent


@asynccontextmanager
async def lifespan(app: FastAPI):
    global _controller, _config, _events, _lifecycle

    logging.basicConfig(level=logging.INFO, format="%(name)s %(levelname)s %(message)s")

    _config = FleetConfig.from_env()
    fleet = load_fleet_file(_config.fleet_file)

    _events = EventBuffer(retention=_config.event_retention_seconds)

    _lifecycle = AgentLifecycle(termination_delay=_config.termination_delay_seconds)
    _controller = FleetController(
        name=fleet.name,
        templates=fleet.templates,
        client=MultipassClient(_config.multipass_bin),
        registry=_registry,
        credentials=StaticCredentialResolver.of(fleet.credentials),
        config=_config,
        fallback_label=fleet.fallback_label,
        events=_events,
    )
    await _controller.startup()
    logger.info("Controller %s ready with %d templates", fleet.name, len(fleet.templates))

    yield

    _registry.terminating = True
    await _controller.shutdown()


app = FastAPI(title="vmfleet", lifespan=lifespan)


@app.exception_handler(FleetError)
async def fleet_error_handler(request: Request, exc: FleetError) -> JSONResponse:
    return JSONResponse(
        {"error": type(exc).__name__, "detail": exc.message},
        status_code=exc.status_code or 500,
    )


@app.get("/health")
async def health():
    return {"status": "ok"}


# ── Templates ─────────────────────────────────────────────────

@app.get("/api/templates")
async def list_templates():
    controller = _get_controller()
    return [t.to_dict() for t in controller.templates]


@app.post("/api/templates/{name}/provision")
async def provision_template(name: str):
    """Manually provision one agent from a template."""
    controller = _get_controller()
    planned = await controller.provision_template(name)
    return JSONResponse(
        {"name": planned.name, "template": planned.template_name, "status": "provisioning"},
        status_code=202,
    )


# ── Demand ────────────────────────────────────────────────────

@app.post("/api/provision")
async def provision(body: dict):
    """Demand signal from the scheduler: ``{"label": ..., "count": ...}``."""
    controller = _get_controller()
    try:
        count = int(body.get("count", 1))
    except (TypeError, ValueError):
        raise HTTPException(status_code=400, detail="count must be an integer")
    if count < 0:
        raise HTTPException(status_code=400, detail="count must not be negative")

    request = ProvisionRequest(label=body.get("label") or None, count=count)
    planned = await controller.provision(request)
    return {
        "planned": [{"name": p.name, "template": p.template_name} for p in planned],
        "outcome": controller.last_outcome.value if controller.last_outcome else None,
    }


# ── Agents ────────────────────────────────────────────────────

@app.get("/api/agents")
async def list_agents():
    controller = _get_controller()
    return [a.to_dict() for a in controller.agents()]


@app.post("/api/agents/{name}/tasks")
async def report_task(name: str, body: dict):
    """Task report from the scheduler: ``{"task", "event", "duration_ms", "error"}``."""
    agent = _get_agent(name)
    task = body.get("task", "")
    event = body.get("event", "")
    if event in ("accepted", "completed") and agent.state is not ConnectionState.CHANNEL_ESTABLISHED:
        raise HTTPException(
            status_code=409, detail=f"Agent {name} is not connected ({agent.state.value})"
        )

    if event == "accepted":
        if not agent.accepting_tasks:
            raise HTTPException(status_code=409, detail=f"Agent {name} is not accepting tasks")
        _lifecycle.task_accepted(agent, task)
    elif event == "completed":
        duration = float(body.get("duration_ms", 0)) / 1000
        _lifecycle.task_completed(agent, task, duration, problems=body.get("error"))
    else:
        raise HTTPException(status_code=400, detail=f"Unknown task event: {event!r}")

    return {"name": agent.name, "state": agent.state.value, "accepting_tasks": agent.accepting_tasks}


@app.get("/api/agents/{name}/events")
async def stream_events(name: str):
    """SSE stream of an agent's launch log."""
    if not _events.has(name):
        raise HTTPException(status_code=404, detail=f"Agent not found: {name}")

    async def _stream_and_reap():
        async for event in _events.stream_sse(name):
            yield event
        if _events.is_closed(name):
            _events.reap(name)

    return EventSourceResponse(_stream_and_reap())


# ── Backend ───────────────────────────────────────────────────

@app.get("/api/images")
async def list_images():
    controller = _get_controller()
    return {"aliases": await controller.client.list_image_aliases()}


# ── Server entry point ────────────────────────────────────────

async def start_server(host: str = "0.0.0.0", port: int = 3000) -> None:
    """Start the uvicorn server."""
    import uvicorn

    config = uvicorn.Config(app, host=host, port=port, log_level="info")
    server = uvicorn.Server(config)
    await server.serve()
