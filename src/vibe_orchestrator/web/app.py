"""Read-only web status API for a vibe workspace."""

import uvicorn
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import HTMLResponse, JSONResponse
from starlette.routing import Route

from vibe_orchestrator.config import get_config
from vibe_orchestrator.core import agents as agents_mod
from vibe_orchestrator.core import sessions as sessions_mod
from vibe_orchestrator.db.state import NotInitializedError, StateError, get_store
from vibe_orchestrator.web.dashboard import get_dashboard_html


def _load_state():
    return get_store(get_config()).load()


def _state_error(e: StateError) -> JSONResponse:
    status = 503 if isinstance(e, NotInitializedError) else 500
    return JSONResponse({"error": str(e)}, status_code=status)


# ── Handlers ──────────────────────────────────────────────────────────────────


async def index(request: Request):
    return HTMLResponse(get_dashboard_html())


async def api_status(request: Request):
    try:
        state = _load_state()
    except StateError as e:
        return _state_error(e)
    return JSONResponse(sessions_mod.workspace_status(state))


async def api_list_sessions(request: Request):
    status_filter = request.query_params.get("status")
    try:
        state = _load_state()
    except StateError as e:
        return _state_error(e)
    sessions = state.sessions
    if status_filter:
        sessions = [s for s in sessions if s.status.state.value.lower() == status_filter.lower()]
    return JSONResponse([sessions_mod.session_summary(state, s) for s in sessions])


async def api_get_session(request: Request):
    name = request.path_params["name"]
    try:
        state = _load_state()
    except StateError as e:
        return _state_error(e)
    session = state.find_session_by_name(name)
    if not session:
        return JSONResponse({"error": "Session not found"}, status_code=404)
    sd = sessions_mod.session_summary(state, session)
    sd["agents"] = [agents_mod.agent_summary(a) for a in state.agents_for_session(session.id)]
    return JSONResponse(sd)


async def api_get_agent(request: Request):
    agent_id = request.path_params["agent_id"]
    try:
        state = _load_state()
    except StateError as e:
        return _state_error(e)
    agent = state.find_agent(agent_id)
    if not agent:
        return JSONResponse({"error": "Agent not found"}, status_code=404)
    ad = agents_mod.agent_summary(agent)
    ad["prompt"] = agent.prompt
    ad["output_file"] = str(agent.output_file)
    ad["result"] = agent.result.to_dict() if agent.result else None
    ad["completed_at"] = agent.completed_at.isoformat() if agent.completed_at else None
    return JSONResponse(ad)


# ── App ───────────────────────────────────────────────────────────────────────


def create_app() -> Starlette:
    routes = [
        Route("/", index),
        Route("/api/status", api_status),
        Route("/api/sessions", api_list_sessions),
        Route("/api/sessions/{name}", api_get_session),
        Route("/api/agents/{agent_id}", api_get_agent),
    ]
    return Starlette(routes=routes)


def run_server(host: str = "127.0.0.1", port: int = 8788):
    app = create_app()
    uvicorn.run(app, host=host, port=port)
