from __future__ import annotations

from threading import Thread

import uvicorn
from fastapi import FastAPI, HTTPException
from fastapi.responses import JSONResponse

from .logger import logger
from .runtime import AgentState


def create_app(state: AgentState) -> FastAPI:
    app = FastAPI(title="mads agent status")

    @app.get("/health")
    def health():
        if not state.healthy():
            return JSONResponse({"status": "unhealthy", "error": state.watcher_error}, status_code=503)
        return {"status": "healthy", "watch_dir": state.watch_dir, "started_at": state.started_at}

    @app.get("/pods")
    def list_pods():
        return [p.to_dict() for p in state.list_pods()]

    @app.get("/pods/{name}")
    def get_pod(name: str):
        st = state.get(name)
        if st is None:
            raise HTTPException(status_code=404, detail=f"No reconcile recorded for pod '{name}'.")
        return st.to_dict()

    return app


def parse_addr(addr: str) -> tuple[str, int]:
    host, sep, port = addr.rpartition(":")
    if not sep or not port.isdigit():
        raise ValueError(f"Invalid status address '{addr}'. Use HOST:PORT.")
    return host or "127.0.0.1", int(port)


def serve_in_thread(state: AgentState, addr: str) -> uvicorn.Server:
    host, port = parse_addr(addr)
    config = uvicorn.Config(create_app(state), host=host, port=port, log_level="warning")
    server = uvicorn.Server(config)
    Thread(target=server.run, name="mads-status", daemon=True).start()
    logger.info("Status API listening", host=host, port=port)
    return server
