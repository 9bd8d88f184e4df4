"""
Evaluator API Server

FastAPI app that stages wrapped submissions, runs them in sandbox workers and
relays the result. The worker fetches its script back from this same server.
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel

from evaluator import __version__
from evaluator.config import Settings, configure_logging
from evaluator.relay import relay_error, relay_outcome
from evaluator.sandbox import SandboxError, SandboxOrchestrator
from evaluator.store import ScriptStore, StoreUnavailableError
from evaluator.wrapper import generate_script

logger = logging.getLogger(__name__)

SCRIPT_MEDIA_TYPE = "text/x-python"


class EvalRequest(BaseModel):
    code: Optional[str] = None


def create_app(
    settings: Optional[Settings] = None,
    store: Optional[ScriptStore] = None,
    orchestrator: Optional[SandboxOrchestrator] = None
) -> FastAPI:
    """
    Build the application.

    The store and orchestrator are created from ``settings`` at startup
    unless they are passed in.
    """
    settings = settings or Settings.from_env()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Manage application lifespan."""
        # Startup
        logger.info("Starting Evaluator Server")
        app.state.store = store or ScriptStore(settings.redis_url, ttl=settings.script_ttl)
        await app.state.store.start()
        app.state.orchestrator = orchestrator or SandboxOrchestrator.from_settings(settings)
        yield
        # Shutdown
        logger.info("Shutting down Evaluator Server")
        if orchestrator is None:
            app.state.orchestrator.close()
        await app.state.store.stop()

    app = FastAPI(
        title="Evaluator",
        description="Runs submitted Python code in isolated sandbox workers",
        version=__version__,
        lifespan=lifespan
    )
    app.state.settings = settings

    if settings.cors_origins == ["*"]:
        cors_origins = {"allow_origin_regex": ".*"}
    else:
        cors_origins = {"allow_origins": settings.cors_origins}
    app.add_middleware(
        CORSMiddleware,
        allow_methods=["GET", "POST"],
        allow_credentials=True,
        max_age=86400,
        **cors_origins
    )

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        return JSONResponse({"error": "Missing code"}, status_code=400)

    @app.get("/up")
    async def up():
        """Liveness probe."""
        return {"status": "ok"}

    @app.get("/metrics")
    async def metrics(orchestrator: SandboxOrchestrator = Depends(get_orchestrator)):
        """Sandbox worker counters."""
        return {"status": "success", "metrics": orchestrator.get_metrics()}

    @app.get("/scripts/{script_id}")
    async def get_script(script_id: str, store: ScriptStore = Depends(get_store)):
        """Serve a staged script to a sandbox worker."""
        try:
            script = await store.get(script_id)
        except StoreUnavailableError:
            return Response(status_code=503)

        if script is None:
            return Response(status_code=404)
        return Response(content=script, media_type=SCRIPT_MEDIA_TYPE)

    @app.post("/eval")
    async def evaluate(
        payload: EvalRequest,
        store: ScriptStore = Depends(get_store),
        orchestrator: SandboxOrchestrator = Depends(get_orchestrator)
    ):
        """Run submitted code and return its console output."""
        if not payload.code:
            return JSONResponse({"error": "Missing code"}, status_code=400)

        script = generate_script(payload.code, max_entries=settings.max_log_entries)
        try:
            script_id = await store.put(script)
            outcome = await orchestrator.run(settings.script_url(script_id))
        except (StoreUnavailableError, SandboxError) as e:
            status, body = relay_error(e)
            return JSONResponse(body, status_code=status)

        status, body = relay_outcome(outcome, production=settings.is_production)
        return JSONResponse(body, status_code=status)

    return app


def get_store(request: Request) -> ScriptStore:
    """Dependency to get the script store."""
    return request.app.state.store


def get_orchestrator(request: Request) -> SandboxOrchestrator:
    """Dependency to get the sandbox orchestrator."""
    return request.app.state.orchestrator


def main():
    """Run the server with settings from the environment."""
    import uvicorn

    settings = Settings.from_env()
    configure_logging(settings)
    logger.info(f"Evaluator API server starting on {settings.host}:{settings.port} "
                f"(backend={settings.backend})")
    uvicorn.run(create_app(settings), host=settings.host, port=settings.port, log_config=None)


if __name__ == "__main__":
    main()
