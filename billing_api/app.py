"""FastAPI application factory."""

from contextlib import asynccontextmanager

from fastapi import FastAPI

from billing_api.errors import register_error_handlers
from billing_api.routes import admin, webhooks
from billing_api.runtime import BillingRuntime, build_runtime
from billing_config import get_active_config
from billing_kernel import __version__
from billing_kernel.logging_config import get_logger

logger = get_logger("api.app")


def create_app(
    runtime: BillingRuntime | None = None,
    start_worker: bool = False,
) -> FastAPI:
    """
    Build the application.  Without a runtime one is built from
    ``get_active_config()``; ``start_worker`` runs the polling queue
    worker for the app's lifetime.
    """
    runtime = runtime or build_runtime(get_active_config())

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if start_worker:
            runtime.worker.start()
        logger.info("api_started", extra={"worker": start_worker})
        try:
            yield
        finally:
            if start_worker:
                runtime.worker.stop()
            logger.info("api_stopped")

    app = FastAPI(title="Billing pipeline", version=__version__, lifespan=lifespan)
    app.state.runtime = runtime
    register_error_handlers(app)
    app.include_router(webhooks.router)
    app.include_router(admin.router)

    @app.get("/health")
    def health():
        return {"status": "ok", "version": __version__}

    return app
