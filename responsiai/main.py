import logging
import os
from contextlib import asynccontextmanager
from typing import Optional

from dotenv import load_dotenv
from fastapi import FastAPI

if "PYTEST_CURRENT_TEST" not in os.environ:
    load_dotenv()

from responsiai.api import billing, health, usage  # noqa: E402
from responsiai.core.config import CoreConfig, settings, validate_config  # noqa: E402
from responsiai.core.container import Container, build_container  # noqa: E402
from responsiai.core.database import get_database_url, init_engine  # noqa: E402
from responsiai.core.errors import install_error_handlers  # noqa: E402
from responsiai.core.logging import configure_logging  # noqa: E402
from responsiai.core.middleware.request_id import RequestIdMiddleware  # noqa: E402

logger = logging.getLogger("responsiai")


def _default_container() -> Container:
    config = CoreConfig.from_settings(settings)
    url = get_database_url()
    engine = init_engine(url) if url else None
    return build_container(config, engine)


def create_app(container: Optional[Container] = None) -> FastAPI:
    """Build the FastAPI app. Tests pass a prebuilt container."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        app.state.container = container or _default_container()
        logger.info("Starting ResponsiAI billing core...")
        await app.state.container.workers.start()
        try:
            yield
        finally:
            await app.state.container.workers.stop()
            if app.state.container.engine is not None:
                app.state.container.engine.dispose()
            logger.info("Stopping ResponsiAI billing core...")

    app = FastAPI(title="ResponsiAI", lifespan=lifespan)
    app.add_middleware(RequestIdMiddleware)

    install_error_handlers(app)

    app.include_router(billing.router, prefix="/api", tags=["billing"])
    app.include_router(usage.router, prefix="/api", tags=["usage"])
    app.include_router(health.root_router, tags=["health"])
    return app


configure_logging(settings.ENV)
validate_config(strict=getattr(settings, "CONFIG_STRICT", False))

app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("responsiai.main:app", host="0.0.0.0", port=int(os.getenv("PORT", "8000")))
