from __future__ import annotations

import argparse
import logging
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from conversations.router import router as conversations_router
from core.providers import init_providers
from core.settings import get_settings
from health.router import router as health_router
from providers.factory import Providers

VERSION = "dev build"

log = logging.getLogger(__name__)


def _configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
    )


# ---------------------------------------------------------------------
# FastAPI app
# ---------------------------------------------------------------------

def create_app(providers: Optional[Providers] = None) -> FastAPI:
    """
    Build the API. Injected providers are used as-is and left open on
    shutdown; otherwise they are built from the environment at startup.
    """
    settings = providers.settings if providers is not None else get_settings()
    if providers is None:
        _configure_logging(settings.server.log_level)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = providers is None
        p = init_providers(app, providers)
        log.info(
            "providers ready (vector=%s ann_index_ready=%s llm=%s embedding=%s)",
            p.settings.vector.provider,
            getattr(p.vector, "ann_index_ready", False),
            p.settings.llm.model,
            p.settings.embedding.model,
        )
        try:
            yield
        finally:
            if owned:
                p.close()

    app = FastAPI(title="Airplane Chat Backend", lifespan=lifespan)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(settings.server.cors_origins),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(health_router)
    app.include_router(conversations_router)
    return app


app = create_app()


# ---------------------------------------------------------------------
# Entrypoint
# ---------------------------------------------------------------------

def main(argv: Optional[list] = None) -> None:
    parser = argparse.ArgumentParser(prog="airplane-chat")
    parser.add_argument("--version", action="store_true", help="print version and exit")
    args = parser.parse_args(argv)

    if args.version:
        print(f"airplane-chat {VERSION}")
        return

    s = get_settings()
    uvicorn.run(app, host=s.server.host, port=s.server.port, log_level=s.server.log_level.lower())


if __name__ == "__main__":
    main()
