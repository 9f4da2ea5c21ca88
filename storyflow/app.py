"""FastAPI application wiring.

Collaborators are built once here and handed down explicitly: one
SessionStore, one text client and one image strategy per process, all owned
by the FlowRegistry stored on app.state.
"""

from __future__ import annotations

import logging

from fastapi import FastAPI

from storyflow.config import Settings
from storyflow.flows import FlowRegistry
from storyflow.images import make_image_client
from storyflow.llm import HttpTextClient
from storyflow.narrative import register_story_flows
from storyflow.routes import router
from storyflow.sessions import SessionStore

logger = logging.getLogger(__name__)


def build_registry(settings: Settings) -> FlowRegistry:
    """Construct the store, generation clients and narrative flows."""
    registry = FlowRegistry(SessionStore(), serialize_sessions=settings.serialize_sessions)
    text = HttpTextClient(
        api_key=settings.openai_api_key,
        base_url=settings.openai_base_url,
        model=settings.openai_model,
        timeout_ms=settings.openai_timeout_ms,
        retries=settings.openai_retries,
    )
    images = make_image_client(settings)
    register_story_flows(registry, text, images, model=settings.openai_model)
    logger.info(
        "Text backend %s (model %s), image backend %s",
        settings.openai_base_url, settings.openai_model, settings.image_backend,
    )
    return registry


def create_app(registry: FlowRegistry | None = None, settings: Settings | None = None) -> FastAPI:
    if registry is None:
        registry = build_registry(settings or Settings.from_env())

    app = FastAPI(title="storyflow")
    app.state.registry = registry
    app.include_router(router, prefix="/api")
    return app


# Default app instance for uvicorn (reads .env / environment)
app = create_app()
