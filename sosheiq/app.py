from fastapi import FastAPI

from sosheiq.config import Settings, get_settings
from sosheiq.images import HttpImageService
from sosheiq.llm import HttpLLM
from sosheiq.pipeline import TurnOrchestrator
from sosheiq.routes import router
from sosheiq.sessions import SessionManager


def build_manager(settings: Settings) -> SessionManager:
    llm = HttpLLM(
        settings.llm_url,
        api_key=settings.llm_api_key,
        provider_format=settings.llm_format,
        model=settings.llm_model,
        timeout=settings.llm_timeout,
        max_tokens=settings.llm_max_tokens,
        temperature=settings.llm_temperature,
    )
    images = None
    if settings.image_backend_configured:
        images = HttpImageService(
            settings.image_url,
            api_key=settings.image_api_key,
            image_format=settings.image_format,
            model=settings.image_model,
            timeout=settings.image_timeout,
        )
    return SessionManager(TurnOrchestrator.from_settings(settings, llm, images))


def create_app(settings: Settings | None = None, manager: SessionManager | None = None) -> FastAPI:
    resolved = settings or get_settings()

    app = FastAPI(title="SosheIQ")
    app.state.settings = resolved
    app.state.sessions = manager or build_manager(resolved)
    app.include_router(router, prefix="/api")
    return app


# Default app instance for uvicorn (settings from SOSHEIQ_* env vars / .env)
app = create_app()
