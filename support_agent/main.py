from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from support_agent.config import Settings
from support_agent.routes import chat, health, voice
from support_agent.services.transport import (
    ChatService,
    LiveService,
    create_chat_service,
    create_live_service,
)


def create_app(
    settings: Optional[Settings] = None,
    chat_service: Optional[ChatService] = None,
    live_service: Optional[LiveService] = None,
) -> FastAPI:
    settings = settings or Settings.from_env()
    app = FastAPI(title="Support Agent", version="0.1.0")

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.state.settings = settings
    app.state.chat_service = chat_service or create_chat_service(settings)
    app.state.live_service = live_service or create_live_service(settings)

    app.include_router(health.router, prefix="/health", tags=["health"])
    app.include_router(chat.router, tags=["chat"])
    app.include_router(voice.router, tags=["voice"])

    return app


app = create_app()
