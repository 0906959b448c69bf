from fastapi import APIRouter, Request

router = APIRouter()


@router.get("/")
def healthcheck(request: Request) -> dict[str, str]:
    settings = request.app.state.settings
    return {
        "status": "ok",
        "chat_provider": settings.chat_provider,
        "credentials": "present" if settings.api_key else "missing",
    }
