from typing import Optional

from fastapi import FastAPI, Depends, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import PlainTextResponse
from contextlib import asynccontextmanager

from mvckit.config import Settings, get_settings
from mvckit.context import build_context
from mvckit.dependencies import get_current_user
from mvckit.errors import MvcKitError
from mvckit.helpers import configure_logging, server_error
from mvckit.model import ResultRow
from mvckit.routers import auth_router


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or get_settings()
    configure_logging(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """
        Application lifespan handler.
        Builds the application context on startup and releases it on shutdown.
        """
        context = build_context(settings)
        app.state.context = context
        yield
        context.close()

    app = FastAPI(
        title="mvckit",
        description="Model/query layer with session authentication and login rate limiting",
        version="1.0.0",
        lifespan=lifespan
    )

    # CORS configuration
    # In production, restrict origins to your frontend domain
    if settings.debug:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=["*"],  # Restrict in production
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    @app.exception_handler(MvcKitError)
    async def mvckit_error_handler(request: Request, exc: MvcKitError):
        return PlainTextResponse(server_error(exc, settings), status_code=500)

    # Register routers
    app.include_router(auth_router.router)

    @app.get("/")
    async def root():
        """
        Health check endpoint.
        """
        return {
            "status": "running",
            "version": "1.0.0"
        }

    @app.get("/protected")
    async def protected_route(user: ResultRow = Depends(get_current_user)):
        """
        Example protected route.

        Requires authentication via get_current_user dependency.
        Returns 401 if not authenticated.
        """
        return {
            "message": "This is a protected route",
            "user_id": user.value("id"),
            "username": user.value("username")
        }

    return app


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "mvckit.main:create_app",
        factory=True,
        host="0.0.0.0",
        port=8000,
        reload=get_settings().debug
    )
