"""
FastAPI Main Application
Entry point for the API server
"""

from dotenv import load_dotenv
load_dotenv()

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from issue_relay.integrations.connection_config import get_settings
from issue_relay.utils.logger import get_logger

from .routes import router

logger = get_logger("main")


def create_app() -> FastAPI:
    """Create and configure FastAPI application"""
    settings = get_settings()

    app = FastAPI(
        title="Support Issue Relay API",
        description="Looks up a reporting user's data and files a tracked issue",
        version="0.1.0",
        docs_url="/docs",
        redoc_url="/redoc",
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(settings.cors_origins),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(router)

    logger.info("Application created", extra={"action": "startup"})
    return app


# Create app instance
app = create_app()


def main() -> None:
    import uvicorn

    uvicorn.run(
        "issue_relay.api.main:app",
        host="0.0.0.0",
        port=8000,
        log_level="info",
    )


if __name__ == "__main__":
    main()
