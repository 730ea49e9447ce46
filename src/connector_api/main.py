"""Connector API entry point."""

import os
from pathlib import Path

import uvicorn
from dotenv import load_dotenv

# Load environment variables from .env file
env_path = Path(__file__).parent.parent.parent / ".env"
load_dotenv(env_path)


def main():
    """Run the connector API service."""
    from connector_api.config.settings import settings

    reload = os.getenv("RELOAD", "false").lower() == "true"
    uvicorn.run(
        "connector_api.server.app:app",
        host=settings.host,
        port=settings.port,
        reload=reload,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
