#!/usr/bin/env python3
"""
Startup script for the Contextual Book Recommender

Loads settings, configures logging and starts the FastAPI server.
"""

import logging
import sys

import uvicorn

from config.settings import get_settings, validate_settings


def configure_logging(level: str = "INFO", log_file: str = None):
    """Configure the root logger from settings."""
    handlers = [logging.StreamHandler()]
    if log_file:
        handlers.append(logging.FileHandler(log_file))

    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        handlers=handlers,
        force=True,
    )


def main():
    """Start the FastAPI server."""
    print("Contextual Book Recommender - Starting Server")
    print("=" * 50)

    try:
        settings = get_settings()
        validate_settings(settings)
    except Exception as e:
        print(f"✗ Failed to load configuration: {e}")
        sys.exit(1)

    configure_logging(settings.log_level, settings.log_file)

    print("✓ Configuration loaded successfully")
    print(f"  - API Host: {settings.api_host}")
    print(f"  - API Port: {settings.api_port}")
    print(f"  - Debug Mode: {settings.debug}")
    print(f"  - Log Level: {settings.log_level}")
    print(f"  - Exploration alpha: {settings.bandit_alpha}")

    print(f"\n🚀 Starting server on {settings.api_host}:{settings.api_port}")
    print("Press Ctrl+C to stop the server")
    print("=" * 50)

    try:
        uvicorn.run(
            "api.main:app",
            host=settings.api_host,
            port=settings.api_port,
            reload=settings.debug,
            log_level=settings.log_level.lower(),
            access_log=True
        )
    except KeyboardInterrupt:
        print("\n\n🛑 Server stopped by user")
    except Exception as e:
        print(f"\n❌ Failed to start server: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
