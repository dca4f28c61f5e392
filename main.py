"""
Main entrypoint: fee routing engine + FastAPI server in one process.

The engine lives inside the API lifespan (threaded scheduler in a daemon
thread), so the API stays responsive while fees move through their hops. On
SIGINT/SIGTERM the server shuts down, the engine cancels its timers and
flushes a final snapshot.

Env: FEEROUTER_DB_PATH, FEEROUTER_API_HOST, FEEROUTER_API_PORT, FEEROUTER_* mixing knobs, LOG_LEVEL.

Engine only (no HTTP): python -m backend_feerouter.agent_worker.runtime
"""

import os

# Configure structured JSON logging before other imports that may log
from backend_feerouter.logging import get_logger

logger = get_logger("main")


def main() -> None:
    """Run the FastAPI server; the engine starts and stops with the app lifespan."""
    from backend_feerouter.config import get_settings

    settings = get_settings()

    from backend_feerouter.api_server.app import app
    import uvicorn

    logger.info(
        "main_server_starting",
        host=settings.api_host,
        port=settings.api_port,
        db_path=str(settings.db_path),
    )
    uvicorn.run(
        app,
        host=settings.api_host,
        port=settings.api_port,
        log_level=os.getenv("LOG_LEVEL", "info").lower(),
    )


if __name__ == "__main__":
    main()
