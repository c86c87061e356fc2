"""
Entry point for running the huddle planning API.

Usage:
    python -m huddle_api

This starts the FastAPI server on http://0.0.0.0:8000 (override with HOST / PORT).
"""
import os

import uvicorn

from logging_setup import setup_logging
from planning_pipeline.config import get_config


def main():
    config = get_config()
    setup_logging(level=config.log_level, use_json=True)

    uvicorn.run(
        "huddle_api.server:app",
        host=os.getenv("HOST", "0.0.0.0"),
        port=int(os.getenv("PORT", "8000")),
        log_level=config.log_level.lower(),
    )


if __name__ == "__main__":
    main()
