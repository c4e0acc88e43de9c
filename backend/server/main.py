"""
Development entry point.

    python -m server.main   (from backend/, or anywhere after `pip install -e .`)

Production runs `uvicorn server.asgi:app` from the backend directory.
"""

from __future__ import annotations

import uvicorn
from dotenv import load_dotenv

from config import AppConfig


def main() -> None:
    load_dotenv()
    config = AppConfig.load_from_env()

    uvicorn.run(
        "server.asgi:app",
        host="0.0.0.0",
        port=config.port,
        log_level=config.log_level.lower(),
        reload=config.env == "dev",
    )


if __name__ == "__main__":
    main()
