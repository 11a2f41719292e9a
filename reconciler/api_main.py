from __future__ import annotations

import uvicorn
from fastapi import FastAPI

from reconciler.api import create_app
from reconciler.config import Settings, load_dotenv
from reconciler.logger import configure_logging


def build_app() -> FastAPI:
    load_dotenv()
    settings = Settings.from_env()
    configure_logging(settings.log_level)
    return create_app(settings=settings)


def main(host: str = "0.0.0.0", port: int = 8000) -> None:
    uvicorn.run("reconciler.api_main:build_app", host=host, port=port, factory=True, reload=False)


if __name__ == "__main__":
    main()
