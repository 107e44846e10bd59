"""FastAPI trigger for running one job at a time."""

from __future__ import annotations

import logging
import secrets
import sys
from threading import BoundedSemaphore
from typing import Any

from .config import RunnerSettings, load_settings
from .errors import ConfigError, ShepherdError
from .logging_utils import setup_logger
from .models import JobParameters
from .service import run_job
from .store import RemoteStore
from .validation import validate_parameters

logger = logging.getLogger("shepherd.app")


def create_app(settings: RunnerSettings | None = None, store: RemoteStore | None = None):
    try:
        from fastapi import FastAPI, Header, HTTPException
    except ImportError as exc:  # pragma: no cover
        raise RuntimeError("請先安裝 server 依賴：pip install -e .[server]") from exc

    app = FastAPI(title="Shepherd", version="0.1.0")
    runtime_settings = settings or load_settings()
    busy = BoundedSemaphore(value=1)

    @app.get("/health")
    def health() -> dict[str, Any]:
        return {
            "status": "ok",
            "service": "shepherd",
            "version": "0.1.0",
            "strategy": runtime_settings.strategy.value,
        }

    @app.post("/run")
    def run(payload: dict[str, Any], authorization: str | None = Header(default=None)) -> dict[str, Any]:
        if runtime_settings.api_key:
            expected = f"Bearer {runtime_settings.api_key}"
            if not authorization or not secrets.compare_digest(authorization, expected):
                raise HTTPException(status_code=401, detail="unauthorized")

        try:
            params = JobParameters.from_dict(payload)
            validate_parameters(params)
        except ConfigError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc

        if not busy.acquire(blocking=False):
            raise HTTPException(status_code=429, detail="已有 job 執行中，請稍後再試")
        try:
            result = run_job(params, runtime_settings, store=store)
        except ConfigError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        except ShepherdError as exc:
            logger.exception("job 執行失敗")
            raise HTTPException(status_code=500, detail=str(exc)) from exc
        finally:
            busy.release()

        return {
            "exit_code": result.exit_code,
            "uploads": [
                {"source_path": item.source_path, "destination_url": item.destination_url} for item in result.uploads
            ],
        }

    return app


def main() -> None:
    setup_logger()
    try:
        import uvicorn

        settings = load_settings()
        app = create_app(settings)
        uvicorn.run(app, host=settings.host, port=settings.port)
    except Exception as exc:  # noqa: BLE001
        logger.exception("server 啟動失敗")
        print(f"server 啟動失敗：{exc}", file=sys.stderr)
        raise


if __name__ == "__main__":
    main()
