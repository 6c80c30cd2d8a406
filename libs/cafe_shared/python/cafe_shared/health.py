import os
from typing import Callable, Optional

from fastapi import FastAPI
from fastapi.responses import JSONResponse


def add_standard_health(app: FastAPI, env_key: str = "ENV", ping: Optional[Callable[[], None]] = None):
    """
    GET /health for load balancers and the surfaces' connectivity badge.
    When `ping` is given it is called to check the backing store; a failing
    check turns the response into a 503 with status "degraded".
    """

    @app.get("/health")
    def _health():
        body = {
            "status": "ok",
            "env": os.getenv(env_key, "dev"),
            "service": app.title,
            "version": getattr(app, "version", None),
        }
        if ping is None:
            return body
        try:
            ping()
            body["store"] = "ok"
        except Exception:
            body["status"] = "degraded"
            body["store"] = "unavailable"
            return JSONResponse(status_code=503, content=body)
        return body
