from __future__ import annotations

from fastapi.middleware.cors import CORSMiddleware

# Kiosk, kitchen display and admin dashboard dev servers.
_DEV_ORIGINS = ["http://localhost:5173", "http://127.0.0.1:5173", "http://localhost:3000"]


def configure_cors(app, allowed: str | None, expose_headers: list[str] | None = None):
    raw_origins = [o.strip() for o in (allowed or "").split(",") if o.strip()]
    if not raw_origins:
        raw_origins = list(_DEV_ORIGINS)

    if "*" in raw_origins:
        # Wildcard origins must not be combined with credentialed requests.
        origins = ["*"]
        allow_credentials = False
    else:
        origins = raw_origins
        allow_credentials = True

    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=allow_credentials,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=expose_headers or ["X-Request-ID", "Retry-After"],
    )
