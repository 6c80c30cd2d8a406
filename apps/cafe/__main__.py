"""
Run the cafe order gateway with uvicorn.

Example:
  CAFE_RELOAD=true python -m apps.cafe
"""
import uvicorn
import os


def main() -> None:
    reload = os.getenv("CAFE_RELOAD", "false").lower() == "true"
    host = os.getenv("CAFE_HOST", "0.0.0.0")
    port = int(os.getenv("CAFE_PORT", "8000"))
    uvicorn.run(
        "apps.cafe.app.main:app",
        host=host,
        port=port,
        reload=reload,
        reload_dirs=["apps", "libs"] if reload else None,
    )


if __name__ == "__main__":
    main()
