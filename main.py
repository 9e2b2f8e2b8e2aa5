"""
main.py: Server launcher and entry point.

    python main.py

HOST and PORT choose the bind address; LOG_LEVEL is shared with the
application logger. The daily pool processor starts with the app when
DAILY_PROCESSOR_AUTOSTART is set.
"""

from __future__ import annotations

import os

import uvicorn

from backend.utils.config import get_settings


HOST = os.getenv("HOST", "127.0.0.1")
PORT = int(os.getenv("PORT", "8000"))


def main() -> None:
    settings = get_settings()
    print(f"{settings.app_name} {settings.app_version}")
    print(f"  Server   : http://{HOST}:{PORT}")
    print(f"  Database : {settings.database_path}")
    print(f"  Scheduler: {'on' if settings.daily_processor_autostart else 'off'}")

    uvicorn.run(
        "app:app",
        host=HOST,
        port=PORT,
        reload=False,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
