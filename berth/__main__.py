"""Run the Berth server: ``python -m berth``."""

import uvicorn

from berth.config import get_settings


def main() -> None:
    settings = get_settings()
    uvicorn.run(
        "berth.main:create_app",
        factory=True,
        host=settings.server.host,
        port=settings.server.port,
        log_level=settings.logging.level.lower(),
    )


if __name__ == "__main__":
    main()
