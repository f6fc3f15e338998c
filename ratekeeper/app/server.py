"""Console entry point: serve the app with uvicorn on HOST:PORT."""

import uvicorn

from ratekeeper.app.core.config import get_settings


def run() -> None:
    settings = get_settings()
    uvicorn.run(
        "ratekeeper.app.main:app",
        host=settings.host,
        port=settings.port,
        log_config=None,  # create_app() installs its own logging config
    )


if __name__ == "__main__":
    run()
