import os

import uvicorn

from taskboard.logging_setup import configure_logging


def run() -> None:
    configure_logging()
    port = int(os.environ.get("PORT", "8000"))
    host = os.environ.get("HOST", "0.0.0.0")  # all interfaces inside containers
    uvicorn.run("taskboard.main:app", host=host, port=port, log_config=None)


if __name__ == "__main__":
    run()
