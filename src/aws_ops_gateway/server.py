"""Entrypoint for the AWS operations gateway."""

from __future__ import annotations

import logging

from aws_ops_gateway import __version__
from aws_ops_gateway.config import load_settings
from aws_ops_gateway.logging_utils import configure_logging


def run_entrypoint() -> None:
    """Configure logging and serve the HTTP API with uvicorn."""
    settings = load_settings()
    configure_logging()
    logging.info("Initializing AWS operations gateway v%s", __version__)
    if settings.logging.file:
        logging.info("Log file configured at: %s", settings.logging.file)

    from aws_ops_gateway.transport.http_server import create_http_app

    try:
        import uvicorn
    except ImportError as exc:
        raise RuntimeError("uvicorn is required to serve the HTTP API") from exc

    uvicorn.run(
        create_http_app(),
        host=settings.server.host,
        port=settings.server.port,
        ws="none",
        log_config=None,
    )


if __name__ == "__main__":  # pragma: no cover
    run_entrypoint()
