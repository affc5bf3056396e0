"""
Entrypoint for the Media Vault upload service.
Importing the core package builds the FastAPI application and registers routes.
"""

from __future__ import annotations

import argparse
import os
import platform
import sys

import core  # noqa: F401  # Ensure route modules are imported for side effects
from core.app_state import app, config, logger  # noqa: F401


def is_wsl_or_linux() -> bool:
    """Detect if running in WSL or native Linux environment."""
    if platform.system() != "Linux":
        return False

    try:
        with open("/proc/version", "r", encoding="utf-8") as version_file:
            version_info = version_file.read().lower()
            if "microsoft" in version_info or "wsl" in version_info:
                logger.info("Detected WSL environment")
                return True
    except OSError:
        pass

    logger.info("Detected native Linux environment")
    return True


def build_gunicorn_command(workers: int) -> list:
    cmd = [
        sys.executable,
        "-m",
        "gunicorn",
        "main:app",
        "--workers",
        str(workers),
        "--worker-class",
        "uvicorn.workers.UvicornWorker",
        "--bind",
        f"{config.APP_HOST}:{config.APP_PORT}",
    ]
    if config.APP_RELOAD:
        cmd.append("--reload")
    return cmd


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Media Vault upload service")
    parser.add_argument(
        "--workers",
        type=int,
        default=None,
        help="Number of gunicorn workers (defaults to APP_WORKERS)",
    )
    args = parser.parse_args()

    if is_wsl_or_linux():
        import subprocess

        # Digest locks are per process; extra workers do not share them.
        workers = args.workers or int(os.environ.get("APP_WORKERS", str(config.APP_WORKERS)))
        cmd = build_gunicorn_command(workers)

        logger.info("Starting with gunicorn - %d workers", workers)
        logger.info("Command: %s", " ".join(cmd))
        subprocess.run(cmd, check=False)
    else:
        import uvicorn

        logger.info("Starting with uvicorn")
        uvicorn.run(
            "main:app",
            host=config.APP_HOST,
            port=config.APP_PORT,
            reload=config.APP_RELOAD,
        )
