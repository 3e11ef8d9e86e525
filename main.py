"""
Entrypoint for the Format asset service.
Importing the core package configures logging and registers every route on
the shared FastAPI application; running this file serves it.
"""

from __future__ import annotations

import argparse
import os
import platform
import subprocess
import sys
from typing import List

import core  # noqa: F401  # Ensure route modules are imported for side effects
from config import config
from core.app_state import app, logger  # noqa: F401


def _apply_verbosity(args: argparse.Namespace) -> None:
    # PhaseLogger reads these per pipeline run
    if args.extra_verbose:
        os.environ["EXTRA_VERBOSE"] = "true"
        os.environ["VERBOSE"] = "true"
    elif args.verbose:
        os.environ["VERBOSE"] = "true"


def build_gunicorn_command(workers: int) -> List[str]:
    """gunicorn with uvicorn workers; the worker timeout outlasts the transform deadline."""
    cmd = [
        sys.executable, "-m", "gunicorn", "main:app",
        "--worker-class", "uvicorn.workers.UvicornWorker",
        "--workers", str(workers),
        "--bind", f"{config.APP_HOST}:{config.APP_PORT}",
        "--timeout", str(int(config.TRANSFORM.request_timeout_seconds) + 30),
    ]
    if config.APP_RELOAD:
        cmd.append("--reload")
    return cmd


def serve() -> None:
    if platform.system() == "Linux":
        # Rate limits are per process, so extra workers raise the effective limit
        workers = int(os.environ.get("APP_WORKERS", "1"))
        cmd = build_gunicorn_command(workers)
        logger.info("Starting gunicorn with %d worker(s): %s", workers, " ".join(cmd))
        subprocess.run(cmd, check=False)
        return

    import uvicorn

    logger.info("Starting uvicorn on %s:%d", config.APP_HOST, config.APP_PORT)
    uvicorn.run("main:app", host=config.APP_HOST, port=config.APP_PORT, reload=config.APP_RELOAD)


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Format asset service")
    parser.add_argument("--verbose", action="store_true", help="Log every pipeline phase with timings")
    parser.add_argument(
        "--extra-verbose",
        action="store_true",
        help="Also log per-image processing decisions (includes --verbose)",
    )
    _apply_verbosity(parser.parse_args())
    serve()
