"""storyflow launcher. Starts the flow API with uvicorn."""

import argparse
import logging

import uvicorn

from storyflow.config import Settings


def main():
    settings = Settings.from_env()

    parser = argparse.ArgumentParser(description="storyflow API server")
    parser.add_argument("--host", default=settings.host,
                        help=f"Bind address (default: {settings.host})")
    parser.add_argument("--port", type=int, default=settings.port,
                        help=f"Port (default: {settings.port})")
    parser.add_argument("--reload", action="store_true",
                        help="Restart on code changes")
    args = parser.parse_args()

    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )

    print(f"Starting storyflow on http://localhost:{args.port} ...")
    uvicorn.run(
        "storyflow.app:app",
        host=args.host,
        port=args.port,
        reload=args.reload,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
