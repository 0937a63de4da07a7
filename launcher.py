import argparse
import logging

import uvicorn

import config

logger = logging.getLogger(__name__)


def main(argv=None):
    parser = argparse.ArgumentParser(description="Run the VisNovel API server")
    parser.add_argument("--host", default=config.HOST, help="Interface to bind")
    parser.add_argument("--port", type=int, default=config.PORT, help="Port to listen on")
    parser.add_argument("--reload", action="store_true", help="Restart on code changes")
    args = parser.parse_args(argv)

    config.setup_logging()
    logger.info("Starting VisNovel API at http://%s:%d", args.host, args.port)

    # Import string so --reload can re-import the app
    uvicorn.run("server:app", host=args.host, port=args.port, reload=args.reload,
                log_level=config.LOG_LEVEL.lower())


if __name__ == "__main__":
    main()
