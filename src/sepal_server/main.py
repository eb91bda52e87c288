import argparse
import logging
from typing import Optional, Sequence

from sepal_server.settings import settings


def serve(
    host: str,
    port: int,
    log_level: str,
) -> None:
    import uvicorn

    log_level = log_level.upper()
    logging.basicConfig(
        level=getattr(logging, log_level, logging.INFO),
        format=settings.log_format,
    )

    uvicorn.run(
        "sepal_server.app:app",
        host=host,
        port=port,
        reload=False,
        limit_concurrency=1000,
        timeout_keep_alive=30,
        log_level=log_level.lower(),
    )


def main(argv: Optional[Sequence[str]] = None) -> None:
    parser = argparse.ArgumentParser(prog="sepal-server")
    parser.add_argument("--host", "-H", default=settings.host, help="Server host")
    parser.add_argument("--port", "-p", type=int, default=settings.port, help="Server port")
    parser.add_argument("--log-level", "-l", default=settings.log_level, help="Logging level")

    args = parser.parse_args(argv)
    serve(host=args.host, port=args.port, log_level=args.log_level)


if __name__ == "__main__":
    main()
