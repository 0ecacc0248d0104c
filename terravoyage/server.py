"""Server entry point."""

import logging
import sys

import structlog
import uvicorn
from rich.console import Console
from rich.panel import Panel

from terravoyage.config import settings

logger = structlog.get_logger()
console = Console()


def setup_logging() -> None:
    """Route structlog through the standard library at the configured level."""
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=settings.log_level.upper())
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="ISO"),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer() if settings.is_production else structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def main() -> None:
    """Run the collaboration server under uvicorn."""
    setup_logging()

    # uvicorn cannot reload with more than one worker
    reload = settings.reload and settings.is_development
    console.print(
        Panel(
            f"Trip rooms: ws://{settings.host}:{settings.port}{settings.socket_path}\n"
            f"Environment: {settings.environment}",
            title=f"Terra Voyage v{settings.app_version}",
            border_style="blue",
        )
    )

    try:
        uvicorn.run(
            "terravoyage.main:app",
            host=settings.host,
            port=settings.port,
            reload=reload,
            workers=1 if reload else settings.workers,
            log_level=settings.log_level.lower(),
            access_log=settings.is_development,
        )
    except KeyboardInterrupt:
        logger.info("Server stopped by user")
    except Exception as e:
        logger.error("Server error", error=str(e), exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
