"""Root logging for the service, driven by ``Settings``."""
import logging
import sys

from pharmacy_queue.config import Settings

LOG_FORMAT = "%(asctime)s %(levelname)s [%(threadName)s] %(name)s %(message)s"
HANDLER_NAME = "pharmacy_queue"


def setup_logging(settings: Settings) -> logging.Handler:
    """
    Attach the service's stdout handler to the root logger at
    ``settings.log_level``. Calling it again replaces the handler it added
    before and leaves handlers installed by others (uvicorn, pytest) alone.
    SQL statements are logged only when ``settings.log_sql`` is set.
    """
    root = logging.getLogger()
    root.setLevel(settings.log_level.upper())
    for existing in list(root.handlers):
        if existing.get_name() == HANDLER_NAME:
            root.removeHandler(existing)

    handler = logging.StreamHandler(sys.stdout)
    handler.set_name(HANDLER_NAME)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    root.addHandler(handler)

    logging.getLogger("sqlalchemy.engine").setLevel(
        logging.INFO if settings.log_sql else logging.WARNING
    )
    return handler
