# app/logging_config.py
import logging
import sys

import config

# Librerías que, a nivel INFO/DEBUG, inundan la salida de cada lote
_NOISY_LOGGERS = ("httpx", "urllib3", "chromadb", "PIL")


def setup_logging():
    """
    Configura el logging de la aplicación al nivel de config.LOG_LEVEL.

    La salida va a stderr: stdout queda reservado para el JSON del CLI.
    """
    log_level = getattr(logging, config.LOG_LEVEL, logging.INFO)
    logging.basicConfig(
        level=log_level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(threadName)s - %(message)s",
        stream=sys.stderr,
    )
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
    logging.getLogger(__name__).debug(
        f"Logging configured at level {logging.getLevelName(log_level)}"
    )
