# main.py
import os
import sys
import time
import argparse
import logging

# --- Initial Setup and Path Configuration ---
# Ensure the project root directory is in sys.path for imports
project_root = os.path.dirname(os.path.abspath(__file__))
if project_root not in sys.path:
    sys.path.insert(0, project_root)

import config  # Load application configuration
from app import cli_handlers
from app.exceptions import ImageMatchError, InvalidInputError, UpstreamUnavailableError
from app.logging_config import setup_logging

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_UPSTREAM_UNAVAILABLE = 1
EXIT_INVALID_INPUT = 2


# --- Argument Parsing ---
def setup_arg_parser() -> argparse.ArgumentParser:
    """Sets up and returns the argument parser for the CLI."""
    parser = argparse.ArgumentParser(
        description="Ingesta semántica de imágenes y búsqueda por título",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )

    # Configuration Arguments
    parser.add_argument("--db-path", default=config.CHROMA_DB_PATH,
                        help="Ruta para la base de datos vectorial persistente.")
    parser.add_argument("--collection-name", default=config.CHROMA_COLLECTION_NAME,
                        help="Nombre de la colección en la BD.")
    parser.add_argument("--max-workers", type=int, default=config.MAX_WORKERS,
                        help="Número de workers concurrentes por lote.")
    parser.add_argument("--batch-timeout", type=float, default=config.BATCH_TIMEOUT_S,
                        help="Tiempo máximo por lote en segundos (0 = sin límite).")

    # Action Arguments
    parser.add_argument("--ingest", nargs="+", metavar="PATH",
                        help="Ficheros de imagen (o directorios) a ingerir.")
    parser.add_argument("--match", nargs="+", metavar="TITLE",
                        help="Títulos a resolver contra las imágenes almacenadas.")
    parser.add_argument("--titles-file", metavar="FILE",
                        help="Fichero con un título por línea.")
    parser.add_argument("--count", action="store_true",
                        help="Muestra el número de registros almacenados.")

    return parser


def run(argv=None) -> int:
    """Ejecuta las acciones solicitadas y devuelve el código de salida."""
    parser = setup_arg_parser()
    args = parser.parse_args(argv)

    if not any([args.ingest, args.match, args.titles_file, args.count]):
        parser.error("No action requested. Please specify an action (e.g., --ingest PATH, --match TITLE). Use -h for help.")

    setup_logging()
    start_time = time.time()
    exit_code = EXIT_OK
    try:
        if args.ingest:
            exit_code = max(exit_code, cli_handlers.handle_ingest(args))
        if args.match or args.titles_file:
            exit_code = max(exit_code, cli_handlers.handle_match(args))
        if args.count:
            exit_code = max(exit_code, cli_handlers.handle_count(args))
    except InvalidInputError as e:
        logger.error(f"Invalid input: {e}")
        return EXIT_INVALID_INPUT
    except UpstreamUnavailableError as e:
        logger.critical(f"Upstream unavailable: {e}. Exiting.")
        return EXIT_UPSTREAM_UNAVAILABLE
    except (ImageMatchError, OSError) as e:
        logger.error(f"Action failed: {e}")
        return EXIT_UPSTREAM_UNAVAILABLE

    logger.info(f"--- Total Execution Time: {time.time() - start_time:.2f} seconds ---")
    return exit_code


# --- Script Entry Point ---
if __name__ == "__main__":
    sys.exit(run())
