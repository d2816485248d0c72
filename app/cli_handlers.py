# app/cli_handlers.py
import json
import logging
import os
import time
from argparse import Namespace
from typing import Any, Dict, List

from app.factory import (
    create_ingestion_orchestrator,
    create_matching_orchestrator,
    create_vector_database,
)
from app.models import FilePayload
from core.image_processor import find_image_files

logger = logging.getLogger(__name__)


def _print_json(data: Dict[str, Any]):
    # stdout queda reservado para la salida JSON; los logs van a stderr
    print(json.dumps(data, indent=2, ensure_ascii=False))


def expand_ingest_paths(paths: List[str]) -> List[str]:
    """Expande directorios a sus imágenes (ordenadas); los ficheros se mantienen tal cual."""
    expanded: List[str] = []
    for path in paths:
        if os.path.isdir(path):
            expanded.extend(find_image_files(path))
        else:
            expanded.append(path)
    return expanded


def load_payloads(paths: List[str]) -> List[FilePayload]:
    """
    Lee cada ruta como FilePayload.

    Una ruta ilegible produce un payload vacío, que el orquestador rechaza como
    InvalidImage: así cada ruta indicada conserva su resultado en la salida.
    """
    payloads: List[FilePayload] = []
    for path in paths:
        try:
            payloads.append(FilePayload.from_path(path))
        except OSError as e:
            logger.error(f"Cannot read '{path}': {e}")
            payloads.append(FilePayload(name=os.path.basename(path), data=b""))
    return payloads


def read_titles_file(path: str) -> List[str]:
    """Un título por línea; las líneas vacías se descartan en el orquestador."""
    with open(path, "r", encoding="utf-8") as fh:
        return fh.read().splitlines()


def handle_ingest(args: Namespace) -> int:
    """Maneja la acción --ingest. Devuelve 0 si todos los ficheros se ingirieron."""
    logger.info(f"--- ACTION: Ingesting {len(args.ingest)} path(s) ---")
    paths = expand_ingest_paths(args.ingest)
    payloads = load_payloads(paths)

    orchestrator = create_ingestion_orchestrator(
        db_path=args.db_path,
        collection_name=args.collection_name,
        max_workers=args.max_workers,
        batch_timeout=args.batch_timeout,
    )
    start_time = time.time()
    outcomes = orchestrator.ingest(payloads)
    logger.info(f"Ingestion of {len(payloads)} files took {time.time() - start_time:.2f}s.")

    uploaded, failed = [], []
    for outcome in outcomes:
        entry = outcome.to_dict()
        entry["file"] = paths[outcome.index]
        (uploaded if outcome.ok else failed).append(entry)
    _print_json({"uploaded": uploaded, "failed": failed})
    return 0 if not failed else 1


def handle_match(args: Namespace) -> int:
    """Maneja --match / --titles-file."""
    titles: List[Any] = list(args.match or [])
    if args.titles_file:
        titles.extend(read_titles_file(args.titles_file))
    logger.info(f"--- ACTION: Matching {len(titles)} title(s) ---")

    orchestrator = create_matching_orchestrator(
        db_path=args.db_path,
        collection_name=args.collection_name,
        max_workers=args.max_workers,
        batch_timeout=args.batch_timeout,
    )
    start_time = time.time()
    results = orchestrator.match(titles)
    logger.info(f"Matching took {time.time() - start_time:.2f}s.")

    _print_json({"matches": [result.to_dict() for result in results]})
    return 0 if all(result.ok for result in results) else 1


def handle_count(args: Namespace) -> int:
    """Maneja --count."""
    db = create_vector_database(args.db_path, args.collection_name)
    db.ensure_ready()
    count = db.count()
    collection_name = getattr(db, "collection_name", "N/A")
    logger.info(f"Collection '{collection_name}' holds {count} records.")
    _print_json({"collection": collection_name, "count": count})
    return 0 if count >= 0 else 1
