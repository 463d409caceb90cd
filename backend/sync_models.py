"""
Sync model descriptors from MODELS_ROOT into the model_descriptors table.

Every model directory is parsed strictly: a directory with a broken
model.json or missing weight shards is reported, never skipped silently.

Usage:
    python sync_models.py [--models-root DIR] [--check]

Exit codes:
    0  every model synced (or validated with --check)
    1  at least one manifest could not be parsed
    2  at least one model is missing weight files
    3  writing to the store failed

When several failures occur the highest code wins.
"""

import argparse
import sys
from pathlib import Path
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError

from config import MODELS_ROOT
from errors import ManifestParseError, WeightsMissing
from model_registry import iter_model_dirs, parse_manifest
from record_store import RecordStore
from structured_logging import get_logger

logger = get_logger("sync_models")

EXIT_OK = 0
EXIT_PARSE_ERROR = 1
EXIT_WEIGHTS_MISSING = 2
EXIT_STORE_ERROR = 3


def sync_models(models_root: Path, store: Optional[RecordStore], check_only: bool = False) -> int:
    """Parse every model directory and upsert it. Returns the exit code."""
    exit_code = EXIT_OK
    synced = 0

    model_dirs = iter_model_dirs(Path(models_root))
    for model_dir in model_dirs:
        try:
            descriptor = parse_manifest(model_dir)
        except WeightsMissing as e:
            logger.error("Weights missing", extra={"model_dir": str(model_dir), "error": e.message})
            exit_code = max(exit_code, EXIT_WEIGHTS_MISSING)
            continue
        except ManifestParseError as e:
            logger.error("Invalid manifest", extra={"model_dir": str(model_dir), "error": e.message})
            exit_code = max(exit_code, EXIT_PARSE_ERROR)
            continue

        if check_only:
            logger.info("Model valid", extra={"model_id": descriptor.id, "version": descriptor.version})
            continue

        try:
            store.upsert_model(descriptor)
        except SQLAlchemyError as e:
            logger.error("Store write failed", extra={"model_id": descriptor.id, "error": str(e)})
            exit_code = max(exit_code, EXIT_STORE_ERROR)
            continue
        synced += 1

    logger.info(
        "Model sync finished",
        extra={
            "models_root": str(models_root),
            "model_dirs": len(model_dirs),
            "synced": synced,
            "check_only": check_only,
            "exit_code": exit_code,
        },
    )
    return exit_code


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(
        description="Register the models found under MODELS_ROOT in the database",
    )
    parser.add_argument('--models-root', type=Path, default=MODELS_ROOT,
                        help='Directory containing one sub-directory per model')
    parser.add_argument('--check', action='store_true',
                        help='Only validate manifests and weights, write nothing')
    args = parser.parse_args(argv)

    if args.check:
        return sync_models(args.models_root, None, check_only=True)

    from database import SessionLocal, create_tables
    from record_store import SQLRecordStore

    create_tables()
    db = SessionLocal()
    try:
        return sync_models(args.models_root, SQLRecordStore(db))
    finally:
        db.close()


if __name__ == '__main__':
    sys.exit(main())
