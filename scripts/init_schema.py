#!/usr/bin/env python3
"""
Initialize the ingest database and optionally register a project.

Creates the file_status and project_metadata tables if they do not exist,
registers or updates a project when --project-id is given, and prints the
configured projects and the current file status counts.

Usage:
    python scripts/init_schema.py
    python scripts/init_schema.py --project-id field-team --project-path field-team \
        --author-type Organization --author-name "Field Team" --extensions .jpg,.mp4
"""

import argparse
import sys
from typing import Optional

from loguru import logger
from sqlalchemy import inspect

from app.models.schemas import Author, ProjectRecord
from app.utils.config import get_settings, parse_extensions
from app.utils.database import DatabaseClient
from domains.file_ingest.processors.status_store import StatusStore


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    """Parse CLI arguments."""
    parser = argparse.ArgumentParser(description="Provision ingest tables and projects.")
    parser.add_argument("--database-url", default=None, help="Override DATABASE_URL.")
    parser.add_argument("--project-id", default=None, help="Project to create or update.")
    parser.add_argument("--project-path", default=None, help="Project folder, relative to the sync root.")
    parser.add_argument("--author-type", default=None)
    parser.add_argument("--author-name", default=None)
    parser.add_argument("--author-identifier", default=None)
    parser.add_argument("--extensions", default=None, help="Comma separated extension allow-list.")
    return parser.parse_args(argv)


def build_project(args: argparse.Namespace) -> ProjectRecord:
    """Build the ProjectRecord described by the CLI arguments."""
    author = None
    if args.author_type or args.author_name or args.author_identifier:
        author = Author(type=args.author_type, name=args.author_name, identifier=args.author_identifier)
    return ProjectRecord(
        project_id=args.project_id,
        project_path=args.project_path or args.project_id,
        author=author,
        file_extensions=parse_extensions(args.extensions),
    )


def verify_schema(db: DatabaseClient):
    """List tables and indexes."""
    inspector = inspect(db.engine)
    for table in inspector.get_table_names():
        logger.info(f"Table {table}")
        for index in inspector.get_indexes(table):
            logger.info(f"  {index['name']}: {', '.join(index['column_names'])}")


def main(argv: Optional[list[str]] = None) -> int:
    """Main initialization function."""
    args = parse_args(argv)
    settings = get_settings()
    db = DatabaseClient(args.database_url or settings.database_url)

    try:
        db.connect()
        db.init_tables()
        verify_schema(db)

        store = StatusStore(db)
        if args.project_id:
            store.upsert_project(build_project(args))
            logger.success(f"Project {args.project_id} saved")

        for project in store.list_projects():
            extensions = ",".join(project.file_extensions) or "*"
            logger.info(f"Project {project.project_id}: {project.project_path} [{extensions}]")

        for status, count in store.counts_by_status().items():
            logger.info(f"  {status.value}: {count}")

        logger.success("Schema initialization completed successfully")
        return 0

    except Exception as e:
        logger.error(f"Schema initialization failed: {e}")
        return 1

    finally:
        db.close()


if __name__ == "__main__":
    sys.exit(main())
