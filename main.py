#!/usr/bin/env python

"""
GeoTour - 360° Tour Ingestion and Placement

Validates a batch of 360° images or videos submitted as one tour, extracts a
capture time and GPS position for each, links them into a route and places the
result on the map as ordered stops.

Usage:
    main.py [command] [targets...] [options]

Commands:
    init-db: Create the database schema
    submit: Submit media files as a new tour and process it (targets are file paths)
    status: Show the processing status of a job (target is the job id)
    cancel: Cancel a running job (target is the job id)
    entities: List map entities visible to --requester
    set-visibility: Change a tour's visibility (targets are tour id and public|private)

Options:
    --owner / --requester: Opaque authenticated user id
    --title, --description: Tour details for submit
    --tour-id: Add the files to an existing tour instead of creating one
    --visibility: Initial visibility for submit (default: private)
    --db: Path to the SQLite database
    --verbose: Enable verbose logging output
"""

import argparse
import json
import logging
import sys
from config import DATABASE_PATH, DEFAULT_VISIBILITY, JOB_COMPLETED, OBJECT_STORE_DIR, VISIBILITIES
from core.errors import GeoTourError
from core.models import MediaDescriptor
from core.orchestrator import JobOrchestrator
from core.store import PlacementStore
from pathlib import Path
from utils.object_store import LocalObjectStore

logger = logging.getLogger(__name__)


def parse_arguments(argv=None):
    """Parse command line arguments"""
    parser = argparse.ArgumentParser(
        description="GeoTour - 360° Tour Ingestion and Placement",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )

    parser.add_argument('command', nargs='?', default='help', help='Command to execute')
    parser.add_argument('targets', nargs='*', help='Files, job id or tour id depending on the command')
    parser.add_argument('--owner', '--requester', dest='user', help='Authenticated user id')
    parser.add_argument('--title', default='Untitled tour', help='Tour title')
    parser.add_argument('--description', default='', help='Tour description')
    parser.add_argument('--tour-id', help='Existing tour to add the files to')
    parser.add_argument('--visibility', choices=VISIBILITIES, default=DEFAULT_VISIBILITY, help='Initial visibility')
    parser.add_argument('--db', type=Path, default=DATABASE_PATH, help='Path to the SQLite database')
    parser.add_argument('--objects-dir', type=Path, default=OBJECT_STORE_DIR, help='Object store directory')
    parser.add_argument('--verbose', action='store_true', help='Enable verbose logging output')

    return parser.parse_args(argv)


def setup_logging(verbose: bool = False):
    """Configure logging based on verbosity level"""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(level=level, format='%(asctime)s - %(levelname)s - %(message)s', force=True)


def print_json(data):
    print(json.dumps(data, indent=2))


def require(value, message: str):
    if not value:
        logger.error(message)
        sys.exit(1)
    return value


def main(argv=None):
    args = parse_arguments(argv)

    setup_logging(args.verbose)

    command = args.command
    if command == 'help':
        print(__doc__.strip())
        return

    store = PlacementStore(args.db)
    object_store = LocalObjectStore(args.objects_dir)

    try:
        if command == 'init-db':
            logger.info(f"Database ready at {args.db}")
            sys.exit(0)

        elif command == 'submit':
            owner = require(args.user, "--owner is required for submit")
            files = require(args.targets, "No media files given")
            descriptors = [MediaDescriptor(filename=Path(f).name, path=Path(f)) for f in files]
            with JobOrchestrator(store, object_store) as orchestrator:
                job_id = orchestrator.submit_tour(
                    owner,
                    args.title,
                    args.description,
                    descriptors,
                    visibility=args.visibility,
                    tour_id=args.tour_id,
                    wait=True,
                )
                job = orchestrator.get_job_status(job_id)
            print_json(job.to_dict())
            sys.exit(0 if job.state == JOB_COMPLETED else 1)

        elif command == 'status':
            job_id = require(args.targets, "Job id is required")[0]
            print_json(store.get_job(job_id).to_dict())
            sys.exit(0)

        elif command == 'cancel':
            job_id = require(args.targets, "Job id is required")[0]
            with JobOrchestrator(store, object_store) as orchestrator:
                cancelled = orchestrator.cancel_job(job_id)
            sys.exit(0 if cancelled else 1)

        elif command == 'entities':
            requester = require(args.user, "--requester is required")
            entities = store.list_entities(requester)
            print_json(
                [
                    entity.to_dict(object_store.get_url(entity.panorama_ref) if entity.panorama_ref else None)
                    for entity in entities
                ]
            )
            sys.exit(0)

        elif command == 'set-visibility':
            requester = require(args.user, "--requester is required")
            if len(args.targets) != 2:
                logger.error("Usage: set-visibility <tour-id> <public|private> --requester <id>")
                sys.exit(1)
            tour_id, visibility = args.targets
            print_json(store.set_visibility(tour_id, visibility, requester).to_dict())
            sys.exit(0)

        else:
            print(__doc__.strip())
            sys.exit(1)

    except (GeoTourError, ValueError) as e:
        logger.error(f"{command} failed: {e}")
        sys.exit(1)
    finally:
        store.close()


if __name__ == "__main__":
    main()
