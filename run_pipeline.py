import argparse
import sys
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv

from mediafilter.config import load_properties
from mediafilter.core import TASKS, CurationStatus, run_batch
from mediafilter.errors import CollaboratorFailure, ConfigurationError
from mediafilter.logging import setup_logging
from mediafilter.storage import FilesystemRepository


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Create derivatives (scaled images or extracted text) for item directories."
    )
    parser.add_argument(
        "--config",
        type=Path,
        required=True,
        help="Path to the JSON file of task properties.",
    )
    parser.add_argument(
        "--task",
        choices=sorted(TASKS),
        default="scale",
        help="Which derivative task to run.",
    )
    parser.add_argument(
        "--force",
        action="store_true",
        help="Replace derivatives that already exist.",
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Print per-bitstream report lines and debug logging.",
    )
    parser.add_argument(
        "items",
        type=Path,
        nargs="+",
        help="Item directories (one sub-directory per bundle).",
    )
    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    # Properties may be overridden from a local .env file
    # (e.g. MEDIAFILTER_IMAGE_MAXWIDTH=800).
    load_dotenv()

    args = parse_args(argv)
    setup_logging(args.verbose)

    repository = FilesystemRepository()
    try:
        props = load_properties(args.config)
        if args.force:
            props = props.with_overrides({"filter.force": "true"})
        pipeline = TASKS[args.task](props, repository)
        items = [repository.load_item(path) for path in args.items]
    except (ConfigurationError, CollaboratorFailure) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 2

    failed = False
    for path, result in zip(args.items, run_batch(pipeline, items)):
        print(f"{path}: {result.status.value} - {result.message}")
        if args.verbose:
            for line in result.report:
                print(f"  {line}")
        failed = failed or result.status in (CurationStatus.FAIL, CurationStatus.ERROR)

    return 1 if failed else 0


if __name__ == "__main__":
    sys.exit(main())
