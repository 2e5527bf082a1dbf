"""Batch script to enrich pending detections from the command line."""
from __future__ import annotations

import argparse
import json
import logging
import sys
from typing import List, Optional

from app import create_app
from utils.batch_orchestrator import run_batch


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("--project-id", type=int, default=None, help="Limit to one project")
    parser.add_argument(
        "--image-id",
        type=int,
        action="append",
        dest="image_ids",
        help="Limit to an image (repeatable)",
    )
    parser.add_argument("--concurrency", type=int, default=None, help="Worker threads")
    parser.add_argument(
        "--reprocess",
        action="store_true",
        help="Also run detections that are already fully analyzed",
    )
    return parser


def _log_event(event: dict) -> None:
    if event.get("type") != "progress":
        return
    logging.info(
        "[%s/%s] detection %s: %s %s",
        event.get("processed"),
        event.get("total"),
        event.get("item_id"),
        event.get("stage"),
        event.get("message"),
    )


def main(argv: Optional[List[str]] = None) -> int:
    """Run the batch and print the final summary as JSON."""
    args = _build_parser().parse_args(argv)

    app = create_app()
    with app.app_context():
        summary = run_batch(
            project_id=args.project_id,
            image_ids=args.image_ids,
            concurrency=args.concurrency,
            reprocess=args.reprocess,
            on_event=_log_event,
        )

    print(json.dumps(summary.as_event(), indent=2, ensure_ascii=False))
    return 1 if summary.aborted else 0


if __name__ == "__main__":
    sys.exit(main())
