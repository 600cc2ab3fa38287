from __future__ import annotations

import argparse
import logging

from helpdesk.core.config import get_settings
from helpdesk.worker.runner import STAGE_JOB_TYPES, WorkerConfig, run_worker_forever


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(prog="helpdesk.worker")
    parser.add_argument(
        "--stage",
        choices=sorted(STAGE_JOB_TYPES),
        default=get_settings().WORKER_STAGE,
        help="Notification pipeline stage this worker pool consumes.",
    )
    args = parser.parse_args(argv)
    logging.basicConfig(level=logging.INFO, format="%(message)s")
    run_worker_forever(config=WorkerConfig.for_stage(args.stage))


if __name__ == "__main__":
    main()
