#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
import logging

from fundflow.services import create_services_from_env
from fundflow.worker_runtime import create_worker_runtime


def main() -> int:
    parser = argparse.ArgumentParser(description="Run the extraction worker loop against the job queue.")
    parser.add_argument(
        "--iterations",
        type=int,
        default=0,
        help="Stop after N iterations (0 means run forever).",
    )
    parser.add_argument("--log-level", default="INFO", help="Root log level.")
    args = parser.parse_args()

    logging.basicConfig(level=args.log_level.upper(), format="%(asctime)s %(levelname)s %(name)s %(message)s")
    runtime = create_worker_runtime(create_services_from_env())
    if args.iterations > 0:
        stats = runtime.run_forever(stop_after_iterations=args.iterations)
    else:
        stats = runtime.run_forever(stop_after_iterations=None)
    print(json.dumps({"success": True, "stats": stats}, ensure_ascii=True))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
