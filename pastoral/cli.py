"""
Command-line entry point.

    pastoral serve [--port N]
    pastoral run-job {sync,llm-scoring,initiative-generation}
"""

import argparse
import asyncio
import json
import logging
import sys

from dotenv import load_dotenv

from .common.config import ensure_directories, load_config
from .common.errors import JobFailedError

logger = logging.getLogger("pastoral.cli")

JOBS = {
    "sync": "run_daily_sync",
    "llm-scoring": "run_llm_scoring",
    "initiative-generation": "run_initiative_generation",
}


async def run_job(name: str) -> int:
    from .pipeline import create_pipeline

    pipeline = await create_pipeline(load_config())
    try:
        report = await getattr(pipeline.jobs, JOBS[name])()
    except JobFailedError as e:
        logger.error("%s", e)
        return 1
    finally:
        await pipeline.aclose()

    print(json.dumps(report.to_response(), indent=2, ensure_ascii=False))
    return 0


def main(argv=None) -> int:
    load_dotenv()

    parser = argparse.ArgumentParser(prog="pastoral", description="Pastoral care change pipeline.")
    parser.add_argument(
        "--log-level", default="INFO",
        choices=("DEBUG", "INFO", "WARNING", "ERROR"),
        help="Logging verbosity.",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    serve = subparsers.add_parser("serve", help="Run the webhook and cron HTTP server.")
    serve.add_argument("--port", type=int, default=None, help="Override the configured server port.")

    job = subparsers.add_parser("run-job", help="Run one scheduled job once and print its report.")
    job.add_argument("job", choices=sorted(JOBS))

    args = parser.parse_args(argv)

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
    ensure_directories()

    if args.command == "serve":
        from .server import run_server

        config = load_config()
        if args.port:
            config.server_port = args.port
        run_server(config)
        return 0

    return asyncio.run(run_job(args.job))


if __name__ == "__main__":
    sys.exit(main())
