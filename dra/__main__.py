"""
Command line entry point.

    python -m dra serve              run workers and the scheduler
    python -m dra sync 12 --full     sync one data source now
    python -m dra refresh 7          refresh one data model now
    python -m dra compile 7          print a data model's SQL
    python -m dra sweep              drop orphaned tables, prune old history
"""

import argparse
import asyncio
import json
import logging
import signal
import sys
from dataclasses import asdict
from typing import List, Optional

from dra.config.settings import get_settings
from dra.engine import SyncEngine, build_engine
from dra.sync.errors import DRAError
from dra.sync.models import RefreshTrigger, SyncType
from dra.system.logging_config import setup_logging

logger = logging.getLogger(__name__)


def _print(payload) -> None:
    print(json.dumps(payload, indent=2, default=str))


async def _serve(engine: SyncEngine) -> None:
    stopping = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stopping.set)
        except NotImplementedError:
            pass

    engine.start()
    await stopping.wait()
    logger.info("Shutdown requested")
    await engine.stop(timeout=engine.services.settings.sync.job_timeout_seconds)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="dra", description="DRA sync engine")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("serve", help="Run the worker pool and the refresh scheduler")

    sync = sub.add_parser("sync", help="Sync one data source in the foreground")
    sync.add_argument("data_source_id", type=int)
    sync.add_argument("--full", action="store_true", help="Force a full replace")

    refresh = sub.add_parser("refresh", help="Refresh one data model in the foreground")
    refresh.add_argument("data_model_id", type=int)

    compile_ = sub.add_parser("compile", help="Print the compiled query of a data model")
    compile_.add_argument("data_model_id", type=int)

    sub.add_parser("sweep", help="Drop orphaned tables and prune old history")
    sub.add_parser("metrics", help="Print metrics in the Prometheus text format")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    settings = get_settings()
    setup_logging(settings.app)
    engine = build_engine(settings, create_tables=True)

    try:
        if args.command == "serve":
            asyncio.run(_serve(engine))
        elif args.command == "sync":
            mode = SyncType.FULL if args.full else SyncType.MANUAL
            outcome = asyncio.run(engine.orchestrator.run_sync(args.data_source_id, mode=mode))
            _print(asdict(outcome))
            return 0 if outcome.error_code is None else 1
        elif args.command == "refresh":
            outcome = asyncio.run(engine.services.refresh.run_refresh(args.data_model_id, RefreshTrigger.MANUAL))
            _print(asdict(outcome))
            return 0 if outcome.error_message is None else 1
        elif args.command == "compile":
            _print(asdict(engine.services.refresh.compile(args.data_model_id)))
        elif args.command == "sweep":
            _print({"orphans_removed": engine.sweep_orphans(), **engine.prune_history()})
        elif args.command == "metrics":
            sys.stdout.write(engine.services.metrics.export().decode("utf-8"))
    except DRAError as e:
        logger.error(f"{args.command} failed: {e}")
        return 2
    finally:
        engine.services.database.close()
    return 0


if __name__ == "__main__":
    sys.exit(main())
