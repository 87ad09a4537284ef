"""Command line entry point"""

import argparse
import json
import logging
import sys
from typing import List, Optional

from jirasync.config import Settings, configure_logging, settings
from jirasync.exceptions import ConfigurationError, SyncInProgressError
from jirasync.models.base import SessionLocal, init_db
from jirasync.services.sync_service import run_from_files

logger = logging.getLogger(__name__)


def _run(args: argparse.Namespace, base: Settings) -> int:
    overrides = {}
    if args.config:
        overrides["sync_config_path"] = args.config
    if args.state:
        overrides["sync_state_path"] = args.state
    run_settings = base.model_copy(update=overrides)

    init_db()
    db = SessionLocal()
    try:
        result = run_from_files(db, run_settings)
    except (ConfigurationError, SyncInProgressError) as e:
        logger.error(f"Sync aborted: {e}")
        return 1
    finally:
        db.close()

    summary = [
        {
            "name": p.name,
            "nextWatermark": p.next_watermark,
            "status": p.status.value,
            "stats": p.stats,
            **({"error": p.error} if p.error else {}),
        }
        for p in result.projects
    ]
    print(json.dumps(summary, indent=2, ensure_ascii=False))
    if not result.success:
        logger.error("Sync finished with failed project(s)")
        return 1
    return 0


def _serve(args: argparse.Namespace, base: Settings) -> int:
    import uvicorn

    uvicorn.run(
        "jirasync.main:app",
        host=args.host or base.host,
        port=args.port or base.port,
        reload=False,
        log_level=base.log_level.lower(),
    )
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        prog="jirasync",
        description="Synchronize GitHub issues, milestones and iterations into Jira",
    )
    parser.add_argument("--log-level", help="Override LOG_LEVEL (DEBUG, INFO, ...)")
    subparsers = parser.add_subparsers(dest="command", help="Commands")

    run_parser = subparsers.add_parser("run", help="Run one sync pass and write the state file")
    run_parser.add_argument("--config", help="Path to sync.yaml (default: SYNC_CONFIG_PATH)")
    run_parser.add_argument("--state", help="Path to sync-state.yaml (default: SYNC_STATE_PATH)")

    serve_parser = subparsers.add_parser("serve", help="Start the API server with the periodic scheduler")
    serve_parser.add_argument("--host", help="Bind address (default: HOST)")
    serve_parser.add_argument("--port", type=int, help="Bind port (default: PORT)")

    args = parser.parse_args(argv)
    configure_logging(args.log_level)

    if args.command == "run":
        return _run(args, settings)
    if args.command == "serve":
        return _serve(args, settings)

    parser.print_help()
    return 1


if __name__ == "__main__":
    sys.exit(main())
