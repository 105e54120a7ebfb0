"""
ERP Sync Service
Application Runner

python run.py                                  - start the API server
python run.py --sync invoices                  - one incremental run, then exit
python run.py --sync invoices --snapshot       - one snapshot run, then exit
python run.py --sync fulfillments --dry-run    - diff only, nothing written
"""

import argparse
import asyncio
import json
import sys

import uvicorn

from erp_sync.config import config
from erp_sync.utils.constants import APP_NAME, APP_VERSION


async def run_once(stream: str, snapshot: bool, dry_run: bool) -> int:
    """Run a single sync job outside the server and print its result"""
    from erp_sync.exceptions import SyncError
    from erp_sync.models.streams import STREAMS
    from erp_sync.models.sync import IncrementalRequest, SnapshotRequest
    from erp_sync.services.database_service import database_service
    from erp_sync.services.erp_client import erp_client
    from erp_sync.services.sync_service import get_sync_service
    from erp_sync.utils.logger import logger, setup_logger

    setup_logger(level=config.logging.level, log_file=config.logging.file)
    try:
        service = get_sync_service(stream)
        await database_service.connect()
        await database_service.create_tables(STREAMS.values())
        if snapshot:
            result = await service.run_snapshot(SnapshotRequest(dry_run=dry_run))
        else:
            result = await service.run_incremental(IncrementalRequest(dry_run=dry_run))
    except SyncError as e:
        logger.error(f"Sync aborted: {e}")
        return 1
    finally:
        await erp_client.aclose()
        await database_service.disconnect()

    print(json.dumps(result.model_dump(), indent=2, default=str))
    return 0 if result.status == "completed" else 1


def main():
    parser = argparse.ArgumentParser(description=APP_NAME)
    parser.add_argument("--host", default=config.api.host, help="Host to bind")
    parser.add_argument("--port", type=int, default=config.api.port, help="Port to bind")
    parser.add_argument("--reload", action="store_true", help="Enable auto-reload")
    parser.add_argument("--sync", metavar="STREAM", help="Run one sync for STREAM and exit")
    parser.add_argument("--snapshot", action="store_true", help="With --sync: manifest snapshot instead of incremental")
    parser.add_argument("--dry-run", action="store_true", help="With --sync: diff only, write nothing")

    args = parser.parse_args()

    if args.sync:
        sys.exit(asyncio.run(run_once(args.sync, args.snapshot, args.dry_run)))

    print(f"""
    ============================================================
    |              {APP_NAME} v{APP_VERSION}
    ============================================================
    |  Server: http://{args.host}:{args.port}
    |  Docs:   http://{args.host}:{args.port}/docs
    |  ERP:    {config.erp.get_base_url()}
    |  Store:  {config.database.path}
    ============================================================
    """)

    uvicorn.run(
        "erp_sync.main:app",
        host=args.host,
        port=args.port,
        reload=args.reload
    )


if __name__ == "__main__":
    main()
