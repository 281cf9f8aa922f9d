"""Indexer health check: RPC, Redis, database and cursor lag.

Checks:
- RPC reachability and chain head
- Redis connectivity
- Database connectivity and row counts
- Cursor lag (chain head minus last merged block) per index key

Usage:
    poetry run python scripts/health_check.py
"""

import asyncio
import sys
from datetime import UTC, datetime
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from sqlalchemy import func, select, text  # noqa: E402

from config.settings import settings  # noqa: E402
from src.chain.rpc import JsonRpcChainReader  # noqa: E402
from src.db.database import close_database, get_session_factory  # noqa: E402
from src.db.redis import close_redis, ping_redis  # noqa: E402
from src.models import IndexCursor, Launch, LpPosition  # noqa: E402

STATUS_OK = "OK"
STATUS_WARN = "WARN"
STATUS_ERROR = "ERROR"

# cursor further behind the head than this is reported as WARN
MAX_LAG_BLOCKS = 5 * settings.rpc_max_block_range


async def check_health() -> dict:
    """Run all health checks and return structured report."""
    report: dict = {"timestamp": datetime.now(UTC).isoformat(), "checks": {}}
    head: int | None = None

    # 1. RPC
    chain = JsonRpcChainReader(settings.rpc_url, timeout=settings.rpc_timeout_sec)
    try:
        head = await chain.get_block_number()
        report["checks"]["rpc"] = {"status": STATUS_OK, "head": head}
    except Exception as e:
        report["checks"]["rpc"] = {"status": STATUS_ERROR, "error": str(e)}
    finally:
        await chain.close()

    # 2. Redis
    if await ping_redis():
        report["checks"]["redis"] = {"status": STATUS_OK}
    else:
        report["checks"]["redis"] = {"status": STATUS_WARN, "error": "no PONG from redis"}

    # 3. Database + cursors
    try:
        async with get_session_factory()() as session:
            await session.execute(text("SELECT 1"))
            report["checks"]["database"] = {"status": STATUS_OK}
            counts = {}
            for name, model in (("launches", Launch), ("lp_positions", LpPosition)):
                counts[name] = (await session.execute(select(func.count()).select_from(model))).scalar()
            report["table_counts"] = counts

            cursors = (await session.execute(select(IndexCursor))).scalars().all()
            report["cursors"] = {}
            for c in cursors:
                lag = head - c.block_number if head is not None else None
                status = STATUS_OK if lag is not None and lag <= MAX_LAG_BLOCKS else STATUS_WARN
                report["cursors"][c.index_key] = {
                    "block": c.block_number,
                    "lag": lag,
                    "updated_at": c.updated_at.isoformat() if c.updated_at else None,
                    "status": status,
                }
    except Exception as e:
        report["checks"]["database"] = {"status": STATUS_ERROR, "error": str(e)}

    return report


def print_report(report: dict) -> None:
    print("=" * 60)
    print(f"  Indexer health @ {report['timestamp']}")
    print("=" * 60)

    for name, check in report["checks"].items():
        extra = check.get("error") or (f"head={check['head']}" if "head" in check else "")
        print(f"  {name:10s} [{check['status']}] {extra}")

    counts = report.get("table_counts", {})
    if counts:
        print("\n  Table counts:")
        for table, count in counts.items():
            print(f"    {table:20s} {count:>8,}")

    cursors = report.get("cursors", {})
    if cursors:
        print("\n  Cursors:")
        for key, c in cursors.items():
            lag = "N/A" if c["lag"] is None else f"{c['lag']:,}"
            print(f"    {key:50s} block={c['block']:<10} lag={lag:<10} [{c['status']}]")

    print("\n" + "=" * 60)


async def main() -> None:
    try:
        report = await check_health()
        print_report(report)
    finally:
        await close_redis()
        await close_database()


if __name__ == "__main__":
    asyncio.run(main())
