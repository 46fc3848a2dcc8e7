import argparse
import asyncio

from dotenv import load_dotenv

from recurring_billing.core.app_factory import build_container, close_container
from recurring_billing.core.config import Settings
from recurring_billing.core.logging import configure_logging
from recurring_billing.domain.timestamps import to_datetime


async def main(today: str = None) -> int:
    load_dotenv()
    configure_logging()
    container = build_container(Settings())
    try:
        result = await container.renewal_service.run(to_datetime(today) if today else None)
    finally:
        await close_container(container)

    print(
        f"Renewal run {result.run_at.isoformat()}: {result.processed} processed, "
        f"{result.succeeded} succeeded, {result.failed} failed, {result.finished} finished."
    )
    for outcome in result.outcomes:
        if not outcome.success:
            print(f"  {outcome.subscription_id}: {outcome.error}")
    return 1 if result.failed else 0


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Run one subscription renewal batch now.")
    parser.add_argument("--today", help="Reference date (ISO 8601, UTC); defaults to now.")
    args = parser.parse_args()
    raise SystemExit(asyncio.run(main(args.today)))
