"""Re-sync gateway payments whose webhook may have been lost.

Pending gateway payments older than `--older-than-minutes` are re-fetched from
MercadoPago; approved payments whose side effects never committed are settled.
"""

import argparse
from datetime import timedelta

from studioflow.common.db import SessionLocal
from studioflow.common.logging import configure_logging, logger
from studioflow.services.reconciler.service import ReconcilerService


def main() -> None:
    """CLI entrypoint for the payment sweep."""

    parser = argparse.ArgumentParser(description="Re-sync pending and uncredited payments.")
    parser.add_argument("--older-than-minutes", type=int, default=2)
    parser.add_argument("--limit", type=int, default=100)
    args = parser.parse_args()

    configure_logging()
    service = ReconcilerService(SessionLocal, service_name="payment-sweep")
    touched = service.resync_payments(
        older_than=timedelta(minutes=args.older_than_minutes),
        limit=args.limit,
    )
    logger.info("payment_sweep_finished touched=%s", touched)
    print(f"touched={touched}")


if __name__ == "__main__":
    main()
