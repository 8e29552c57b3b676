from __future__ import annotations

import argparse
import logging

from dealdesk.db import SessionLocal
from dealdesk.services.notification_service import dispatch_pending

logger = logging.getLogger('dealdesk.notifications')


def log_sender(event: str, payload: dict) -> None:
    # Delivery channels (email, webhooks) plug in here; until then events are only logged.
    logger.info('Notification %s: %s', event, payload)


def dispatch(*, limit: int, max_attempts: int) -> dict:
    with SessionLocal() as db:
        result = dispatch_pending(db, sender=log_sender, limit=limit, max_attempts=max_attempts)
        db.commit()
    return result


def main() -> None:
    parser = argparse.ArgumentParser(description='Deliver pending deal notifications from the outbox.')
    parser.add_argument('--limit', type=int, default=50, help='Maximum number of notifications to send in this run.')
    parser.add_argument(
        '--max-attempts',
        type=int,
        default=10,
        help='Skip notifications that have already failed this many times.',
    )
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO, format='%(asctime)s %(levelname)s %(name)s: %(message)s')
    result = dispatch(limit=args.limit, max_attempts=args.max_attempts)
    print(f"Notification dispatch complete: sent={result['sent']}, failed={result['failed']}")


if __name__ == '__main__':
    main()
