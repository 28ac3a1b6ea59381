"""
Mark alert flags without sending anything.

Operator tool for catching up alert bookkeeping, e.g. after alerting is
first switched on over historical data. Every certification that is
currently critical gets its critical flag set and every one in the
attention window gets its attention flag set, so the next scan only
e-mails about what changes from now on.

Never run this as part of a scan.
"""
import sys
import logging
import argparse
from datetime import datetime, UTC

from alert_rules import alert_flag
from config import loadconfig, setup_logging
from database import CertDatabase
from status import ATTENTION, CRITICAL, classify, to_utc_date

logger = logging.getLogger(__name__)

COUNT_KEYS = {CRITICAL: 'critical_marked', ATTENTION: 'attention_marked'}


def resync(certifications, now, store, counts=None):
    """
    Force-set the alert flag matching each certification's current severity.

    Args:
        certifications: Certifications to sweep
        now: Reference instant
        store: Persistence with set_alert_flags(cert_id, ...)
        counts: Optional dict to update in place as each flag is written

    Returns:
        dict: {'critical_marked': int, 'attention_marked': int}
    """
    if counts is None:
        counts = {}
    counts.setdefault('critical_marked', 0)
    counts.setdefault('attention_marked', 0)

    for cert in certifications:
        if to_utc_date(cert.expiration_date) is None:
            continue

        severity = classify(cert.expiration_date, now).severity
        if severity not in COUNT_KEYS:
            continue

        flag = alert_flag(severity)
        store.set_alert_flags(cert.id, **{flag: True})
        setattr(cert, flag, True)
        counts[COUNT_KEYS[severity]] += 1

    return counts


def parse_arguments():
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description='Mark alert flags for certifications already critical or in attention, '
                    'without sending e-mails',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog='Examples:\n'
               '  %(prog)s --db certs.db\n'
               '  %(prog)s --config config.yaml'
    )
    parser.add_argument('--db', help='Path to the sqlite database (default: certs.db)')
    parser.add_argument('--config', help='Path to configuration YAML file')
    return parser.parse_args()


if __name__ == '__main__':
    setup_logging()
    args = parse_arguments()

    config = loadconfig(args.config) if args.config else {}
    db = CertDatabase(args.db or config.get('database', 'certs.db'))

    counts = {}
    try:
        resync(db.get_all_certifications(), datetime.now(UTC), db, counts)
    except Exception:
        logger.exception("Alert flag resync failed after marking %d critical, %d attention",
                         counts.get('critical_marked', 0), counts.get('attention_marked', 0))
        sys.exit(1)

    logger.info("Resync completed: %d marked critical, %d marked attention",
                counts['critical_marked'], counts['attention_marked'])
    print("Resync completed:")
    print(f" - Certifications marked critical:  {counts['critical_marked']}")
    print(f" - Certifications marked attention: {counts['attention_marked']}")
