from apscheduler.schedulers.blocking import BlockingScheduler
import logging
import argparse
from alerts import EmailAlerter
from config import SmtpConfig, loadconfig, setup_logging
from database import CertDatabase
from scanner import run_scan

logger = logging.getLogger(__name__)


def parse_arguments():
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description='Periodic certification alert scan',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog='Examples:\n'
               '  %(prog)s --config config.yaml\n'
               '  %(prog)s --db certs.db --scheduler-interval 24\n'
               )

    parser.add_argument('--config', help='Path to configuration YAML file')
    parser.add_argument('--db', help='Path to the sqlite database (default: certs.db)')
    parser.add_argument('--scheduler-interval', type=int,
                        help='Interval in hours for scheduler (default: 6 hours)')

    return parser.parse_args()


def run_check(db, alerter):
    logger.info("Running scheduled certification alert scan")
    summary = run_scan(db, alerter)
    logger.info("Scheduled scan summary: %s", summary)
    return summary


def build_scheduler(db, alerter, hours):
    scheduler = BlockingScheduler()
    # max_instances=1: a slow scan is never overlapped by the next tick
    scheduler.add_job(run_check, 'interval', hours=hours, args=[db, alerter],
                      max_instances=1, coalesce=True)
    return scheduler


if __name__ == '__main__':
    setup_logging()
    args = parse_arguments()
    config = loadconfig(args.config) if args.config else {}

    hours = args.scheduler_interval or config.get('scan_interval_hours', 6)
    db = CertDatabase(args.db or config.get('database', 'certs.db'))
    alerter = EmailAlerter(SmtpConfig.from_env(config.get('smtp')))

    scheduler = build_scheduler(db, alerter, hours)

    logger.info("Scheduler started. Checking every {hours} hours.".format(hours=hours))
    run_check(db, alerter)  # Run once immediately
    scheduler.start()
