#version 2.0

from datetime import date, datetime, UTC
import sys, argparse, sqlite3
import formatter
from alerts import EmailAlerter
from config import SmtpConfig, loadconfig, setup_logging
from database import CertDatabase
from scanner import run_scan
from status import classify, dashboard_stats


def iso_date(value):
    """argparse type for YYYY-MM-DD dates."""
    try:
        return date.fromisoformat(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid date '{value}', expected YYYY-MM-DD")


def parse_arguments(argv=None):
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description='Training Certification Expiry Monitor',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog='Examples:\n'
               '  %(prog)s scan\n'
               '  %(prog)s report --format csv --output report.csv\n'
               '  %(prog)s verify 3F9A1C02BE\n'
               '  %(prog)s renew 12 2026-03-01\n'
               '  %(prog)s recertify --worker 4 --note "Rigging level 2"\n'
               '  %(prog)s --config config.yaml stats'
    )

    parser.add_argument('--config', help='Path to configuration YAML file')
    parser.add_argument('--db', help='Path to the sqlite database (default: certs.db)')
    parser.add_argument('--verbose', action='store_true', help='Debug logging')
    parser.add_argument('--version', action='version', version='cert_checker 2.0')

    sub = parser.add_subparsers(dest='command', required=True)

    sub.add_parser('scan', help='Send pending attention/critical alerts to companies')

    report = sub.add_parser('report', help='Status of every certification')
    report.add_argument('--format', choices=['table', 'json', 'csv'], default='table', help='Output format')
    report.add_argument('--output', help='Output filename (for json/csv formats)')

    sub.add_parser('stats', help='Count certifications per status')

    verify = sub.add_parser('verify', help='Look up a diploma verification code')
    verify.add_argument('code')

    code = sub.add_parser('code', help='Show (and assign on first use) a verification code')
    code.add_argument('cert_id', type=int)

    issue = sub.add_parser('issue', help='Record a completed course for a worker')
    issue.add_argument('worker_id', type=int)
    issue.add_argument('course')
    issue.add_argument('--validity-days', type=int, default=365)

    renew = sub.add_parser('renew', help='Set a new expiration date (resets alert flags)')
    renew.add_argument('cert_id', type=int)
    renew.add_argument('expiration_date', type=iso_date)

    recertify = sub.add_parser('recertify', help='E-mail a recertification request to the training team')
    target = recertify.add_mutually_exclusive_group(required=True)
    target.add_argument('--cert', type=int, dest='cert_id', help='Certification ID')
    target.add_argument('--worker', type=int, dest='worker_id',
                        help='Worker ID (uses the worker\'s latest certification)')
    recertify.add_argument('--note', help='Request text')

    report_url = sub.add_parser('report-url', help='Attach an uploaded course report URL')
    report_url.add_argument('cert_id', type=int)
    report_url.add_argument('url')

    test_mail = sub.add_parser('test-mail', help='Send a test e-mail with the SMTP settings')
    test_mail.add_argument('to')

    return parser.parse_args(argv)


def cmd_scan(db, config):
    alerter = EmailAlerter(SmtpConfig.from_env(config.get('smtp')))
    summary = run_scan(db, alerter)

    if not summary['ok'] and 'error' in summary:
        print(f"Error: {summary['error']}")
        return 1

    print(f"Certifications notified: {summary['notified_count']}")
    print(f"Companies skipped (no e-mail): {summary['skipped_company_count']}")
    if summary['mocked']:
        print("SMTP not configured: alerts were simulated, no flags were changed")
    for error in summary['errors']:
        print(f"Error: {error}")
    return 0 if summary['ok'] else 1


def cmd_report(db, fmt, output):
    results = formatter.build_report_rows(db.get_all_certifications())

    if fmt == 'json':
        print(formatter.format_as_json(results, output or 'report.json'))
    elif fmt == 'csv':
        print(formatter.format_as_csv(results, output or 'report.csv'))
    else:
        print(formatter.format_as_table(results))
    return 0


def cmd_verify(db, code):
    cert = db.find_by_verification_code(code)
    if cert is None:
        print(f'Code "{code}" not found')
        return 1

    worker = cert.worker
    info = classify(cert.expiration_date)
    print("Valid diploma")
    print(f"Worker: {worker.full_name}")
    print(f"National ID: {worker.national_id}")
    print(f"Course: {cert.course}")
    print(f"Expires: {cert.expiration_date.isoformat() if cert.expiration_date else '-'} ({info.label})")
    print(f"Work center: {worker.work_center or '-'}")
    return 0


def cmd_recertify(db, config, cert_id=None, worker_id=None, note=None):
    if cert_id is not None:
        cert = db.get_certification(cert_id)
        missing = f"certification {cert_id} not found"
    else:
        cert = db.get_latest_certification(worker_id)
        missing = f"worker {worker_id} has no certifications"
    if cert is None or cert.worker is None:
        print(f"Error: {missing}")
        return 1

    alerter = EmailAlerter(SmtpConfig.from_env(config.get('smtp')))
    if not alerter.send_recertification_request(cert, note):
        print("Error: recertification request failed, see log")
        return 1
    print(f"Recertification requested for {cert.worker.full_name} ({cert.course})"
          + (" (simulated)" if alerter.simulated else ""))
    return 0


def main(argv=None):
    args = parse_arguments(argv)
    setup_logging(args.verbose)

    config = loadconfig(args.config) if args.config else {}
    db = CertDatabase(args.db or config.get('database', 'certs.db'))

    if args.command == 'scan':
        return cmd_scan(db, config)

    if args.command == 'report':
        return cmd_report(db, args.format, args.output)

    if args.command == 'stats':
        print(formatter.format_stats(dashboard_stats(db.get_all_certifications())))
        return 0

    if args.command == 'verify':
        return cmd_verify(db, args.code)

    if args.command == 'code':
        code = db.ensure_verification_code(args.cert_id)
        if code is None:
            print(f"Error: certification {args.cert_id} not found")
            return 1
        print(code)
        return 0

    if args.command == 'issue':
        try:
            cert_id = db.issue_certification(args.worker_id, args.course, args.validity_days,
                                             now=datetime.now(UTC))
        except sqlite3.IntegrityError:
            print(f"Error: worker {args.worker_id} not found")
            return 1
        print(f"Certification {cert_id} issued")
        return 0

    if args.command == 'renew':
        if not db.renew_certification(args.cert_id, args.expiration_date):
            print(f"Error: certification {args.cert_id} not found")
            return 1
        print(f"Certification {args.cert_id} now expires {args.expiration_date.isoformat()}")
        return 0

    if args.command == 'recertify':
        return cmd_recertify(db, config, args.cert_id, args.worker_id, args.note)

    if args.command == 'report-url':
        if not db.set_report_url(args.cert_id, args.url):
            print(f"Error: certification {args.cert_id} not found")
            return 1
        print(f"Report attached to certification {args.cert_id}")
        return 0

    if args.command == 'test-mail':
        alerter = EmailAlerter(SmtpConfig.from_env(config.get('smtp')))
        if alerter.send_test_email(args.to):
            print("Test e-mail sent" + (" (simulated)" if alerter.simulated else ""))
            return 0
        print("Error: test e-mail failed, see log")
        return 1

    return 1


if __name__ == "__main__":
    sys.exit(main())
