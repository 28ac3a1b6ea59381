import json
import csv
from tabulate import tabulate

from status import classify, export_label, to_utc_date

FIELDNAMES = ['company', 'worker', 'national_id', 'work_center', 'course',
              'expiration_date', 'days_remaining', 'status', 'message']


def build_report_rows(certifications, now=None):
    """
    Turn certifications into flat report rows.

    Args:
        certifications: List of Certification
        now: Reference instant for the status

    Returns:
        list: One dict per certification, keys as FIELDNAMES
    """
    rows = []
    for cert in certifications:
        info = classify(cert.expiration_date, now)
        expiry = to_utc_date(cert.expiration_date)
        worker = cert.worker
        company = cert.company
        rows.append({
            'company': company.name if company else '',
            'worker': worker.full_name if worker else '',
            'national_id': worker.national_id if worker else '',
            'work_center': worker.work_center if worker else '',
            'course': cert.course,
            'expiration_date': expiry.isoformat() if expiry else None,
            'days_remaining': info.days_remaining,
            'status': export_label(info),
            'message': info.message,
        })
    return rows


def format_as_json(results, filename):
    """
    Save the certification report as JSON file.

    Args:
        results: List of report rows
        filename: Output filename

    Returns:
        str: Success message
    """
    with open(filename, 'w') as f:
        json.dump(results, f, indent=2)

    return f"Results saved to {filename}"


def format_as_csv(results, filename):
    """
    Save the certification report as CSV file.

    Args:
        results: List of report rows
        filename: Output filename

    Returns:
        str: Success message
    """
    with open(filename, 'w', newline='') as f:
        writer = csv.DictWriter(f, fieldnames=FIELDNAMES)
        writer.writeheader()

        for result in results:
            # None becomes an empty cell
            writer.writerow({key: '' if result.get(key) is None else result[key]
                             for key in FIELDNAMES})

    return f"Results saved to {filename}"


def format_as_table(results):
    """
    Format the certification report as a table.

    Args:
        results: List of report rows

    Returns:
        str: Formatted table string
    """
    table_data = []

    for result in results:
        days = result['days_remaining']
        table_data.append([
            result['company'] or '-',
            result['worker'] or '-',
            result['course'],
            result['expiration_date'] or '-',
            '-' if days is None else days,
            result['status'],
        ])

    headers = ['Company', 'Worker', 'Course', 'Expires', 'Days Left', 'Status']

    return tabulate(table_data, headers=headers, tablefmt='grid', maxcolwidths=[25, 25, 30, None, None, None])


def format_stats(stats):
    """Format dashboard counters as a one-row table."""
    headers = ['Total', 'Critical', 'Attention', 'Vigent']
    row = [stats['total'], stats['critical'], stats['attention'], stats['vigent']]
    return tabulate([row], headers=headers, tablefmt='grid')
