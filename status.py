"""
Expiration status of a certification.

Everything that needs to know whether a certification is critical, needs
attention or is still vigent goes through classify(): the alert scan, the
dashboard counters and the report export.
"""
from collections import namedtuple
from datetime import date, datetime, UTC

CRITICAL = 'critical'
ATTENTION = 'attention'
VIGENT = 'vigent'

ATTENTION_WINDOW_DAYS = 30
RENEW_SOON_DAYS = 90

LABELS = {
    CRITICAL: 'Critical',
    ATTENTION: 'Attention',
    VIGENT: 'Vigent',
}

StatusInfo = namedtuple('StatusInfo', ['severity', 'days_remaining', 'label', 'message'])


def to_utc_date(value):
    """
    Reduce a date-like value to its UTC calendar day.

    Args:
        value: date, datetime (naive values are taken as UTC) or ISO-8601 string

    Returns:
        date, or None if value is empty or cannot be parsed
    """
    if value is None:
        return None

    if isinstance(value, str):
        value = value.strip()
        if not value:
            return None
        try:
            value = datetime.fromisoformat(value.replace('Z', '+00:00'))
        except ValueError:
            return None

    if isinstance(value, datetime):
        if value.tzinfo is not None:
            value = value.astimezone(UTC)
        return value.date()

    if isinstance(value, date):
        return value

    return None


def days_until(expiration_date, now=None):
    """Whole days from now's UTC day to the expiration day (negative once past)."""
    expiry = to_utc_date(expiration_date)
    if expiry is None:
        return None
    today = to_utc_date(now if now is not None else datetime.now(UTC))
    return (expiry - today).days


def classify(expiration_date, now=None):
    """
    Classify a certification by its expiration date.

    Args:
        expiration_date: date-like value or None
        now: reference instant, defaults to the current UTC time

    Returns:
        StatusInfo: severity is 'critical' (expires today or earlier),
        'attention' (1 to 30 days left, or no usable date) or 'vigent'
    """
    days = days_until(expiration_date, now)

    if days is None:
        if expiration_date is None or expiration_date == '':
            message = "No expiration date on record."
        else:
            message = "Invalid expiration date."
        return StatusInfo(ATTENTION, None, LABELS[ATTENTION], message)

    expiry = to_utc_date(expiration_date).isoformat()

    if days < 0:
        if days == -1:
            message = f"Expired 1 day ago ({expiry})."
        else:
            message = f"Expired {-days} days ago ({expiry})."
        return StatusInfo(CRITICAL, days, LABELS[CRITICAL], message)

    if days == 0:
        return StatusInfo(CRITICAL, days, LABELS[CRITICAL], f"Expires today ({expiry}).")

    if days <= ATTENTION_WINDOW_DAYS:
        if days == 1:
            message = f"Expires in 1 day ({expiry})."
        else:
            message = f"Expires in {days} days ({expiry})."
        return StatusInfo(ATTENTION, days, LABELS[ATTENTION], message)

    return StatusInfo(VIGENT, days, LABELS[VIGENT], f"Expires on {expiry}.")


def export_label(info):
    """Report label; vigent certifications within 90 days read 'Renew soon'."""
    if info.severity == VIGENT and info.days_remaining is not None \
            and info.days_remaining <= RENEW_SOON_DAYS:
        return 'Renew soon'
    return info.label


def dashboard_stats(certifications, now=None):
    """Count certifications per severity."""
    stats = {'total': 0, CRITICAL: 0, ATTENTION: 0, VIGENT: 0}

    for cert in certifications or []:
        stats['total'] += 1
        stats[classify(cert.expiration_date, now).severity] += 1

    return stats
