
"""
Business rules for certification alerting.
Shared between the alert scan and the flag resync.
"""
from status import ATTENTION, CRITICAL

ALERT_FLAGS = {
    ATTENTION: 'attention_alert_sent',
    CRITICAL: 'critical_alert_sent',
}

SEVERITY_LABELS = {
    ATTENTION: 'Attention (expiring soon)',
    CRITICAL: 'Critical (expired)',
}


def alert_flag(severity):
    """Name of the flag that records an alert for this severity, or None."""
    return ALERT_FLAGS.get(severity)


def should_alert(cert, severity):
    """
    Determine if a certification is a candidate for an alert.
    The attention and critical flags are independent: a certification whose
    attention alert went out is still a candidate once it turns critical.

    Args:
        cert: Certification with its two alert flags
        severity: Current severity ('critical', 'attention', 'vigent')

    Returns:
        bool: True if should alert, False otherwise
    """
    flag = alert_flag(severity)
    if flag is None:
        return False
    return not getattr(cert, flag)
