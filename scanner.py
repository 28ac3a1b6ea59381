"""
Certification alert scan.

Finds certifications that entered the attention window or turned critical
without their alert having been sent, e-mails one summary per company and
records each sent alert on the certification so it is never sent twice.
"""
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, UTC

import alert_rules
from models import AlertEntry
from status import classify, to_utc_date

logger = logging.getLogger(__name__)

# Two overlapping scans could both read a flag as unsent and both e-mail
_scan_lock = threading.Lock()


@dataclass
class Candidate:
    cert: object
    severity: str


@dataclass
class ScanResult:
    notified: list = field(default_factory=list)
    skipped: list = field(default_factory=list)
    skipped_companies: list = field(default_factory=list)
    errors: list = field(default_factory=list)
    flag_write_failures: list = field(default_factory=list)
    mocked: bool = False

    def to_summary(self):
        return {
            'ok': not self.errors and not self.flag_write_failures,
            'notified_count': len(self.notified),
            'skipped_company_count': len(self.skipped_companies),
            'errors': list(self.errors) + list(self.flag_write_failures),
            'mocked': self.mocked,
        }


def _format_date(value):
    day = to_utc_date(value)
    return day.isoformat() if day else '-'


def build_entry(candidate):
    cert = candidate.cert
    worker = cert.worker
    return AlertEntry(
        course=cert.course or 'Unnamed course',
        worker_name=worker.full_name,
        worker_national_id=worker.national_id or '',
        work_center=worker.work_center or '',
        expiration_date=_format_date(cert.expiration_date),
        severity_label=alert_rules.SEVERITY_LABELS[candidate.severity],
    )


class AlertScanner:
    """Scan certifications and notify companies about new alerts."""

    def __init__(self, store, notifier):
        """
        Args:
            store: Persistence with set_alert_flags(cert_id, ...), e.g. CertDatabase
            notifier: Object with send_alert(to_address, company_name, entries),
                e.g. EmailAlerter
        """
        self.store = store
        self.notifier = notifier

    def find_candidates(self, certifications, now, result):
        candidates = []

        for cert in certifications:
            company = cert.company
            if cert.worker is None or company is None or to_utc_date(cert.expiration_date) is None:
                logger.debug("Certification %s has no worker, company or valid expiration date",
                             cert.id)
                result.skipped.append(cert)
                continue

            severity = classify(cert.expiration_date, now).severity
            if alert_rules.should_alert(cert, severity):
                candidates.append(Candidate(cert, severity))
            else:
                result.skipped.append(cert)

        return candidates

    @staticmethod
    def group_by_company(candidates):
        groups = {}
        for candidate in candidates:
            company = candidate.cert.company
            groups.setdefault(company.id, (company, []))[1].append(candidate)
        return groups

    def scan(self, certifications, now=None):
        """
        Run one alert pass.

        Args:
            certifications: Certifications with worker and company loaded
            now: Reference instant, defaults to the current UTC time

        Returns:
            ScanResult
        """
        with _scan_lock:
            return self._scan(certifications, now)

    def _scan(self, certifications, now=None):
        # Callers hold _scan_lock
        now = now or datetime.now(UTC)
        result = ScanResult()
        candidates = self.find_candidates(certifications, now, result)

        for company_id, (company, group) in self.group_by_company(candidates).items():
            if not company.email:
                logger.warning("Company %s (ID %s) has no contact e-mail, alert not sent",
                               company.name, company_id)
                result.skipped_companies.append(company_id)
                result.skipped.extend(c.cert for c in group)
                continue

            self._notify_company(company, group, result)

        logger.info("Scan finished: %d notified, %d companies skipped, %d errors",
                    len(result.notified), len(result.skipped_companies), len(result.errors))
        return result

    def _notify_company(self, company, group, result):
        entries = [build_entry(candidate) for candidate in group]

        error = 'dispatch failed'
        try:
            sent = self.notifier.send_alert(company.email, company.name, entries)
        except Exception as e:
            logger.exception("Alert dispatch to company %s (ID %s) raised", company.name, company.id)
            sent, error = False, str(e)

        if not sent:
            logger.error("Alert dispatch failed for company %s (ID %s); "
                         "it will be retried on the next scan", company.name, company.id)
            result.errors.append({'company_id': company.id, 'error': error})
            result.skipped.extend(c.cert for c in group)
            return

        if getattr(self.notifier, 'simulated', False):
            # Nothing was delivered, so keep the certifications as candidates
            result.mocked = True
            result.notified.extend(c.cert for c in group)
            return

        for candidate in group:
            self._mark_sent(candidate, result)

    def _mark_sent(self, candidate, result):
        cert = candidate.cert
        flag = alert_rules.alert_flag(candidate.severity)

        try:
            self.store.set_alert_flags(cert.id, **{flag: True})
        except Exception as e:
            logger.error("Alert for certification %s was sent but %s could not be saved (%s); "
                         "the alert will be sent again on the next scan", cert.id, flag, e)
            result.flag_write_failures.append({'certification_id': cert.id, 'error': str(e)})
        else:
            setattr(cert, flag, True)

        result.notified.append(cert)


def run_scan(store, notifier, now=None):
    """
    Scan every certification that still has an unsent alert.

    Returns:
        dict: {ok, notified_count, skipped_company_count, errors, mocked},
        or {ok: False, error} if the scan could not run
    """
    try:
        # Flags are read and written under one lock hold
        with _scan_lock:
            certifications = store.fetch_certifications_needing_alert_check()
            result = AlertScanner(store, notifier)._scan(certifications, now)
    except Exception:
        logger.exception("Certification alert scan failed")
        return {'ok': False, 'error': 'Certification alert scan failed'}

    return result.to_summary()
