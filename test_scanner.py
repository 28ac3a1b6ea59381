import time
import sqlite3
import smtplib
import threading
import pytest
from datetime import date, datetime, UTC

import alerts
from alerts import EmailAlerter
from config import SmtpConfig
from database import CertDatabase
from models import AlertEntry, Company, Worker, Certification
from resync import resync
from scanner import AlertScanner, run_scan

NOW = datetime(2024, 6, 15, 8, 0, tzinfo=UTC)


class FakeNotifier:
    """Records every dispatch instead of sending e-mail."""

    simulated = False

    def __init__(self, fail_for=(), raise_for=()):
        self.calls = []
        self.fail_for = set(fail_for)
        self.raise_for = set(raise_for)

    def send_alert(self, to_address, company_name, entries):
        self.calls.append((to_address, company_name, entries))
        if to_address in self.raise_for:
            raise RuntimeError("connection reset")
        return to_address not in self.fail_for


class RecordingStore:
    def __init__(self, fail=False):
        self.writes = []
        self.fail = fail

    def set_alert_flags(self, cert_id, attention_alert_sent=None, critical_alert_sent=None):
        if self.fail:
            raise sqlite3.OperationalError("database is locked")
        self.writes.append((cert_id, attention_alert_sent, critical_alert_sent))


def make_cert(cert_id, expiration, company, **flags):
    worker = Worker(id=cert_id, name='Worker', surname=str(cert_id),
                    national_id=f'{cert_id}-K', work_center='Yard', company=company)
    return Certification(id=cert_id, course=f'Course {cert_id}',
                         expiration_date=expiration, worker=worker, **flags)


@pytest.fixture
def acme():
    return Company(id=1, name='Acme Cranes', email='ops@acme.example')


# ===== Example Scenario =====

def test_scan_example_scenario(acme):
    """Expired and soon-to-expire certifications alert, vigent ones do not"""
    x = make_cert(1, date(2024, 6, 10), acme)
    y = make_cert(2, date(2024, 7, 10), acme)
    z = make_cert(3, date(2024, 9, 1), acme)
    notifier, store = FakeNotifier(), RecordingStore()

    result = AlertScanner(store, notifier).scan([x, y, z], NOW)

    assert len(notifier.calls) == 1
    to_address, company_name, entries = notifier.calls[0]
    assert to_address == 'ops@acme.example'
    assert company_name == 'Acme Cranes'
    assert [e.course for e in entries] == ['Course 1', 'Course 2']
    assert entries[0] == AlertEntry(
        course='Course 1', worker_name='Worker 1', worker_national_id='1-K',
        work_center='Yard', expiration_date='2024-06-10',
        severity_label='Critical (expired)',
    )
    assert entries[1].severity_label == 'Attention (expiring soon)'

    assert (x.critical_alert_sent, x.attention_alert_sent) == (True, False)
    assert (y.critical_alert_sent, y.attention_alert_sent) == (False, True)
    assert (z.critical_alert_sent, z.attention_alert_sent) == (False, False)
    assert store.writes == [(1, None, True), (2, True, None)]
    assert result.notified == [x, y]
    assert z in result.skipped


# ===== Idempotence =====

def test_scan_twice_sends_nothing_new(acme):
    certs = [make_cert(1, date(2024, 6, 10), acme), make_cert(2, date(2024, 7, 1), acme)]
    notifier = FakeNotifier()
    scanner = AlertScanner(RecordingStore(), notifier)

    scanner.scan(certs, NOW)
    second = scanner.scan(certs, NOW)

    assert len(notifier.calls) == 1
    assert second.notified == []


def test_run_scan_twice_against_database():
    db = CertDatabase(':memory:')
    company_id = db.add_company('Acme Cranes', email='ops@acme.example')
    worker_id = db.add_worker(company_id, 'Ana', 'Rojas', '12.345.678-9', 'Port Yard')
    expired = db.add_certification(worker_id, 'Rigging', expiration_date=date(2024, 6, 1))
    soon = db.add_certification(worker_id, 'Slinging', expiration_date=date(2024, 7, 1))
    notifier = FakeNotifier()

    first = run_scan(db, notifier, NOW)
    second = run_scan(db, notifier, NOW)

    assert first == {'ok': True, 'notified_count': 2, 'skipped_company_count': 0,
                     'errors': [], 'mocked': False}
    assert second['notified_count'] == 0
    assert len(notifier.calls) == 1
    assert db.get_certification(expired).critical_alert_sent is True
    assert db.get_certification(soon).attention_alert_sent is True


def test_concurrent_run_scans_send_once(tmp_path):
    class SlowNotifier(FakeNotifier):
        def send_alert(self, to_address, company_name, entries):
            time.sleep(0.2)
            return super().send_alert(to_address, company_name, entries)

    db = CertDatabase(str(tmp_path / 'certs.db'))
    company_id = db.add_company('Acme Cranes', email='ops@acme.example')
    worker_id = db.add_worker(company_id, 'Ana', 'Rojas')
    expired = db.add_certification(worker_id, 'Rigging', expiration_date=date(2024, 6, 1))
    notifier = SlowNotifier()

    threads = [threading.Thread(target=run_scan, args=(db, notifier, NOW)) for _ in range(2)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert len(notifier.calls) == 1
    assert db.get_certification(expired).critical_alert_sent is True


# ===== Flag Independence =====

def test_critical_alert_after_attention_alert(acme):
    cert = make_cert(1, date(2024, 6, 1), acme, attention_alert_sent=True)
    notifier = FakeNotifier()

    result = AlertScanner(RecordingStore(), notifier).scan([cert], NOW)

    assert result.notified == [cert]
    assert cert.critical_alert_sent is True
    assert len(notifier.calls) == 1


def test_already_alerted_severity_is_not_resent(acme):
    cert = make_cert(1, date(2024, 6, 1), acme, critical_alert_sent=True)
    notifier = FakeNotifier()

    AlertScanner(RecordingStore(), notifier).scan([cert], NOW)

    assert notifier.calls == []


# ===== Companies Without E-mail =====

def test_company_without_email_is_skipped():
    no_email = Company(id=7, name='Silent Ltd', email=None)
    cert = make_cert(1, date(2024, 6, 1), no_email)
    notifier, store = FakeNotifier(), RecordingStore()
    scanner = AlertScanner(store, notifier)

    result = scanner.scan([cert], NOW)

    assert notifier.calls == []
    assert store.writes == []
    assert result.skipped_companies == [7]
    assert result.to_summary()['skipped_company_count'] == 1
    assert cert.critical_alert_sent is False
    # Still a candidate on the next pass
    assert scanner.scan([cert], NOW).skipped_companies == [7]


# ===== Grouping =====

def test_one_dispatch_per_company():
    a = Company(id=1, name='A', email='a@example.com')
    b = Company(id=2, name='B', email='b@example.com')
    c = Company(id=3, name='C', email='c@example.com')
    certs = [
        make_cert(1, date(2024, 6, 1), a),
        make_cert(2, date(2024, 6, 20), b),
        make_cert(3, date(2024, 6, 14), a),
        make_cert(4, date(2025, 1, 1), c),
    ]
    notifier = FakeNotifier()

    AlertScanner(RecordingStore(), notifier).scan(certs, NOW)

    sizes = {to: len(entries) for to, _, entries in notifier.calls}
    assert sizes == {'a@example.com': 2, 'b@example.com': 1}


# ===== Data Quality Gaps =====

def test_unroutable_certifications_are_skipped(acme):
    no_worker = Certification(id=1, course='A', expiration_date=date(2024, 6, 1))
    no_company = make_cert(2, date(2024, 6, 1), None)
    no_date = make_cert(3, None, acme)
    notifier = FakeNotifier()

    result = AlertScanner(RecordingStore(), notifier).scan([no_worker, no_company, no_date], NOW)

    assert notifier.calls == []
    assert result.errors == []
    assert len(result.skipped) == 3


def test_string_expiration_dates_do_not_abort_scan(acme):
    garbage = make_cert(1, 'not a date', acme)
    iso = make_cert(2, '2024-06-01', acme)
    notifier = FakeNotifier()

    result = AlertScanner(RecordingStore(), notifier).scan([garbage, iso], NOW)

    assert garbage in result.skipped
    assert result.notified == [iso]
    entries = notifier.calls[0][2]
    assert [e.expiration_date for e in entries] == ['2024-06-01']
    assert iso.critical_alert_sent is True


# ===== Failures =====

def test_dispatch_failure_is_isolated_per_company():
    a = Company(id=1, name='A', email='a@example.com')
    b = Company(id=2, name='B', email='b@example.com')
    failing = make_cert(1, date(2024, 6, 1), a)
    fine = make_cert(2, date(2024, 6, 1), b)
    notifier = FakeNotifier(fail_for={'a@example.com'})

    result = AlertScanner(RecordingStore(), notifier).scan([failing, fine], NOW)

    assert len(notifier.calls) == 2
    assert failing.critical_alert_sent is False
    assert fine.critical_alert_sent is True
    assert result.errors == [{'company_id': 1, 'error': 'dispatch failed'}]
    assert result.to_summary()['ok'] is False


def test_dispatch_exception_is_isolated():
    a = Company(id=1, name='A', email='a@example.com')
    b = Company(id=2, name='B', email='b@example.com')
    certs = [make_cert(1, date(2024, 6, 1), a), make_cert(2, date(2024, 6, 1), b)]
    notifier = FakeNotifier(raise_for={'a@example.com'})

    result = AlertScanner(RecordingStore(), notifier).scan(certs, NOW)

    assert result.errors == [{'company_id': 1, 'error': 'connection reset'}]
    assert certs[1].critical_alert_sent is True


def test_flag_write_failure_is_reported_separately(acme):
    cert = make_cert(1, date(2024, 6, 1), acme)

    result = AlertScanner(RecordingStore(fail=True), FakeNotifier()).scan([cert], NOW)

    assert result.errors == []
    assert result.flag_write_failures == [{'certification_id': 1, 'error': 'database is locked'}]
    assert cert.critical_alert_sent is False
    summary = result.to_summary()
    assert summary['ok'] is False
    assert summary['notified_count'] == 1


def test_any_flag_write_error_is_reported_separately():
    class BrokenStore:
        def set_alert_flags(self, cert_id, **flags):
            raise ConnectionError("store unreachable")

    a = Company(id=1, name='A', email='a@example.com')
    b = Company(id=2, name='B', email='b@example.com')
    certs = [make_cert(1, date(2024, 6, 1), a), make_cert(2, date(2024, 6, 1), b)]
    notifier = FakeNotifier()

    result = AlertScanner(BrokenStore(), notifier).scan(certs, NOW)

    assert len(notifier.calls) == 2
    assert result.errors == []
    assert result.flag_write_failures == [
        {'certification_id': 1, 'error': 'store unreachable'},
        {'certification_id': 2, 'error': 'store unreachable'},
    ]


def test_run_scan_reports_unexpected_failure():
    class BrokenStore:
        def fetch_certifications_needing_alert_check(self):
            raise sqlite3.DatabaseError("file is not a database")

    assert run_scan(BrokenStore(), FakeNotifier(), NOW) == {
        'ok': False, 'error': 'Certification alert scan failed',
    }


def test_simulated_alerter_leaves_flags_unset(acme):
    cert = make_cert(1, date(2024, 6, 1), acme)
    store = RecordingStore()

    result = AlertScanner(store, EmailAlerter(SmtpConfig())).scan([cert], NOW)

    assert result.to_summary()['mocked'] is True
    assert result.to_summary()['ok'] is True
    assert store.writes == []
    assert cert.critical_alert_sent is False


# ===== Resync =====

@pytest.mark.parametrize("expiration,critical_marked,attention_marked", [
    (date(2024, 6, 1), 1, 0),
    (date(2024, 6, 15), 1, 0),   # expires today
    (date(2024, 6, 16), 0, 1),
    (date(2024, 7, 15), 0, 1),   # day 30
    (date(2024, 7, 16), 0, 0),   # day 31
    (None, 0, 0),
])
def test_resync_buckets(acme, expiration, critical_marked, attention_marked):
    cert = make_cert(1, expiration, acme)

    counts = resync([cert], NOW, RecordingStore())

    assert counts == {'critical_marked': critical_marked, 'attention_marked': attention_marked}


def test_resync_marks_without_notifying():
    db = CertDatabase(':memory:')
    company_id = db.add_company('Acme Cranes', email='ops@acme.example')
    worker_id = db.add_worker(company_id, 'Ana', 'Rojas')
    expired = db.add_certification(worker_id, 'A', expiration_date=date(2023, 1, 1))
    db.add_certification(worker_id, 'B', expiration_date=date(2024, 6, 1), critical_alert_sent=True)
    soon = db.add_certification(worker_id, 'C', expiration_date=date(2024, 7, 1))
    db.add_certification(worker_id, 'D', expiration_date=date(2025, 1, 1))
    notifier = FakeNotifier()

    counts = resync(db.get_all_certifications(), NOW, db)

    assert counts == {'critical_marked': 2, 'attention_marked': 1}
    assert db.get_certification(expired).critical_alert_sent is True
    assert db.get_certification(soon).attention_alert_sent is True
    assert run_scan(db, notifier, NOW)['notified_count'] == 0
    assert notifier.calls == []


def test_resync_keeps_partial_counts_on_failure(acme):
    class FailingSecondWrite(RecordingStore):
        def set_alert_flags(self, cert_id, **flags):
            if self.writes:
                raise sqlite3.OperationalError("disk I/O error")
            self.writes.append(cert_id)

    certs = [make_cert(1, date(2024, 6, 1), acme), make_cert(2, date(2024, 6, 20), acme)]
    counts = {}

    with pytest.raises(sqlite3.OperationalError):
        resync(certs, NOW, FailingSecondWrite(), counts)

    assert counts == {'critical_marked': 1, 'attention_marked': 0}
    assert certs[0].critical_alert_sent is True
    assert certs[1].attention_alert_sent is False


def test_resync_skips_unparseable_dates(acme):
    cert = make_cert(1, 'not a date', acme)
    store = RecordingStore()

    assert resync([cert], NOW, store) == {'critical_marked': 0, 'attention_marked': 0}
    assert store.writes == []


# ===== Email Alerter Tests =====

class FakeSMTP:
    instances = []
    fail_login = False

    def __init__(self, host, port, timeout=None):
        self.host, self.port, self.timeout = host, port, timeout
        self.sent = []
        self.started_tls = False
        FakeSMTP.instances.append(self)

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def ehlo(self):
        pass

    def starttls(self):
        self.started_tls = True

    def login(self, username, password):
        if FakeSMTP.fail_login:
            raise smtplib.SMTPAuthenticationError(535, b'bad credentials')

    def send_message(self, message):
        self.sent.append(message)


@pytest.fixture
def fake_smtp(monkeypatch):
    FakeSMTP.instances = []
    FakeSMTP.fail_login = False
    monkeypatch.setattr(alerts.smtplib, 'SMTP', FakeSMTP)
    monkeypatch.setattr(alerts.smtplib, 'SMTP_SSL', FakeSMTP)
    return FakeSMTP


@pytest.fixture
def smtp_config():
    return SmtpConfig(host='smtp.example.com', port=587, username='alerts@example.com',
                      password='secret', cc='audit@example.com', timeout=5)


ENTRY = AlertEntry(course='Rigging Level 1', worker_name='Ana Rojas',
                   worker_national_id='12.345.678-9', work_center='Port Yard',
                   expiration_date='2024-06-10', severity_label='Critical (expired)')


def test_send_alert(fake_smtp, smtp_config):
    alerter = EmailAlerter(smtp_config)

    assert alerter.simulated is False
    assert alerter.send_alert('ops@acme.example', 'Acme Cranes', [ENTRY]) is True

    server = fake_smtp.instances[0]
    assert server.timeout == 5
    assert server.started_tls is True
    message = server.sent[0]
    assert message['To'] == 'ops@acme.example'
    assert message['Cc'] == 'audit@example.com'
    assert 'Acme Cranes' in message['Subject']
    text = message.get_body(('plain',)).get_content()
    assert 'Rigging Level 1 | Worker: Ana Rojas (12.345.678-9)' in text
    assert 'Status: Critical (expired)' in text


def test_send_alert_over_implicit_tls(fake_smtp, smtp_config):
    smtp_config.port = 465
    smtp_config.secure_transport = True

    assert EmailAlerter(smtp_config).send_alert('ops@acme.example', 'Acme', [ENTRY]) is True
    assert fake_smtp.instances[0].started_tls is False


def test_send_alert_authentication_failure(fake_smtp, smtp_config):
    fake_smtp.fail_login = True

    assert EmailAlerter(smtp_config).send_alert('ops@acme.example', 'Acme', [ENTRY]) is False


def test_send_alert_timeout(monkeypatch, smtp_config):
    def timeout(*args, **kwargs):
        raise TimeoutError("timed out")

    monkeypatch.setattr(alerts.smtplib, 'SMTP', timeout)

    assert EmailAlerter(smtp_config).send_alert('ops@acme.example', 'Acme', [ENTRY]) is False


def test_simulated_alerter_does_not_connect(fake_smtp):
    alerter = EmailAlerter(SmtpConfig(host='smtp.example.com'))

    assert alerter.simulated is True
    assert alerter.send_alert('ops@acme.example', 'Acme', [ENTRY]) is True
    assert alerter.send_test_email('ops@acme.example') is True
    assert fake_smtp.instances == []


def test_send_test_email(fake_smtp, smtp_config):
    assert EmailAlerter(smtp_config).send_test_email('admin@example.com') is True
    assert fake_smtp.instances[0].sent[0]['To'] == 'admin@example.com'


def recert_cert():
    company = Company(id=1, name='Acme Cranes', national_id='76.123.456-7',
                      email='ops@acme.example')
    worker = Worker(id=4, name='Ana', surname='Rojas', national_id='12.345.678-9',
                    work_center='Port Yard', company=company)
    return Certification(id=9, course='Rigging Level 1', expiration_date=date(2024, 7, 1),
                         worker=worker)


def test_send_recertification_request(fake_smtp, smtp_config):
    smtp_config.recert_to = 'training@example.com'

    sent = EmailAlerter(smtp_config).send_recertification_request(
        recert_cert(), 'Rigging level 2 for the new crane', now=NOW)

    assert sent is True
    message = fake_smtp.instances[0].sent[0]
    assert message['To'] == 'training@example.com'
    assert message['Subject'] == 'RYL RECERTIFICATION - Acme Cranes'
    text = message.get_body(('plain',)).get_content()
    assert '=== COMPANY ===\nName: Acme Cranes\nNational ID: 76.123.456-7\nE-mail: ops@acme.example' in text
    assert '=== WORKER ===\nName: Ana Rojas\nNational ID: 12.345.678-9\nWork center: Port Yard' in text
    assert 'Course (latest certification): Rigging Level 1' in text
    assert 'Expires: 2024-07-01' in text
    assert 'Request: Rigging level 2 for the new crane' in text
    assert 'Requested at: 2024-06-15 08:00 UTC' in text


def test_recertification_request_defaults(fake_smtp, smtp_config):
    smtp_config.recert_to = 'training@example.com'
    cert = recert_cert()
    cert.worker.company = None
    cert.expiration_date = None

    assert EmailAlerter(smtp_config).send_recertification_request(cert, now=NOW) is True

    message = fake_smtp.instances[0].sent[0]
    assert message['Subject'] == 'RYL RECERTIFICATION - Unregistered company'
    text = message.get_body(('plain',)).get_content()
    assert 'Expires: N/A' in text
    assert 'Request: Recertification requested from the company panel' in text


def test_recertification_request_without_recipient(fake_smtp, smtp_config):
    assert EmailAlerter(smtp_config).send_recertification_request(recert_cert()) is False
    assert fake_smtp.instances == []


def test_simulated_recertification_request(fake_smtp):
    alerter = EmailAlerter(SmtpConfig())

    assert alerter.send_recertification_request(recert_cert()) is True
    assert fake_smtp.instances == []


# ===== Scheduler Tests =====

def test_scheduler_job_never_overlaps():
    from scheduler import build_scheduler

    scheduler = build_scheduler(CertDatabase(':memory:'), FakeNotifier(), 6)

    jobs = scheduler.get_jobs()
    assert len(jobs) == 1
    assert jobs[0].max_instances == 1


def test_run_check_returns_scan_summary():
    from scheduler import run_check

    summary = run_check(CertDatabase(':memory:'), FakeNotifier())

    assert summary['ok'] is True
    assert summary['notified_count'] == 0
