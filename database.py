# database.py
import sqlite3
import uuid
from datetime import datetime, timedelta, UTC

from models import Company, Worker, Certification
from status import to_utc_date

CERT_SELECT = '''
    SELECT c.*,
           w.id AS w_id, w.name AS w_name, w.surname AS w_surname,
           w.national_id AS w_national_id, w.work_center AS w_work_center,
           co.id AS co_id, co.name AS co_name,
           co.national_id AS co_national_id, co.email AS co_email
    FROM certifications c
    LEFT JOIN workers w ON c.worker_id = w.id
    LEFT JOIN companies co ON w.company_id = co.id
'''


def _iso(value):
    day = to_utc_date(value)
    return day.isoformat() if day else None


class CertDatabase:
    """Database layer for companies, workers and certifications."""

    def __init__(self, db_path='certs.db'):
        """Initialize database connection and create tables if needed."""
        self.db_path = db_path
        # An in-memory database only lives as long as its connection
        self._memory_conn = sqlite3.connect(':memory:') if db_path == ':memory:' else None
        self._init_database()

    def _connect(self):
        if self._memory_conn is not None:
            conn = self._memory_conn
        else:
            conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    def _init_database(self):
        """Create tables and indexes if they don't exist."""
        with self._connect() as conn:
            cursor = conn.cursor()

            cursor.execute('''
                CREATE TABLE IF NOT EXISTS companies (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    name TEXT NOT NULL,
                    national_id TEXT,
                    email TEXT
                )
            ''')

            cursor.execute('''
                CREATE TABLE IF NOT EXISTS workers (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    company_id INTEGER,
                    name TEXT NOT NULL,
                    surname TEXT,
                    national_id TEXT,
                    work_center TEXT,
                    FOREIGN KEY (company_id) REFERENCES companies(id)
                )
            ''')

            # Alert flags flip to 1 once the matching e-mail went out
            cursor.execute('''
                CREATE TABLE IF NOT EXISTS certifications (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    worker_id INTEGER NOT NULL,
                    course TEXT NOT NULL,
                    issue_date TEXT,
                    expiration_date TEXT,
                    verification_code TEXT UNIQUE,
                    attention_alert_sent BOOLEAN NOT NULL DEFAULT 0,
                    critical_alert_sent BOOLEAN NOT NULL DEFAULT 0,
                    report_url TEXT,
                    FOREIGN KEY (worker_id) REFERENCES workers(id)
                )
            ''')

            cursor.execute('CREATE INDEX IF NOT EXISTS idx_worker_company ON workers(company_id)')
            cursor.execute('CREATE INDEX IF NOT EXISTS idx_cert_worker ON certifications(worker_id)')
            cursor.execute('CREATE INDEX IF NOT EXISTS idx_cert_expiration ON certifications(expiration_date)')

            conn.commit()

    # ========================================
    # Row mapping
    # ========================================

    @staticmethod
    def _to_certification(row):
        company = None
        if row['co_id'] is not None:
            company = Company(
                id=row['co_id'],
                name=row['co_name'],
                national_id=row['co_national_id'],
                email=row['co_email'],
            )

        worker = None
        if row['w_id'] is not None:
            worker = Worker(
                id=row['w_id'],
                name=row['w_name'],
                surname=row['w_surname'] or '',
                national_id=row['w_national_id'] or '',
                work_center=row['w_work_center'] or '',
                company=company,
            )

        return Certification(
            id=row['id'],
            course=row['course'],
            issue_date=to_utc_date(row['issue_date']),
            expiration_date=to_utc_date(row['expiration_date']),
            verification_code=row['verification_code'],
            attention_alert_sent=bool(row['attention_alert_sent']),
            critical_alert_sent=bool(row['critical_alert_sent']),
            report_url=row['report_url'],
            worker=worker,
        )

    # ========================================
    # CRUD
    # ========================================

    def add_company(self, name, national_id=None, email=None):
        """Insert a company and return its ID."""
        with self._connect() as conn:
            cursor = conn.execute(
                'INSERT INTO companies (name, national_id, email) VALUES (?, ?, ?)',
                (name, national_id, email)
            )
            return cursor.lastrowid

    def add_worker(self, company_id, name, surname='', national_id='', work_center=''):
        """Insert a worker and return its ID."""
        with self._connect() as conn:
            cursor = conn.execute('''
                INSERT INTO workers (company_id, name, surname, national_id, work_center)
                VALUES (?, ?, ?, ?, ?)
            ''', (company_id, name, surname, national_id, work_center))
            return cursor.lastrowid

    def add_certification(self, worker_id, course, issue_date=None, expiration_date=None,
                          attention_alert_sent=False, critical_alert_sent=False,
                          report_url=None):
        """Insert a certification with explicit dates and return its ID."""
        with self._connect() as conn:
            cursor = conn.execute('''
                INSERT INTO certifications
                (worker_id, course, issue_date, expiration_date,
                 attention_alert_sent, critical_alert_sent, report_url)
                VALUES (?, ?, ?, ?, ?, ?, ?)
            ''', (
                worker_id,
                course,
                _iso(issue_date),
                _iso(expiration_date),
                int(attention_alert_sent),
                int(critical_alert_sent),
                report_url,
            ))
            return cursor.lastrowid

    def issue_certification(self, worker_id, course, validity_days=365, now=None):
        """Record a completed course: issued now, valid for validity_days."""
        now = now or datetime.now(UTC)
        return self.add_certification(
            worker_id,
            course,
            issue_date=now,
            expiration_date=to_utc_date(now) + timedelta(days=validity_days),
        )

    def get_certification(self, cert_id):
        """Get certification by ID, or None."""
        with self._connect() as conn:
            row = conn.execute(CERT_SELECT + ' WHERE c.id = ?', (cert_id,)).fetchone()
        return self._to_certification(row) if row else None

    def get_all_certifications(self):
        """Get all certifications, soonest expiry first."""
        with self._connect() as conn:
            rows = conn.execute(
                CERT_SELECT + ' ORDER BY c.expiration_date IS NULL, c.expiration_date ASC'
            ).fetchall()
        return [self._to_certification(row) for row in rows]

    def fetch_certifications_needing_alert_check(self):
        """Certifications with at least one alert still unsent."""
        with self._connect() as conn:
            rows = conn.execute(
                CERT_SELECT + '''
                WHERE c.attention_alert_sent = 0 OR c.critical_alert_sent = 0
                ORDER BY c.id
            ''').fetchall()
        return [self._to_certification(row) for row in rows]

    def set_alert_flags(self, cert_id, attention_alert_sent=None, critical_alert_sent=None):
        """
        Write one or both alert flags of a certification.

        Raises:
            sqlite3.Error: if the write fails
        """
        updates = {}
        if attention_alert_sent is not None:
            updates['attention_alert_sent'] = int(attention_alert_sent)
        if critical_alert_sent is not None:
            updates['critical_alert_sent'] = int(critical_alert_sent)
        if not updates:
            return

        assignments = ', '.join(f'{column} = ?' for column in updates)
        with self._connect() as conn:
            conn.execute(
                f'UPDATE certifications SET {assignments} WHERE id = ?',
                (*updates.values(), cert_id)
            )

    def renew_certification(self, cert_id, expiration_date):
        """
        Move a certification's expiration date.
        Both alert flags are reset so the renewed period alerts again.

        Returns:
            bool: True if the certification exists
        """
        with self._connect() as conn:
            cursor = conn.execute('''
                UPDATE certifications
                SET expiration_date = ?,
                    attention_alert_sent = 0,
                    critical_alert_sent = 0
                WHERE id = ?
            ''', (_iso(expiration_date), cert_id))
            return cursor.rowcount > 0

    def get_latest_certification(self, worker_id):
        """Get the worker's certification with the latest expiration date, or None."""
        with self._connect() as conn:
            row = conn.execute(
                CERT_SELECT + '''
                WHERE c.worker_id = ?
                ORDER BY c.expiration_date IS NULL, c.expiration_date DESC, c.id DESC
                LIMIT 1
            ''', (worker_id,)).fetchone()
        return self._to_certification(row) if row else None

    def set_report_url(self, cert_id, report_url):
        """
        Attach the URL of an uploaded course report to a certification.

        Returns:
            bool: True if the certification exists
        """
        with self._connect() as conn:
            cursor = conn.execute(
                'UPDATE certifications SET report_url = ? WHERE id = ?',
                (report_url, cert_id)
            )
            return cursor.rowcount > 0

    def ensure_verification_code(self, cert_id):
        """Return the certification's verification code, assigning one on first use."""
        with self._connect() as conn:
            row = conn.execute(
                'SELECT verification_code FROM certifications WHERE id = ?', (cert_id,)
            ).fetchone()
            if row is None:
                return None
            if row['verification_code']:
                return row['verification_code']

            code = uuid.uuid4().hex[:10].upper()
            # Only fill an empty code; a concurrent writer's code wins
            conn.execute('''
                UPDATE certifications SET verification_code = ?
                WHERE id = ? AND verification_code IS NULL
            ''', (code, cert_id))
            return conn.execute(
                'SELECT verification_code FROM certifications WHERE id = ?', (cert_id,)
            ).fetchone()['verification_code']

    def find_by_verification_code(self, code):
        """Get certification by verification code, or None."""
        with self._connect() as conn:
            row = conn.execute(
                CERT_SELECT + ' WHERE c.verification_code = ?', (code.strip().upper(),)
            ).fetchone()
        return self._to_certification(row) if row else None

    # ========================================
    # Raw queries
    # ========================================

    def query_one(self, sql, params=()):
        with self._connect() as conn:
            return conn.execute(sql, params).fetchone()
