"""
Domain records for companies, workers and their course certifications.
"""
from dataclasses import dataclass
from datetime import date
from typing import Optional


@dataclass
class Company:
    id: int
    name: str
    national_id: Optional[str] = None
    email: Optional[str] = None


@dataclass
class Worker:
    id: int
    name: str
    surname: str = ""
    national_id: str = ""
    work_center: str = ""
    company: Optional[Company] = None

    @property
    def full_name(self):
        return f"{self.name or ''} {self.surname or ''}".strip()


@dataclass
class Certification:
    """A worker's completed course, with its expiry and alert bookkeeping."""

    id: int
    course: str
    issue_date: Optional[date] = None
    expiration_date: Optional[date] = None
    verification_code: Optional[str] = None
    attention_alert_sent: bool = False
    critical_alert_sent: bool = False
    report_url: Optional[str] = None
    worker: Optional[Worker] = None

    @property
    def company(self):
        return self.worker.company if self.worker else None


@dataclass
class AlertEntry:
    """One line of a company alert e-mail."""

    course: str
    worker_name: str
    worker_national_id: str
    work_center: str
    expiration_date: str
    severity_label: str
