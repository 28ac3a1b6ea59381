import smtplib
import logging
from datetime import datetime, UTC
from email.message import EmailMessage
from html import escape

from config import SmtpConfig
from status import to_utc_date

logger = logging.getLogger(__name__)

SIGNATURE = "Rigging & Lifting Training"
DEFAULT_RECERT_REQUEST = "Recertification requested from the company panel"


class EmailAlerter:
    """Send certification status alerts to companies."""

    def __init__(self, config=None):
        """
        Args:
            config: SmtpConfig; defaults to SmtpConfig.from_env(). An
                incomplete config puts the alerter in simulated mode.
        """
        self.config = config if config is not None else SmtpConfig.from_env()
        self.simulated = not self.config.is_complete

        if self.simulated:
            logger.warning("SMTP configuration incomplete, alerts will be simulated")

    def send_alert(self, to_address, company_name, entries):
        """
        Send one alert e-mail listing a company's at-risk certifications.

        Args:
            to_address: Company contact e-mail
            company_name: Company name for subject and greeting
            entries: List of AlertEntry

        Returns:
            bool: True if sent (or simulated), False otherwise
        """
        if self.simulated:
            logger.info("Simulated alert to %s (%s): %d certification(s)",
                        to_address, company_name, len(entries))
            return True

        message = EmailMessage()
        message["Subject"] = self._create_subject(company_name)
        message["From"] = self.config.sender or self.config.username
        message["To"] = to_address
        if self.config.cc:
            message["Cc"] = self.config.cc
        message.set_content(self._create_body(company_name, entries))
        message.add_alternative(self._create_html(company_name, entries), subtype='html')

        if self._deliver(message):
            logger.info("Alert sent to %s (%s): %d certification(s)",
                        to_address, company_name, len(entries))
            return True
        return False

    def send_test_email(self, to_address):
        """Send a short message to check the SMTP settings."""
        if self.simulated:
            logger.info("Simulated test e-mail to %s", to_address)
            return True

        message = EmailMessage()
        message["Subject"] = "SMTP test (connection OK)"
        message["From"] = self.config.sender or self.config.username
        message["To"] = to_address
        message.set_content(
            "If you are reading this, the certification alert mailer can reach "
            f"its SMTP server.\n\nSender: {message['From']}\n"
        )
        return self._deliver(message)

    def send_recertification_request(self, cert, request_text=None, now=None):
        """
        Ask the training team to recertify a worker.

        Args:
            cert: Certification with worker and company loaded
            request_text: Free text from the requester
            now: Request time, defaults to the current UTC time

        Returns:
            bool: True if sent (or simulated), False otherwise
        """
        to_address = self.config.recert_to
        company_name = cert.company.name if cert.company else "Unregistered company"
        request_text = request_text or DEFAULT_RECERT_REQUEST
        now = now or datetime.now(UTC)

        if self.simulated:
            logger.info("Simulated recertification request for certification %s (%s, %s)",
                        cert.id, company_name, cert.course)
            return True

        if not to_address:
            logger.error("RECERT_NOTIFY_TO is not set, recertification request not sent")
            return False

        details = self._recertification_details(cert, request_text)

        message = EmailMessage()
        message["Subject"] = f"RYL RECERTIFICATION - {company_name}"
        message["From"] = self.config.sender or self.config.username
        message["To"] = to_address
        message.set_content(self._create_recertification_body(details, now))
        message.add_alternative(self._create_recertification_html(details, now), subtype='html')

        if self._deliver(message):
            logger.info("Recertification request for certification %s sent to %s",
                        cert.id, to_address)
            return True
        return False

    def _connect(self):
        if self.config.secure_transport:
            return smtplib.SMTP_SSL(self.config.host, self.config.port,
                                    timeout=self.config.timeout)
        return smtplib.SMTP(self.config.host, self.config.port,
                            timeout=self.config.timeout)

    def _deliver(self, message):
        try:
            with self._connect() as server:
                if not self.config.secure_transport:
                    server.ehlo()
                    server.starttls()
                    server.ehlo()
                server.login(self.config.username, self.config.password)
                server.send_message(message)
            return True

        except smtplib.SMTPAuthenticationError:
            logger.error("Authentication failed. Check SMTP username/password.")
            return False
        except smtplib.SMTPRecipientsRefused:
            logger.error("The recipient address %s was rejected.", message["To"])
            return False
        except smtplib.SMTPException as e:
            logger.error("SMTP error occurred: %s", e)
            return False
        except OSError as e:
            logger.error("Network error sending to %s: %s", message["To"], e)
            return False

    def _create_subject(self, company_name):
        """Create email subject line."""
        return f"Certifications in critical / attention status - {company_name}"

    def _create_body(self, company_name, entries):
        """Create email body text."""
        body = "Dear customer,\n\n"
        body += ("There are certifications in CRITICAL or ATTENTION status "
                 f"for your company: {company_name}.\n\n")
        body += "Details:\n"

        for entry in entries:
            body += (f"- {entry.course} | Worker: {entry.worker_name} "
                     f"({entry.worker_national_id}) | Work center: {entry.work_center} "
                     f"| Expires: {entry.expiration_date} | Status: {entry.severity_label}\n")

        body += ("\nYou can request recertification from the company dashboard "
                 "or by replying to this e-mail.\n\n")
        body += f"Regards,\n{SIGNATURE}\n"

        return body

    def _create_html(self, company_name, entries):
        items = "".join(
            '<li style="margin-bottom: 10px;">'
            f"<strong>{escape(entry.course)}</strong><br/>"
            f"Worker: {escape(entry.worker_name)} ({escape(entry.worker_national_id)})<br/>"
            f"Work center: {escape(entry.work_center)}<br/>"
            f"Expires: {escape(entry.expiration_date)}<br/>"
            f"Status: <strong>{escape(entry.severity_label)}</strong>"
            "</li>"
            for entry in entries
        )
        return (
            "<p>Dear customer,</p>"
            "<p>There are certifications in <strong>CRITICAL</strong> or "
            "<strong>ATTENTION</strong> status for your company "
            f"<strong>{escape(company_name)}</strong>.</p>"
            f"<h3>Details</h3><ul>{items}</ul>"
            "<p>You can request recertification from the company dashboard "
            "or by replying to this e-mail.</p>"
            f"<p>Regards,<br/>{escape(SIGNATURE)}</p>"
        )

    @staticmethod
    def _recertification_details(cert, request_text):
        company = cert.company
        worker = cert.worker
        expiry = to_utc_date(cert.expiration_date)
        return [
            ("Company", [
                ("Name", company.name if company else "Unregistered company"),
                ("National ID", (company.national_id if company else None) or "N/A"),
                ("E-mail", (company.email if company else None) or "N/A"),
            ]),
            ("Worker", [
                ("Name", worker.full_name if worker else ""),
                ("National ID", (worker.national_id if worker else None) or "N/A"),
                ("Work center", (worker.work_center if worker else None) or "N/A"),
            ]),
            ("Recertification", [
                ("Course (latest certification)", cert.course or "Undefined course"),
                ("Expires", expiry.isoformat() if expiry else "N/A"),
                ("Request", request_text),
            ]),
        ]

    def _create_recertification_body(self, details, now):
        body = f"A recertification was requested through the {SIGNATURE} platform.\n"
        for title, fields in details:
            body += f"\n=== {title.upper()} ===\n"
            for label, value in fields:
                body += f"{label}: {value}\n"
        body += f"\nRequested at: {now:%Y-%m-%d %H:%M} UTC\n"
        return body

    def _create_recertification_html(self, details, now):
        sections = "".join(
            f"<h3>{escape(title)}</h3><ul>"
            + "".join(f"<li><strong>{escape(label)}:</strong> {escape(value)}</li>"
                      for label, value in fields)
            + "</ul>"
            for title, fields in details
        )
        return (
            "<p><strong>A recertification was requested through the "
            f"{escape(SIGNATURE)} platform.</strong></p>"
            f"{sections}"
            f"<p>Requested at: {now:%Y-%m-%d %H:%M} UTC</p>"
        )
