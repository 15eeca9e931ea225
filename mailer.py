import logging
import smtplib
from email.message import EmailMessage
from pathlib import Path
from typing import Optional

from jinja2 import Environment, FileSystemLoader, TemplateError, select_autoescape

from config import Settings, default_templates_dir
from errors import DependencyFailure


logger = logging.getLogger(__name__)


def template_env(templates_dir: Path) -> Environment:
    return Environment(
        loader=FileSystemLoader(str(templates_dir)),
        autoescape=select_autoescape(["html"]),
    )


def render_otp_email(
    templates: Environment, sender: str, recipient: str, code: str, ttl_minutes: int
) -> EmailMessage:
    context = {"code": code, "ttl_minutes": ttl_minutes}
    message = EmailMessage()
    message["Subject"] = "SpendWise password reset code"
    message["From"] = sender
    message["To"] = recipient
    message.set_content(templates.get_template("otp_email.txt").render(**context))
    message.add_alternative(
        templates.get_template("otp_email.html").render(**context), subtype="html"
    )
    return message


class Mailer:
    def send_otp(self, recipient: str, code: str, *, ttl_minutes: int = 10) -> None:
        raise NotImplementedError


class NullMailer(Mailer):
    """Used when no SMTP server is configured; every send reports failure."""

    def send_otp(self, recipient: str, code: str, *, ttl_minutes: int = 10) -> None:
        raise DependencyFailure("Email delivery is not configured")


class SMTPMailer(Mailer):
    def __init__(
        self,
        host: str,
        port: int,
        user: Optional[str],
        password: Optional[str],
        sender: str,
        timeout: float = 10,
        templates_dir: Optional[Path] = None,
    ) -> None:
        self.host = host
        self.port = port
        self.user = user
        self.password = password
        self.sender = sender
        self.timeout = timeout
        self.templates = template_env(templates_dir or default_templates_dir())

    def send_otp(self, recipient: str, code: str, *, ttl_minutes: int = 10) -> None:
        try:
            message = render_otp_email(self.templates, self.sender, recipient, code, ttl_minutes)
            with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as smtp:
                smtp.starttls()
                if self.user and self.password:
                    smtp.login(self.user, self.password)
                smtp.send_message(message)
        except TemplateError as exc:
            raise DependencyFailure(f"Email template unavailable: {exc}") from exc
        except (smtplib.SMTPException, OSError) as exc:
            raise DependencyFailure(f"Email delivery failed: {exc}") from exc
        logger.info(f"mail_sent: host={self.host} template=otp_email")


def build_mailer(settings: Settings) -> Mailer:
    if not settings.smtp_configured:
        logger.info("mailer: SMTP not configured, OTP emails disabled")
        return NullMailer()
    return SMTPMailer(
        host=settings.smtp_host,
        port=settings.smtp_port,
        user=settings.smtp_user,
        password=settings.smtp_password,
        sender=settings.mail_sender,
        timeout=settings.db_timeout_secs,
        templates_dir=settings.templates_dir,
    )
