"""
Outbound mail: magic sign-in links and "account connected" notices.

Messages are rendered from Jinja2 templates under ``templates/email`` as a plain text
body with an HTML alternative, and delivered over SMTP with STARTTLS from a worker thread
so the event loop never blocks on the mail server.
"""

import asyncio
from email.message import EmailMessage
from email.utils import make_msgid
import logging
import smtplib
import ssl
from typing import Any, Callable, Dict, Optional

import jinja2

from edu.canvasmcp.bridge.errors import BridgeError

logger = logging.getLogger(__name__)

Transport = Callable[[EmailMessage], None]


class MailDeliveryError(BridgeError):
    @staticmethod
    def disabled() -> "MailDeliveryError":
        return MailDeliveryError("error-mail-1000 Email is not configured")

    @staticmethod
    def failed(reason: str) -> "MailDeliveryError":
        return MailDeliveryError(f"error-mail-1001 Email delivery failed: {reason}")


class SmtpTransport:
    """Blocking SMTP delivery. Port 465 uses implicit TLS, any other port STARTTLS."""

    def __init__(
        self, host: str, port: int, user: str, password: str, timeout: float = 30
    ) -> None:
        self.host = host
        self.port = port
        self.user = user
        self._password = password
        self.timeout = timeout

    def __call__(self, message: EmailMessage) -> None:
        context = ssl.create_default_context()
        if self.port == 465:
            smtp = smtplib.SMTP_SSL(self.host, self.port, timeout=self.timeout, context=context)
        else:
            smtp = smtplib.SMTP(self.host, self.port, timeout=self.timeout)
        with smtp:
            if self.port != 465:
                smtp.starttls(context=context)
            smtp.login(self.user, self._password)
            smtp.send_message(message)


def email_environment(templates_path: str) -> jinja2.Environment:
    return jinja2.Environment(
        loader=jinja2.FileSystemLoader(templates_path),
        autoescape=jinja2.select_autoescape(["html"]),
    )


class Mailer:
    def __init__(
        self,
        transport: Optional[Transport],
        sender: Optional[str],
        base_url: str,
        templates: jinja2.Environment,
        brand_name: str = "Canvas MCP",
        magic_link_ttl_minutes: int = 15,
    ) -> None:
        self.transport = transport
        self.sender = sender
        self.base_url = base_url
        self.templates = templates
        self.brand_name = brand_name
        self.magic_link_ttl_minutes = magic_link_ttl_minutes

    @property
    def enabled(self) -> bool:
        return self.transport is not None and bool(self.sender)

    @staticmethod
    def from_settings(settings: Any, templates: jinja2.Environment) -> "Mailer":
        transport = None
        if settings.mail_enabled:
            transport = SmtpTransport(
                settings.smtp_host,
                settings.smtp_port,
                settings.smtp_user,
                settings.smtp_pass,
            )
        else:
            logger.warning("SMTP not configured - email functionality disabled")
        return Mailer(
            transport=transport,
            sender=settings.smtp_from,
            base_url=settings.public_url,
            templates=templates,
            brand_name=settings.brand_name,
            magic_link_ttl_minutes=max(1, settings.magic_link_ttl // 60),
        )

    async def send_magic_link(self, email: str, token: str) -> None:
        await self._send(
            email,
            f"Sign in to {self.brand_name}",
            "magic_link",
            {
                "link": f"{self.base_url}/auth/verify?token={token}",
                "ttl_minutes": self.magic_link_ttl_minutes,
            },
        )

    async def send_account_connected(self, email: str, canvas_domain: str) -> None:
        await self._send(
            email,
            f"Canvas Account Connected - {self.brand_name}",
            "account_connected",
            {
                "canvas_domain": canvas_domain,
                "dashboard_url": f"{self.base_url}/dashboard",
            },
        )

    async def _send(
        self, to: str, subject: str, template: str, context: Dict[str, Any]
    ) -> None:
        if not self.enabled:
            raise MailDeliveryError.disabled()

        context = {"brand_name": self.brand_name, "base_url": self.base_url, **context}
        message = EmailMessage()
        message["From"] = self.sender
        message["To"] = to
        message["Subject"] = subject
        message["Message-ID"] = make_msgid()
        message["X-Mailer"] = self.brand_name
        message.set_content(self.templates.get_template(f"email/{template}.txt").render(context))
        message.add_alternative(
            self.templates.get_template(f"email/{template}.html").render(context),
            subtype="html",
        )

        try:
            await asyncio.to_thread(self.transport, message)
        except (smtplib.SMTPException, OSError) as e:
            raise MailDeliveryError.failed(type(e).__name__) from e
        logger.info("Sent %s email", template)
