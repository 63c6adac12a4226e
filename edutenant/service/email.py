from __future__ import annotations

import asyncio
import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from html import escape
from typing import Any, Dict, Optional

from edutenant.logging import get_logger

logger = get_logger(__name__)

_ROLE_LABELS = {
    "PROFESSOR": "Professor(a)",
    "COORDENADOR": "Coordenador(a)",
    "DIRETOR": "Diretor(a)",
}

# template kind -> (subject, text body); bodies are str.format templates
_TEMPLATES: Dict[str, tuple[str, str]] = {
    "invite_professor": (
        "Convite para {tenant_name}",
        "Olá {name},\n\nVocê foi convidado(a) como {role_label} em {tenant_name}.\n"
        "Crie sua senha pelo link abaixo:\n\n{link}\n\nO convite expira em 24 horas.\n",
    ),
    "invite_coordenador": (
        "Convite para coordenar em {tenant_name}",
        "Olá {name},\n\nVocê foi convidado(a) como {role_label} em {tenant_name}.\n"
        "Crie sua senha pelo link abaixo:\n\n{link}\n\nO convite expira em 24 horas.\n",
    ),
    "invite_diretor": (
        "Convite para dirigir {tenant_name}",
        "Olá {name},\n\nVocê foi convidado(a) como {role_label} de {tenant_name}.\n"
        "Crie sua senha pelo link abaixo:\n\n{link}\n\nO convite expira em 24 horas.\n",
    ),
    "password_reset": (
        "Redefinição de senha",
        "Olá {name},\n\nRecebemos um pedido para redefinir sua senha.\n"
        "Use o link abaixo em até 1 hora:\n\n{link}\n\n"
        "Se você não fez esse pedido, ignore este e-mail.\n",
    ),
}


class EmailService:
    """Transactional email over SMTP.

    When SMTP is not configured the message is logged instead of sent, which
    is the normal mode for tests and local development.
    """

    def __init__(
        self,
        *,
        smtp_host: Optional[str] = None,
        smtp_port: int = 587,
        smtp_user: Optional[str] = None,
        smtp_password: Optional[str] = None,
        smtp_use_tls: bool = True,
        from_email: Optional[str] = None,
        from_name: str = "Edutenant",
        base_url: Optional[str] = None,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.base_url = (base_url or "http://localhost:3000").rstrip("/")

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    def _redact_email(self, email: str) -> str:
        if "@" not in email:
            return "redacted"
        local, domain = email.split("@", 1)
        return f"{local[:2]}***@{domain}"

    def _link_for(self, template_kind: str, params: Dict[str, Any]) -> str:
        token = params.get("token", "")
        if template_kind == "password_reset":
            return f"{self.base_url}/reset-password?token={token}"
        return f"{self.base_url}/aceitar-convite?token={token}"

    def render(self, template_kind: str, params: Dict[str, Any]) -> tuple[str, str, str]:
        """Return (subject, text body, html body) for ``template_kind``."""
        try:
            subject_tpl, text_tpl = _TEMPLATES[template_kind]
        except KeyError:
            raise ValueError(f"unknown email template: {template_kind}") from None
        values = {
            "name": params.get("name", ""),
            "tenant_name": params.get("tenant_name", ""),
            "role_label": _ROLE_LABELS.get(str(params.get("role", "")), ""),
            "link": self._link_for(template_kind, params),
        }
        subject = subject_tpl.format(**values)
        text_body = text_tpl.format(**values)
        paragraphs = "".join(
            f"<p>{escape(block).replace(chr(10), '<br>')}</p>"
            for block in text_body.split("\n\n")
            if block.strip()
        )
        html_body = f"<!DOCTYPE html><html><body>{paragraphs}</body></html>"
        return subject, text_body, html_body

    def send(self, to: str, template_kind: str, params: Dict[str, Any]) -> bool:
        subject, text_body, html_body = self.render(template_kind, params)
        return self._send_email(to, subject, html_body, text_body)

    def _send_email(
        self,
        to_email: str,
        subject: str,
        html_body: str,
        text_body: Optional[str] = None,
    ) -> bool:
        """Send an email via SMTP. Returns True if sent, False otherwise."""
        if not self.is_configured:
            logger.info(
                "email_dev_mode",
                to=self._redact_email(to_email),
                subject=subject,
            )
            return True

        try:
            msg = MIMEMultipart("alternative")
            msg["Subject"] = subject
            msg["From"] = f"{self.from_name} <{self.from_email}>"
            msg["To"] = to_email
            if text_body:
                msg.attach(MIMEText(text_body, "plain", "utf-8"))
            msg.attach(MIMEText(html_body, "html", "utf-8"))

            context = ssl.create_default_context()
            if self.smtp_use_tls:
                with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=30) as server:
                    server.starttls(context=context)
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())
            else:
                with smtplib.SMTP_SSL(
                    self.smtp_host, self.smtp_port, context=context, timeout=30
                ) as server:
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())

            logger.info("email_sent", to=self._redact_email(to_email), subject=subject)
            return True

        except smtplib.SMTPAuthenticationError as e:
            logger.error(
                "email_auth_failed",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                error=str(e),
            )
            return False
        except smtplib.SMTPRecipientsRefused as e:
            logger.error(
                "email_recipient_refused",
                to=self._redact_email(to_email),
                error=str(e),
            )
            return False
        except smtplib.SMTPException as e:
            logger.error(
                "email_smtp_error",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False
        except (ssl.SSLError, OSError) as e:
            logger.error(
                "email_connection_failed",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False


async def notify(sender: Any, to: str, template_kind: str, params: Dict[str, Any]) -> bool:
    """Send best-effort in a worker thread; a failing sender is logged and never reaches the caller."""
    try:
        sent = await asyncio.to_thread(sender.send, to, template_kind, params)
    except Exception as exc:
        logger.error(
            "notification_failed",
            template=template_kind,
            error_type=type(exc).__name__,
            error=str(exc),
        )
        return False
    if sent is False:
        logger.warning("notification_not_delivered", template=template_kind)
        return False
    return True
