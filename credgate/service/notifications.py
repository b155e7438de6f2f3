from __future__ import annotations

import asyncio
import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from html import escape
from typing import Optional

import httpx

from credgate.logging import get_logger, mask_email, mask_phone

logger = get_logger(__name__)


class EmailService:
    """Delivers verification codes by e-mail.

    Supports:
    - SMTP with STARTTLS or implicit TLS
    - Fallback to logging when not configured (dev mode)
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
        from_name: str = "credgate",
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name

    @property
    def is_configured(self) -> bool:
        """Check if email sending is properly configured."""
        return bool(self.smtp_host and self.from_email)

    def _send_email(
        self,
        to_email: str,
        subject: str,
        html_body: str,
        text_body: Optional[str] = None,
    ) -> bool:
        """Send an email via SMTP.

        Returns True if sent successfully, False otherwise.
        """
        if not self.is_configured:
            # Dev mode: log the email instead of sending
            logger.info(
                "email_dev_mode",
                to=mask_email(to_email),
                subject=subject,
            )
            return True

        try:
            msg = MIMEMultipart("alternative")
            msg["Subject"] = subject
            msg["From"] = f"{self.from_name} <{self.from_email}>"
            msg["To"] = to_email

            if text_body:
                msg.attach(MIMEText(text_body, "plain"))
            msg.attach(MIMEText(html_body, "html"))

            context = ssl.create_default_context()

            logger.debug(
                "email_connecting",
                host=self.smtp_host,
                port=self.smtp_port,
                use_tls=self.smtp_use_tls,
                to=mask_email(to_email),
            )

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

            logger.info("email_sent", to=mask_email(to_email), subject=subject)
            return True

        except smtplib.SMTPAuthenticationError as e:
            logger.error(
                "email_auth_failed",
                to=mask_email(to_email),
                host=self.smtp_host,
                error=str(e),
            )
            return False
        except smtplib.SMTPRecipientsRefused as e:
            logger.error(
                "email_recipient_refused",
                to=mask_email(to_email),
                error=str(e),
            )
            return False
        except smtplib.SMTPException as e:
            logger.error(
                "email_smtp_error",
                to=mask_email(to_email),
                host=self.smtp_host,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False
        except (ssl.SSLError, TimeoutError, OSError) as e:
            logger.error(
                "email_connect_failed",
                to=mask_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False

    async def send(
        self, destination: str, message: str, *, subject: str = "Verification Code"
    ) -> bool:
        html_body = f"<!DOCTYPE html><html><body><p>{escape(message)}</p></body></html>"
        return await asyncio.to_thread(
            self._send_email, destination, subject, html_body, message
        )


class WebhookSmsGateway:
    """Sends text messages through an HTTP SMS provider.

    Without a configured webhook the message is logged instead (dev mode).
    """

    def __init__(
        self,
        *,
        webhook_url: Optional[str] = None,
        api_key: Optional[str] = None,
        sender_id: str = "credgate",
        timeout: float = 10.0,
    ) -> None:
        self.webhook_url = webhook_url
        self.api_key = api_key
        self.sender_id = sender_id
        self.timeout = timeout
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def is_configured(self) -> bool:
        return bool(self.webhook_url)

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create an HTTP client for provider calls."""
        if self._client is None:
            headers = {}
            if self.api_key:
                headers["Authorization"] = f"Bearer {self.api_key}"
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.timeout, connect=5.0),
                headers=headers,
            )
        return self._client

    async def send(self, destination: str, message: str) -> bool:
        if not self.is_configured:
            logger.info("sms_dev_mode", to=mask_phone(destination), length=len(message))
            return True
        try:
            client = await self._get_client()
            response = await client.post(
                self.webhook_url,
                json={"to": destination, "from": self.sender_id, "body": message},
            )
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            logger.error(
                "sms_provider_rejected",
                to=mask_phone(destination),
                status_code=e.response.status_code,
            )
            return False
        except httpx.TimeoutException as e:
            logger.error("sms_provider_timeout", to=mask_phone(destination), error=str(e))
            return False
        except httpx.HTTPError as e:
            logger.error(
                "sms_provider_unreachable",
                to=mask_phone(destination),
                error_type=type(e).__name__,
                error=str(e),
            )
            return False
        logger.info("sms_sent", to=mask_phone(destination))
        return True

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
