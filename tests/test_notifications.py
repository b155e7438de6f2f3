"""Tests for SMS and e-mail code delivery."""

import json
import smtplib

import httpx

from credgate.service.notifications import EmailService, WebhookSmsGateway


def _gateway_with(handler) -> WebhookSmsGateway:
    gateway = WebhookSmsGateway(
        webhook_url="https://sms.example.test/send", api_key="k3y", sender_id="credgate"
    )
    gateway._client = httpx.AsyncClient(
        transport=httpx.MockTransport(handler),
        headers={"Authorization": "Bearer k3y"},
    )
    return gateway


async def test_sms_posts_message_to_webhook():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(202, json={"id": "msg-1"})

    gateway = _gateway_with(handler)
    try:
        assert await gateway.send("+15551234567", "Your verification code is: 123456.")
    finally:
        await gateway.close()

    assert len(seen) == 1
    assert seen[0].headers["Authorization"] == "Bearer k3y"
    assert json.loads(seen[0].content) == {
        "to": "+15551234567",
        "from": "credgate",
        "body": "Your verification code is: 123456.",
    }


async def test_sms_provider_error_returns_false():
    gateway = _gateway_with(lambda request: httpx.Response(500))
    try:
        assert not await gateway.send("+15551234567", "hello")
    finally:
        await gateway.close()


async def test_sms_unreachable_provider_returns_false():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    gateway = _gateway_with(handler)
    try:
        assert not await gateway.send("+15551234567", "hello")
    finally:
        await gateway.close()


async def test_unconfigured_sms_gateway_logs_instead():
    gateway = WebhookSmsGateway()
    assert not gateway.is_configured
    assert await gateway.send("+15551234567", "hello")


async def test_unconfigured_email_logs_instead():
    service = EmailService()
    assert not service.is_configured
    assert await service.send("alice@example.com", "Your verification code is: 123456.")


async def test_email_sent_over_smtp(monkeypatch):
    sent = []

    class FakeSMTP:
        def __init__(self, host, port, timeout=None):
            self.host = host

        def __enter__(self):
            return self

        def __exit__(self, *exc):
            return False

        def starttls(self, context=None):
            pass

        def login(self, user, password):
            sent.append(("login", user))

        def sendmail(self, from_addr, to_addr, body):
            sent.append(("sendmail", from_addr, to_addr, body))

    monkeypatch.setattr(smtplib, "SMTP", FakeSMTP)
    service = EmailService(
        smtp_host="smtp.example.test",
        smtp_user="mailer",
        smtp_password="pw",
        from_email="noreply@example.test",
    )

    assert await service.send("alice@example.com", "Your verification code is: 123456.")

    assert sent[0] == ("login", "mailer")
    _, from_addr, to_addr, body = sent[1]
    assert from_addr == "noreply@example.test"
    assert to_addr == "alice@example.com"
    assert "Subject: Verification Code" in body


async def test_smtp_failure_returns_false(monkeypatch):
    class BrokenSMTP:
        def __init__(self, *args, **kwargs):
            raise smtplib.SMTPConnectError(421, b"unavailable")

    monkeypatch.setattr(smtplib, "SMTP", BrokenSMTP)
    service = EmailService(smtp_host="smtp.example.test", from_email="noreply@example.test")
    assert not await service.send("alice@example.com", "hello")
