import smtplib
from datetime import datetime, timezone

import httpx

from portal_access.service.notifications import EmailService, Notifier, SmsSender
from portal_access.storage.models import MagicLink, OTPVerification, TenantPortalConfig

NOW = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)


def _link(**kwargs):
    return MagicLink(
        id="link-1",
        token="a" * 64,
        tenant_id="tenant-7",
        client_id="client-42",
        purpose="portal_access",
        expires_at=datetime(2024, 3, 8, 12, 0, tzinfo=timezone.utc),
        created_at=NOW,
        **kwargs,
    )


class Recorder:
    def __init__(self, result=True, exc=None):
        self.result = result
        self.exc = exc
        self.calls = []

    def send(self, *args):
        self.calls.append(args)
        if self.exc is not None:
            raise self.exc
        return self.result


class TestSmsSender:
    def test_posts_to_gateway(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(202, json={"id": "msg-1"})

        sender = SmsSender(
            "https://sms.example.com/send",
            api_token="sms-token",
            transport=httpx.MockTransport(handler),
        )

        assert sender.send("+15550100", "hello")
        assert seen[0].headers["Authorization"] == "Bearer sms-token"
        assert b'"to":"+15550100"' in seen[0].content.replace(b" ", b"")

    def test_gateway_error_returns_false(self):
        sender = SmsSender(
            "https://sms.example.com/send",
            transport=httpx.MockTransport(lambda request: httpx.Response(500)),
        )
        assert sender.send("+15550100", "hello") is False

    def test_connection_error_returns_false(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        sender = SmsSender("https://sms.example.com/send", transport=httpx.MockTransport(handler))
        assert sender.send("+15550100", "hello") is False

    def test_unconfigured_gateway_only_logs(self):
        assert SmsSender().send("+15550100", "hello")


class TestEmailService:
    def test_unconfigured_service_only_logs(self):
        service = EmailService()
        assert not service.is_configured
        assert service.send("jo@example.com", "Subject", "<p>hi</p>", "hi")

    def test_connection_failure_returns_false(self, monkeypatch):
        def refuse(*args, **kwargs):
            raise OSError("connection refused")

        monkeypatch.setattr(smtplib, "SMTP", refuse)
        service = EmailService(smtp_host="smtp.example.com", from_email="portal@example.com")

        assert service.send("jo@example.com", "Subject", "<p>hi</p>", "hi") is False


class TestNotifier:
    async def test_magic_link_prefers_email(self):
        email, sms = Recorder(), Recorder()
        notifier = Notifier(email, sms, background=False)
        config = TenantPortalConfig(tenant_id="tenant-7", company_name="Acme Renovations")

        ok = await notifier.send_magic_link(
            _link(email="jo@example.com", phone="+15550100"), "https://portal/t", config
        )

        assert ok is True
        to, subject, html_body, text = email.calls[0]
        assert to == "jo@example.com"
        assert subject.startswith("Acme Renovations")
        assert "https://portal/t" in text
        assert "March 08, 2024" in text
        assert sms.calls == []

    async def test_magic_link_without_recipient_is_skipped(self):
        email, sms = Recorder(), Recorder()
        notifier = Notifier(email, sms, background=False)
        assert await notifier.send_magic_link(_link(), "https://portal/t", None) is None
        assert email.calls == [] and sms.calls == []

    async def test_branding_color_is_escaped(self):
        email = Recorder()
        notifier = Notifier(email, Recorder(), background=False)
        config = TenantPortalConfig(
            tenant_id="tenant-7", branding={"primary_color": '"><script>'}
        )
        await notifier.send_magic_link(_link(email="jo@example.com"), "https://portal/t", config)
        assert "<script>" not in email.calls[0][2]

    async def test_background_sends_report_through_callback(self):
        sms = Recorder()
        notifier = Notifier(Recorder(), sms, background=True)
        otp = OTPVerification.new(
            code="123456",
            tenant_id="tenant-7",
            client_id="client-42",
            customer_session_id="s-1",
            delivery_method="sms",
            delivery_target="+15550100",
            now=NOW,
        )
        results = []

        returned = await notifier.send_otp(
            otp, None, ttl_minutes=10, on_done=lambda ok, err: results.append((ok, err))
        )
        await notifier.drain()

        assert returned is None
        assert results == [(True, None)]
        assert "123456" in sms.calls[0][1]

    async def test_sender_exception_is_contained(self):
        email = Recorder(exc=RuntimeError("smtp exploded"))
        notifier = Notifier(email, Recorder(), background=False)
        results = []

        ok = await notifier.submit(
            "otp_email", email.send, "jo@example.com", on_done=lambda ok, err: results.append((ok, err))
        )

        assert ok is False
        assert results[0][0] is False
        assert results[0][1].startswith("RuntimeError")

    async def test_false_result_is_reported_as_failure(self):
        email = Recorder(result=False)
        notifier = Notifier(email, Recorder(), background=False)
        results = []
        await notifier.submit("x", email.send, on_done=lambda ok, err: results.append((ok, err)))
        assert results == [(False, "delivery_failed")]
