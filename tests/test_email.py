"""Tests for notification rendering and best-effort delivery."""

import threading

import pytest

from edutenant.service.email import EmailService, notify


@pytest.fixture
def email_service():
    return EmailService(base_url="https://app.escola.com/")


class TestRender:
    def test_invite_template_links_to_acceptance(self, email_service):
        subject, text, html = email_service.render(
            "invite_professor",
            {"name": "Ana", "tenant_name": "Escola Alfa", "role": "PROFESSOR", "token": "abc"},
        )
        assert "Escola Alfa" in subject
        assert "Professor(a)" in text
        assert "https://app.escola.com/aceitar-convite?token=abc" in text
        assert "<p>" in html

    def test_reset_template_links_to_reset_page(self, email_service):
        _, text, _ = email_service.render("password_reset", {"name": "Ana", "token": "xyz"})
        assert "https://app.escola.com/reset-password?token=xyz" in text

    def test_html_is_escaped(self, email_service):
        _, _, html = email_service.render(
            "invite_diretor", {"name": "<script>", "tenant_name": "Escola", "token": "t"}
        )
        assert "<script>" not in html
        assert "&lt;script&gt;" in html

    def test_unknown_template(self, email_service):
        with pytest.raises(ValueError):
            email_service.render("welcome", {})


class TestDelivery:
    def test_unconfigured_service_logs_instead_of_sending(self, email_service):
        assert email_service.is_configured is False
        assert email_service.send("ana@escola.com", "password_reset", {"token": "t"}) is True

    def test_smtp_failure_returns_false(self, monkeypatch):
        service = EmailService(smtp_host="smtp.invalid", from_email="noreply@escola.com")

        def refuse(*args, **kwargs):
            raise OSError("connection refused")

        monkeypatch.setattr("edutenant.service.email.smtplib.SMTP", refuse)
        assert service.send("ana@escola.com", "password_reset", {"token": "t"}) is False

    async def test_notify_swallows_sender_errors(self):
        class Broken:
            def send(self, to, template_kind, params):
                raise RuntimeError("boom")

        assert await notify(Broken(), "ana@escola.com", "password_reset", {}) is False

    async def test_notify_reports_success(self, email_service):
        assert await notify(email_service, "ana@escola.com", "password_reset", {"token": "t"}) is True

    async def test_notify_runs_sender_off_the_event_loop(self):
        loop_thread = threading.get_ident()

        class Recording:
            thread = None

            def send(self, to, template_kind, params):
                Recording.thread = threading.get_ident()
                return True

        assert await notify(Recording(), "ana@escola.com", "password_reset", {}) is True
        assert Recording.thread is not None
        assert Recording.thread != loop_thread
