"""Tests for SMTP delivery, retries and message rendering."""

import smtplib

import pytest

from genesis_auth.service.email import EmailService


@pytest.fixture
def service():
    return EmailService(
        smtp_host="smtp.example.com",
        smtp_user="mailer@example.com",
        smtp_password="smtp-password",
        from_name="Genesis Auth",
        base_url="https://app.example.com/",
        retry_attempts=3,
        retry_backoff_seconds=0,
    )


class RecordingDeliver:
    def __init__(self, failures=()):
        self.failures = list(failures)
        self.calls = []

    def __call__(self, to_email, subject, html_body, text_body):
        self.calls.append((to_email, subject, html_body, text_body))
        if self.failures:
            raise self.failures.pop(0)


def test_unconfigured_service_logs_instead_of_sending(monkeypatch):
    service = EmailService()
    monkeypatch.setattr(service, "_deliver", RecordingDeliver([AssertionError("no smtp")]))

    assert service.is_configured is False
    assert service.send_verification_email("user@example.com", "abc123") is True


def test_from_settings(settings):
    settings = settings.model_copy(
        update={"smtp_host": "smtp.example.com", "email_from_address": "no-reply@example.com"}
    )
    service = EmailService.from_settings(settings)

    assert service.is_configured is True
    assert service.from_email == "no-reply@example.com"
    assert service.reset_ttl_minutes == 60
    assert service.retry_attempts == settings.email_retry_attempts


class TestDelivery:
    def test_transient_failures_are_retried(self, service, monkeypatch):
        deliver = RecordingDeliver([OSError("reset by peer"), smtplib.SMTPServerDisconnected("bye")])
        monkeypatch.setattr(service, "_deliver", deliver)

        assert service.send_password_reset_email("user@example.com", "tok") is True
        assert len(deliver.calls) == 3

    def test_gives_up_after_retry_budget(self, service, monkeypatch):
        deliver = RecordingDeliver([OSError("down")] * 3)
        monkeypatch.setattr(service, "_deliver", deliver)

        assert service.send_password_reset_email("user@example.com", "tok") is False
        assert len(deliver.calls) == 3

    def test_authentication_failure_is_not_retried(self, service, monkeypatch):
        deliver = RecordingDeliver([smtplib.SMTPAuthenticationError(535, b"bad credentials")])
        monkeypatch.setattr(service, "_deliver", deliver)

        assert service.send_verification_email("user@example.com", "tok") is False
        assert len(deliver.calls) == 1

    def test_refused_recipient_is_not_retried(self, service, monkeypatch):
        refused = smtplib.SMTPRecipientsRefused({"user@example.com": (550, b"no such user")})
        deliver = RecordingDeliver([refused])
        monkeypatch.setattr(service, "_deliver", deliver)

        assert service.send_verification_email("user@example.com", "tok") is False
        assert len(deliver.calls) == 1


class TestRendering:
    def test_verification_link_carries_raw_token(self, service, monkeypatch):
        deliver = RecordingDeliver()
        monkeypatch.setattr(service, "_deliver", deliver)

        service.send_verification_email("user@example.com", "a1b2c3")
        to_email, subject, html_body, text_body = deliver.calls[0]

        assert to_email == "user@example.com"
        assert subject == "Verify your Genesis Auth email"
        assert "https://app.example.com/verify-email?token=a1b2c3" in text_body
        assert 'href="https://app.example.com/verify-email?token=a1b2c3"' in html_body
        assert "24 hours" in text_body

    def test_reset_link_and_expiry(self, service, monkeypatch):
        deliver = RecordingDeliver()
        monkeypatch.setattr(service, "_deliver", deliver)

        service.send_password_reset_email("user@example.com", "r3s3t")
        _, _, html_body, text_body = deliver.calls[0]

        assert "https://app.example.com/reset-password?token=r3s3t" in text_body
        assert "60 minutes" in text_body

    def test_password_changed_notice_has_no_link(self, service, monkeypatch):
        deliver = RecordingDeliver()
        monkeypatch.setattr(service, "_deliver", deliver)

        assert service.send_password_changed_email("user@example.com") is True
        _, subject, html_body, _ = deliver.calls[0]
        assert subject == "Your Genesis Auth password was changed"
        assert "href=" not in html_body

    def test_from_name_is_escaped(self, monkeypatch):
        service = EmailService(
            smtp_host="smtp.example.com",
            from_email="no-reply@example.com",
            from_name="<b>Evil</b>",
        )
        deliver = RecordingDeliver()
        monkeypatch.setattr(service, "_deliver", deliver)

        service.send_password_changed_email("user@example.com")
        html_body = deliver.calls[0][2]
        assert "<b>Evil</b>" not in html_body
        assert "&lt;b&gt;Evil&lt;/b&gt;" in html_body
