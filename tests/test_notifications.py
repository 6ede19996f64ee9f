from datetime import datetime, timezone

from contractdesk.services import notifications
from contractdesk.services.notifications import LinkReadyEvent, dispatch_link_ready, send_email


def _event(**overrides):
    values = dict(
        link_id=1,
        agreement_id=2,
        client_id=3,
        client_name="Carol Client",
        client_email="carol@example.com",
        token="abc123",
        expires_at=datetime(2025, 3, 5, 9, 0, tzinfo=timezone.utc),
        project_name="Website Revamp",
        provider_name="Priya Provider",
        owner_email="provider@example.com",
        owner_mobile="+91 90000 00000",
    )
    values.update(overrides)
    return LinkReadyEvent(**values)


def test_send_email_without_mailgun_reports_failure():
    assert send_email("someone@example.com", "Subject", "<p>Hi</p>") is False


def test_signing_link_email_content(monkeypatch):
    captured = {}

    def fake_send(to_email, subject, html_content, text_content=None, attachments=None):
        captured.update(to=to_email, subject=subject, html=html_content, text=text_content)
        return True

    monkeypatch.setattr(notifications, "send_email", fake_send)
    assert notifications.send_signing_link(_event()) is True
    assert captured["to"] == "carol@example.com"
    assert "Website Revamp" in captured["subject"]
    assert "/agreement/sign/abc123" in captured["text"]
    assert "March 5, 2025" in captured["text"]
    assert "provider@example.com" in captured["html"]


def test_dispatch_turns_failures_into_warnings(monkeypatch):
    monkeypatch.setattr(notifications, "send_signing_link", lambda event: event.token == "ok")
    delivered, warnings = dispatch_link_ready([
        _event(token="ok"),
        _event(token="bad", client_email="bad@example.com"),
        _event(token="none", client_email=None),
    ])
    assert delivered == ["ok"]
    assert len(warnings) == 2
