import resend

import notifications
from schemas import WebsiteInquiry

INQUIRY = WebsiteInquiry(
    name="Carla <script>",
    email="carla@example.com",
    company_name="Events Co",
    subject="Catering",
    message="Party of 40",
)


def test_inquiry_email_content():
    email = notifications.build_inquiry_email(INQUIRY, to_email="owner@example.com", from_email="noreply@example.com")
    assert email["to"] == ["owner@example.com"]
    assert email["reply_to"] == "carla@example.com"
    assert email["subject"] == "Website Inquiry: Catering"
    assert "- Company: Events Co" in email["text"]
    assert "&lt;script&gt;" in email["html"]


def test_missing_api_key_skips_sending(monkeypatch):
    monkeypatch.setattr(notifications, "RESEND_API_KEY", None)
    assert notifications.send_inquiry_email(INQUIRY) is False


def test_send_failures_are_logged_not_raised(monkeypatch, caplog):
    def send(params):
        raise RuntimeError("resend is down")

    monkeypatch.setattr(resend.Emails, "send", send)
    monkeypatch.setattr(notifications, "INQUIRY_TO_EMAIL", "owner@example.com")
    assert notifications.send_inquiry_email(INQUIRY, api_key="re_test") is False
    assert "resend is down" in caplog.text


def test_send_uses_resend(monkeypatch):
    sent = []

    def send(params):
        sent.append(params)
        return {"id": "email_1"}

    monkeypatch.setattr(resend.Emails, "send", send)
    monkeypatch.setattr(notifications, "INQUIRY_TO_EMAIL", "owner@example.com")
    assert notifications.send_inquiry_email(INQUIRY, api_key="re_test") is True
    assert sent[0]["to"] == ["owner@example.com"]
    assert sent[0]["subject"] == "Website Inquiry: Catering"
