from datetime import timedelta

import pytest

from coopapp.service import notifications
from coopapp.service.notifications import EmailNotifier
from coopapp.storage.models import Organization, User, new_id, utcnow


class FakeSMTP:
    sent = []

    def __init__(self, host, port, **kwargs):
        self.host = host
        self.port = port
        self.logged_in = None

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def starttls(self, context=None):
        pass

    def login(self, user, password):
        self.logged_in = user

    def sendmail(self, sender, recipient, message):
        FakeSMTP.sent.append((sender, recipient, message))


@pytest.fixture
def fake_smtp(monkeypatch):
    FakeSMTP.sent = []
    monkeypatch.setattr(notifications.smtplib, "SMTP", FakeSMTP)
    return FakeSMTP


def _user(**fields):
    fields.setdefault("email", "ada@acme.test")
    return User(id=new_id(), tenant_id="t1", first_name="Ada", **fields)


def _org():
    return Organization(id=new_id(), name="acme", label="Acme Cooperative")


def test_unconfigured_notifier_logs_instead_of_sending(fake_smtp):
    notifier = EmailNotifier()
    assert notifier.send_two_factor_code(_user(), _org(), "123456", utcnow() + timedelta(minutes=5))
    assert fake_smtp.sent == []


def test_recipient_without_email_is_skipped(fake_smtp):
    notifier = EmailNotifier(smtp_host="smtp.test", from_email="no-reply@coop.test")
    user = _user(email=None, user_name="ada")
    assert notifier.send_registration_received(user, _org()) is False
    assert fake_smtp.sent == []


def test_code_email_carries_code_and_organization(fake_smtp):
    notifier = EmailNotifier(
        smtp_host="smtp.test", smtp_user="mailer", smtp_password="pw", from_email="no-reply@coop.test"
    )
    assert notifier.send_two_factor_code(_user(), _org(), "048213", utcnow() + timedelta(minutes=5))
    sender, recipient, message = fake_smtp.sent[0]
    assert sender == "no-reply@coop.test"
    assert recipient == "ada@acme.test"
    assert "048213" in message
    assert "Acme Cooperative" in message


def test_verification_link_is_in_body(fake_smtp):
    notifier = EmailNotifier(smtp_host="smtp.test", from_email="no-reply@coop.test")
    link = "http://localhost:5173/organizations/acme/verify-account?token=abc"
    assert notifier.send_account_verification(_user(), _org(), link)
    assert link in fake_smtp.sent[0][2]
