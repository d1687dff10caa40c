import asyncio

import pytest

import bsauto.mailer
from bsauto.mailer import ContactMessage, MailerNotConfigured, SendGridMailer


class FakeResponse:
    status_code = 202


class FakeSendGrid:
    instances = []

    def __init__(self, api_key):
        self.api_key = api_key
        self.sent = []
        FakeSendGrid.instances.append(self)

    def send(self, mail):
        self.sent.append(mail)
        return FakeResponse()


@pytest.fixture
def fake_sendgrid(monkeypatch):
    FakeSendGrid.instances = []
    monkeypatch.setattr(bsauto.mailer, "SendGridAPIClient", FakeSendGrid)
    return FakeSendGrid


def test_send_builds_plain_text_mail(fake_sendgrid):
    mailer = SendGridMailer("SG.key", "owner@bsauto.example", "noreply@bsauto.example")
    msg = ContactMessage(name="Dana", phone="555-0100", message="Still available?", vehicle="2019 Honda Civic")

    assert asyncio.run(mailer.send(msg)) == 202

    client = fake_sendgrid.instances[0]
    assert client.api_key == "SG.key"
    mail = client.sent[0].get()
    assert mail["subject"] == "New Lead: Dana - 2019 Honda Civic"
    assert mail["from"]["email"] == "noreply@bsauto.example"
    assert mail["personalizations"][0]["to"][0]["email"] == "owner@bsauto.example"
    body = mail["content"][0]
    assert body["type"] == "text/plain"
    assert "Phone: 555-0100" in body["value"]
    assert body["value"].endswith("Still available?")


def test_subject_without_vehicle():
    assert ContactMessage(name="Dana", phone="1", message="hi").subject == "New Lead: Dana"


def test_unconfigured_mailer_refuses(fake_sendgrid):
    mailer = SendGridMailer(None, "owner@bsauto.example", "noreply@bsauto.example")
    assert not mailer.configured
    with pytest.raises(MailerNotConfigured):
        asyncio.run(mailer.send(ContactMessage(name="a", phone="1", message="m")))
    assert fake_sendgrid.instances == []


def test_send_errors_propagate(monkeypatch):
    class Broken(FakeSendGrid):
        def send(self, mail):
            raise RuntimeError("HTTP Error 401: Unauthorized")

    monkeypatch.setattr(bsauto.mailer, "SendGridAPIClient", Broken)
    mailer = SendGridMailer("SG.bad", "owner@bsauto.example", "noreply@bsauto.example")
    with pytest.raises(RuntimeError):
        asyncio.run(mailer.send(ContactMessage(name="a", phone="1", message="m")))
