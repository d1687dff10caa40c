import logging
from dataclasses import dataclass

from sendgrid import SendGridAPIClient
from sendgrid.helpers.mail import Mail
from starlette.concurrency import run_in_threadpool

from .settings import Settings

logger = logging.getLogger(__name__)


class MailerNotConfigured(RuntimeError):
    pass


@dataclass
class ContactMessage:
    name: str
    phone: str
    message: str
    vehicle: str = ""

    @property
    def subject(self) -> str:
        return f"New Lead: {self.name} - {self.vehicle}" if self.vehicle else f"New Lead: {self.name}"

    @property
    def text(self) -> str:
        return "\n".join([
            f"Name: {self.name}",
            f"Phone: {self.phone}",
            f"Vehicle: {self.vehicle}",
            "",
            "Message:",
            self.message,
        ])


class SendGridMailer:
    def __init__(self, api_key: str | None, to: str | None, sender: str | None):
        self.api_key = api_key
        self.to = to
        self.sender = sender

    @classmethod
    def from_settings(cls, settings: Settings) -> "SendGridMailer":
        return cls(settings.SENDGRID_API_KEY, settings.CONTACT_TO, settings.FROM_EMAIL)

    @property
    def configured(self) -> bool:
        return bool(self.api_key and self.to and self.sender)

    def build(self, msg: ContactMessage) -> Mail:
        return Mail(from_email=self.sender, to_emails=self.to, subject=msg.subject, plain_text_content=msg.text)

    async def send(self, msg: ContactMessage) -> int:
        if not self.configured:
            raise MailerNotConfigured("Missing SENDGRID_API_KEY / CONTACT_TO / FROM_EMAIL")
        client = SendGridAPIClient(self.api_key)
        try:
            resp = await run_in_threadpool(client.send, self.build(msg))
        except Exception as exc:
            logger.error("SendGrid send FAILED: %s", exc)
            raise
        logger.info("SendGrid sent OK: status=%s", resp.status_code)
        return resp.status_code
