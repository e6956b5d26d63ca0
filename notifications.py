"""
Outbound email.

``HttpEmailNotifier`` posts messages to a transactional email HTTP API with
httpx. ``LogNotifier`` is used when no API is configured and only logs what
would have been sent. Both return False instead of raising when delivery
fails; callers decide whether that matters.
"""

from html import escape
from typing import Optional

import httpx
import structlog

import config
from schemas import StatusChangeEvent

log = structlog.get_logger(__name__)

STATUS_LABELS = {"pending": "Pending", "in-progress": "In Progress", "resolved": "Resolved"}


def otp_message(otp: str, name: Optional[str]) -> dict:
    greeting = f"Hello {name}," if name else "Hello,"
    minutes = config.OTP_EXPIRE_MINUTES
    text = f"{greeting}\n\nYour Fix My Area verification code is {otp}. It expires in {minutes} minutes."
    html = (
        f"<p>{escape(greeting)}</p><p>Your Fix My Area verification code is <strong>{otp}</strong>.</p>"
        f"<p>It expires in {minutes} minutes.</p>"
    )
    return {"subject": "Your Fix My Area Verification Code", "text": text, "html": html}


def welcome_message(name: str) -> dict:
    text = (
        f"Welcome to Fix My Area, {name}!\n\n"
        f"You can now report issues in your area and vote on the ones that matter to you.\n\n{config.FRONTEND_URL}"
    )
    html = (
        f"<p>Welcome to Fix My Area, {escape(name)}!</p>"
        "<p>You can now report issues in your area and vote on the ones that matter to you.</p>"
        f'<p><a href="{config.FRONTEND_URL}">Open Fix My Area</a></p>'
    )
    return {"subject": "Welcome to Fix My Area", "text": text, "html": html}


def status_change_message(event: StatusChangeEvent) -> dict:
    old = STATUS_LABELS.get(event.oldStatus, event.oldStatus)
    new = STATUS_LABELS.get(event.newStatus, event.newStatus)
    link = f"{config.FRONTEND_URL}/issues/{event.issueId}"
    text = (
        f"Hello {event.recipientName},\n\n"
        f'The status of your issue "{event.issueTitle}" changed from {old} to {new}.\n\n{link}'
    )
    html = (
        f"<p>Hello {escape(event.recipientName)},</p>"
        f"<p>The status of your issue <strong>{escape(event.issueTitle)}</strong> changed from {old} to {new}.</p>"
        f'<p><a href="{link}">View issue</a></p>'
    )
    return {"subject": f"Issue update: {event.issueTitle}", "text": text, "html": html}


class HttpEmailNotifier:
    def __init__(self, api_url: str, api_key: str = "", sender: str = config.EMAIL_FROM,
                 timeout: float = config.EMAIL_TIMEOUT_SECONDS, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.api_url = api_url
        self.api_key = api_key
        self.sender = sender
        self.timeout = timeout
        self.transport = transport

    async def send(self, to: str, message: dict) -> bool:
        payload = {"from": self.sender, "to": to, **message}
        headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                r = await client.post(self.api_url, json=payload, headers=headers)
                r.raise_for_status()
        except httpx.HTTPError as exc:
            log.error("email_delivery_failed", to=to, subject=message["subject"], error=str(exc))
            return False
        log.info("email_sent", to=to, subject=message["subject"])
        return True

    async def send_otp(self, email: str, otp: str, name: Optional[str] = None) -> bool:
        return await self.send(email, otp_message(otp, name))

    async def send_welcome(self, email: str, name: str) -> bool:
        return await self.send(email, welcome_message(name))

    async def send_status_change(self, event: StatusChangeEvent) -> bool:
        return await self.send(event.recipientEmail, status_change_message(event))


class LogNotifier:
    def __init__(self, reveal_otp: bool = config.DEBUG):
        self.reveal_otp = reveal_otp

    async def send_otp(self, email: str, otp: str, name: Optional[str] = None) -> bool:
        log.info("otp_email_skipped", to=email, otp=otp if self.reveal_otp else "******")
        return True

    async def send_welcome(self, email: str, name: str) -> bool:
        log.info("welcome_email_skipped", to=email)
        return True

    async def send_status_change(self, event: StatusChangeEvent) -> bool:
        log.info("status_email_skipped", **event.model_dump())
        return True


def build_notifier():
    if config.EMAIL_API_URL:
        return HttpEmailNotifier(config.EMAIL_API_URL, config.EMAIL_API_KEY)
    return LogNotifier()
