from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime
from typing import Any

import httpx

EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
SENDER_RE = re.compile(r"^(.*)<(.+@.+)>$")
DEFAULT_SENDER_NAME = "Dedicart"
EXPIRATION_SUBJECT = "Sua dedicatória expirou - Renove agora"

TEMPLATE_LABELS = {
    "nossa_historia": "Nossa História",
}


class NotificationError(Exception):
    def __init__(self, message: str, *, status_code: int | None = None, retryable: bool = False) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.retryable = retryable


class NotificationConfigError(NotificationError):
    """Raised when the notifier is missing configuration needed to send."""


@dataclass(frozen=True, slots=True)
class ExpirationNotice:
    to: str
    intention_id: str
    template_id: str
    plan: str
    expires_at: datetime


def template_label(template_id: str) -> str:
    return TEMPLATE_LABELS.get(template_id, template_id)


def parse_sender(raw: str) -> dict[str, str]:
    match = SENDER_RE.match(raw.strip())
    if match:
        return {"name": match.group(1).strip().strip('"'), "email": match.group(2).strip()}
    return {"name": DEFAULT_SENDER_NAME, "email": raw.strip()}


def is_retryable_status(status_code: int) -> bool:
    return status_code == 429 or status_code >= 500


def render_expiration_html(notice: ExpirationNotice, *, renew_url: str) -> str:
    expiration_date = notice.expires_at.strftime("%d/%m/%Y")
    label = template_label(notice.template_id)
    return (
        "<!DOCTYPE html><html lang=\"pt-BR\"><body>"
        "<h1>Sua dedicatória expirou!</h1>"
        f"<p>Sua dedicatória no modelo <strong>{label}</strong> expirou em <strong>{expiration_date}</strong>.</p>"
        f"<p><a href=\"{renew_url}\">Renovar minha dedicatória</a></p>"
        "<p>Este é um e-mail automático. Por favor não responda diretamente.</p>"
        "</body></html>"
    )


class BrevoNotifier:
    """Transactional e-mail dispatch through the Brevo SMTP API.

    One call to ``send`` is one HTTP attempt; retries belong to
    ``reaper.services.retry.send_with_retry``.
    """

    def __init__(
        self,
        *,
        api_key: str,
        api_url: str,
        email_from: str | None,
        email_reply_to: str | None = None,
        site_dns: str = "dedicart.com.br",
        client: httpx.AsyncClient | None = None,
        timeout_seconds: float = 10.0,
    ) -> None:
        self.api_key = api_key
        self.api_url = api_url
        self.email_from = email_from
        self.email_reply_to = email_reply_to
        self.site_dns = site_dns
        self._client = client or httpx.AsyncClient(timeout=timeout_seconds)

    async def close(self) -> None:
        await self._client.aclose()

    def build_payload(self, notice: ExpirationNotice) -> dict[str, Any]:
        if not self.email_from:
            raise NotificationConfigError("REAPER_EMAIL_FROM is not configured")
        if not EMAIL_RE.match(notice.to or ""):
            raise NotificationError(f"invalid recipient address: {notice.to!r}")

        payload: dict[str, Any] = {
            "sender": parse_sender(self.email_from),
            "to": [{"email": notice.to}],
            "subject": EXPIRATION_SUBJECT,
            "htmlContent": render_expiration_html(notice, renew_url=f"https://{self.site_dns}/my-dedications"),
        }
        if self.email_reply_to:
            payload["replyTo"] = {"email": self.email_reply_to}
        return payload

    async def send(self, notice: ExpirationNotice) -> dict[str, Any]:
        payload = self.build_payload(notice)
        try:
            response = await self._client.post(
                self.api_url,
                json=payload,
                headers={"api-key": self.api_key, "accept": "application/json"},
            )
        except httpx.TransportError as exc:
            raise NotificationError(f"brevo transport error: {exc}", retryable=True) from exc

        if response.is_success:
            try:
                body = response.json()
            except ValueError:
                return {}
            return body if isinstance(body, dict) else {}

        raise NotificationError(
            f"brevo error {response.status_code}: {response.text}",
            status_code=response.status_code,
            retryable=is_retryable_status(response.status_code),
        )
