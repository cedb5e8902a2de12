"""Outbound notification channels: email via the Gmail API, WhatsApp via Twilio.

Both channels raise on delivery failure; the dispatcher isolates them.

Environment variables (see config.py):
  GMAIL_CLIENT_ID, GMAIL_CLIENT_SECRET, GMAIL_REFRESH_TOKEN
  TWILIO_ACCOUNT_SID, TWILIO_AUTH_TOKEN, TWILIO_WHATSAPP_NUMBER
"""

import base64
import logging
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from pathlib import Path
from typing import Any, Callable, Dict, Optional

import httpx
from jinja2 import Environment, FileSystemLoader

from application import EmailPayload, WhatsAppPayload
from config import EmailConfig, TwilioConfig, VersionedSettings

logger = logging.getLogger(__name__)

TEMPLATE_DIR = Path(__file__).parent / "templates"

OAUTH_TOKEN_URL = "https://oauth2.googleapis.com/token"
GMAIL_SEND_URL = "https://gmail.googleapis.com/gmail/v1/users/me/messages/send"
TWILIO_API = "https://api.twilio.com/2010-04-01"


# --- WhatsApp message templates, keyed by notification kind ---


def _payment_reminder(v: Dict[str, Any]) -> str:
    return (
        f"💰 Reminder: {v['stage_name']} of your project is ready for payment "
        f"(${v['amount']}). Continue here: {v['link']}"
    )


def _payment_confirmed(v: Dict[str, Any]) -> str:
    return (
        f"✅ Hi {v['user_name']}, we received your payment of ${v['amount']} "
        f"for {v['stage_name']} of '{v['project_name']}'. Details: {v['link']}"
    )


def _budget_negotiation(v: Dict[str, Any]) -> str:
    kind = "counter-offer" if v.get("is_counter") else "new proposal"
    return (
        f"💵 Hi {v['user_name']}, {kind} of ${v['amount']} for "
        f"'{v['project_name']}'. View: {v['link']}"
    )


def _project_update(v: Dict[str, Any]) -> str:
    return (
        f"📋 Hi {v['user_name']}, there is an update on your project "
        f"'{v['project_name']}'. Check your dashboard: {v['link']}"
    )


WHATSAPP_TEMPLATES: Dict[str, Callable[[Dict[str, Any]], str]] = {
    "payment_reminder": _payment_reminder,
    "payment_confirmed": _payment_confirmed,
    "budget_negotiation": _budget_negotiation,
    "project_update": _project_update,
}


def render_whatsapp(payload: WhatsAppPayload, default_link: str) -> str:
    """Build the message body; a missing or empty link points at the dashboard."""
    template = WHATSAPP_TEMPLATES.get(payload.template)
    if template is None:
        raise ValueError(f"Unknown WhatsApp template '{payload.template}'")
    variables = dict(payload.variables)
    if not variables.get("link"):
        variables["link"] = default_link
    return template(variables)


# --- Email ---


_jinja = Environment(loader=FileSystemLoader(str(TEMPLATE_DIR)), autoescape=True)


def render_email(template: str, context: Dict[str, Any]) -> Optional[str]:
    """Render an HTML body, or None when the template is unusable."""
    try:
        return _jinja.get_template(template).render(**context)
    except Exception as e:
        logger.warning(f"Template {template} render failed, using plain: {e}")
        return None


class EmailChannel:
    """Gmail API sender using the OAuth refresh token flow."""

    channel_name = "email"

    def __init__(
        self,
        config: EmailConfig,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.config = config
        self._transport = transport
        self._access_token: Optional[str] = None

    @property
    def is_enabled(self) -> bool:
        return (
            self.config.enabled
            and bool(self.config.client_id)
            and bool(self.config.refresh_token)
        )

    async def _get_access_token(self, client: httpx.AsyncClient) -> str:
        if self._access_token:
            return self._access_token
        resp = await client.post(
            OAUTH_TOKEN_URL,
            data={
                "client_id": self.config.client_id,
                "client_secret": self.config.client_secret,
                "refresh_token": self.config.refresh_token,
                "grant_type": "refresh_token",
            },
        )
        resp.raise_for_status()
        self._access_token = resp.json()["access_token"]
        return self._access_token

    def build_message(self, payload: EmailPayload, plain_text: str) -> str:
        """MIME message with a plain-text part and, if it renders, an HTML part."""
        msg = MIMEMultipart("alternative")
        msg["Subject"] = payload.subject
        msg["From"] = self.config.sender
        msg["To"] = payload.to
        msg.attach(MIMEText(plain_text, "plain", "utf-8"))
        html_content = render_email(payload.template, payload.context)
        if html_content:
            msg.attach(MIMEText(html_content, "html", "utf-8"))
        return base64.urlsafe_b64encode(msg.as_bytes()).decode()

    async def send(self, payload: EmailPayload, plain_text: str) -> bool:
        if not self.is_enabled:
            logger.debug("Email channel disabled, skipping")
            return False
        raw = self.build_message(payload, plain_text)
        async with httpx.AsyncClient(transport=self._transport) as client:
            token = await self._get_access_token(client)
            resp = await client.post(
                GMAIL_SEND_URL,
                headers={"Authorization": f"Bearer {token}"},
                json={"raw": raw},
            )
            if resp.status_code == 401:
                self._access_token = None
            resp.raise_for_status()
        logger.info(f"Email sent to {payload.to}")
        return True


# --- WhatsApp ---


class WhatsAppChannel:
    """Twilio WhatsApp sender; credentials are re-read on every send."""

    channel_name = "whatsapp"

    def __init__(
        self,
        settings: VersionedSettings[TwilioConfig],
        default_link: str,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.settings = settings
        self.default_link = default_link
        self._transport = transport

    @property
    def is_enabled(self) -> bool:
        creds = self.settings.current
        return (
            creds.enabled
            and bool(creds.account_sid)
            and bool(creds.auth_token)
            and bool(creds.whatsapp_number)
        )

    async def send(self, payload: WhatsAppPayload) -> bool:
        if not payload.to:
            return False
        if not self.is_enabled:
            logger.debug("WhatsApp channel disabled, skipping")
            return False
        creds = self.settings.current
        body = render_whatsapp(payload, self.default_link)
        url = f"{TWILIO_API}/Accounts/{creds.account_sid}/Messages.json"
        async with httpx.AsyncClient(transport=self._transport) as client:
            resp = await client.post(
                url,
                auth=(creds.account_sid, creds.auth_token),
                data={
                    "From": f"whatsapp:{creds.whatsapp_number}",
                    "To": f"whatsapp:{payload.to}",
                    "Body": body,
                },
            )
            resp.raise_for_status()
            sid = resp.json().get("sid", "unknown")
        logger.info(f"WhatsApp sent to {payload.to}, SID: {sid}")
        return True
