"""Delivery channels: email (SendGrid), offer copywriting (Claude),
spreadsheet log (Google Sheets) and CRM notification (Google Pub/Sub)."""

import asyncio
import base64
import json
import logging
from datetime import datetime, timezone
from typing import Optional

import anthropic
import httpx
from google.oauth2 import service_account
from googleapiclient.discovery import build

from .analysis import parse_json

logger = logging.getLogger(__name__)

_SENDGRID_URL = "https://api.sendgrid.com/v3/mail/send"

FREE_REPORT_SUBJECT = "Your Free Art Analysis Report from Appraisily"


# ═══════════════════════════════════════════════════════════════════════════
# EMAIL (SendGrid v3 REST)
# ═══════════════════════════════════════════════════════════════════════════

def free_report_email(report_html: str) -> str:
    return (
        '<div style="font-family: Arial, sans-serif; max-width: 640px; margin: 0 auto;">'
        '<h1 style="font-size: 22px;">Your Free Art Analysis Report</h1>'
        f"{report_html}"
        '<p style="font-size: 13px; color: #6b7280;">This screening is automated and is not a '
        "formal appraisal.</p></div>"
    )


class SendGridMailer:
    def __init__(self, api_key: str, from_email: str, sender_name: str, client: httpx.AsyncClient):
        self.api_key = api_key
        self.from_email = from_email
        self.sender_name = sender_name
        self.client = client

    async def _send(self, payload: dict) -> None:
        if not self.api_key or not self.from_email:
            raise RuntimeError("SendGrid API key and from email are required")
        r = await self.client.post(
            _SENDGRID_URL,
            headers={"Authorization": f"Bearer {self.api_key}"},
            json=payload,
            timeout=30,
        )
        if r.status_code // 100 != 2:
            raise RuntimeError(f"SendGrid returned HTTP {r.status_code}: {r.text[:200]}")

    async def send_free_report(self, to_email: str, report_html: str) -> dict:
        await self._send({
            "personalizations": [{"to": [{"email": to_email}]}],
            "from": {"email": self.from_email},
            "subject": FREE_REPORT_SUBJECT,
            "content": [{"type": "text/html", "value": free_report_email(report_html)}],
        })
        logger.info("Free report sent to %s", to_email)
        return {"recipient": to_email}

    async def schedule_personal_offer(self, to_email: str, subject: str, html: str, send_at: int) -> dict:
        """Hand the offer to SendGrid with ``send_at`` (unix seconds) so it goes out later."""
        await self._send({
            "personalizations": [{"to": [{"email": to_email}]}],
            "from": {"email": self.from_email, "name": self.sender_name},
            "subject": subject,
            "content": [{"type": "text/html", "value": html}],
            "send_at": send_at,
        })
        logger.info("Personal offer for %s scheduled at %s", to_email,
                    datetime.fromtimestamp(send_at, tz=timezone.utc).isoformat())
        return {"recipient": to_email, "sendAt": send_at, "subject": subject}


# ═══════════════════════════════════════════════════════════════════════════
# PERSONAL OFFER COPY (Claude)
# ═══════════════════════════════════════════════════════════════════════════

def build_offer_prompt(detailed: Optional[dict]) -> str:
    """Prompt for the follow-up offer, filled from whatever detailed fields exist."""
    detailed = detailed or {}

    def _field(section: str, key: str) -> str:
        return (detailed.get(section) or {}).get(key) or "Not available"

    item_type = (detailed.get("maker_analysis") or {}).get("creator_name") or "artwork"
    return f"""\
You are Andrés Gómez, Lead Art Appraiser at Appraisily. You're writing a follow-up email to a potential client who used our free screening tool. Invite them to purchase a professional appraisal in a warm, direct, and personal manner, without sounding formal or automated.

CONTEXT:
- Item Type: {item_type}
- Maker Analysis: {_field("maker_analysis", "reasoning")}
- Origin Analysis: {_field("origin_analysis", "reasoning")}
- Age Analysis: {_field("age_analysis", "reasoning")}
- Visual Analysis: {_field("visual_search", "notes")}
- Notable Features: {_field("marks_recognition", "marks_identified")}
- Preliminary Value Range: Requires professional appraisal
- Special Offer: 20% discount on our base appraisal fee, available for 48 hours

OUTPUT REQUIREMENTS:
1. Valid JSON with exactly two keys: "subject" and "content".
2. "content" is an HTML string (basic tags like <p> or <br>).
3. Around 200-300 words, friendly and natural.
4. No definitive value claims or guarantees, no placeholders.
5. Mention the limited-time 20% discount naturally.

{{"subject": "...", "content": "..."}}"""


FALLBACK_OFFER = {
    "subject": "A closer look at your piece: 20% off a professional appraisal",
    "content": (
        "<p>Hello,</p><p>Thank you for using our free screening tool. Every piece has a story, "
        "and a professional appraisal is the best way to learn yours: maker, period, origin and "
        "a defensible market value.</p><p>For the next 48 hours you can book a full appraisal "
        "with 20% off our base fee.</p><p>Warm regards,<br>Andrés Gómez<br>Lead Art Appraiser, "
        "Appraisily</p>"
    ),
}


class OfferWriter:
    def __init__(self, claude: anthropic.AsyncAnthropic, model: str):
        self.claude = claude
        self.model = model

    async def write(self, detailed: Optional[dict]) -> dict:
        resp = await self.claude.messages.create(
            model=self.model,
            max_tokens=1500,
            messages=[{"role": "user", "content": build_offer_prompt(detailed)}],
        )
        content = parse_json(resp.content[0].text)
        if content.get("parse_error") or not content.get("subject") or not content.get("content"):
            raise ValueError("offer writer returned an invalid email structure")
        return {"subject": content["subject"], "content": content["content"]}


# ═══════════════════════════════════════════════════════════════════════════
# GOOGLE SHEETS + PUB/SUB
# ═══════════════════════════════════════════════════════════════════════════

_SCOPES = [
    "https://www.googleapis.com/auth/spreadsheets",
    "https://www.googleapis.com/auth/pubsub",
]


def load_google_credentials(path: str):
    if not path:
        raise RuntimeError("google_credentials_file is not configured")
    return service_account.Credentials.from_service_account_file(path, scopes=_SCOPES)


class SheetsLog:
    """Per-session row in the submissions sheet: column B holds the session id,
    R the email, S:T the processing status and time."""

    def __init__(self, credentials_file: str, sheets_id: str):
        self.credentials_file = credentials_file
        self.sheets_id = sheets_id
        self._service = None

    def _sheets(self):
        if self._service is None:
            creds = load_google_credentials(self.credentials_file)
            self._service = build("sheets", "v4", credentials=creds, cache_discovery=False)
        return self._service.spreadsheets()

    def _find_row(self, session_id: str) -> int:
        resp = self._sheets().values().get(spreadsheetId=self.sheets_id, range="Sheet1!B:B").execute()
        for i, row in enumerate(resp.get("values", [])):
            if row and row[0] == session_id:
                return i
        return -1

    def _update(self, range_: str, values: list[list]) -> None:
        self._sheets().values().update(
            spreadsheetId=self.sheets_id,
            range=range_,
            valueInputOption="USER_ENTERED",
            body={"values": values},
        ).execute()

    def _record_submission(self, session_id: str, email: str, status: str) -> bool:
        row = self._find_row(session_id)
        if row == -1:
            logger.warning("Session %s not found in spreadsheet", session_id)
            return False
        self._update(f"Sheet1!R{row + 1}", [[email]])
        self._update(f"Sheet1!S{row + 1}:T{row + 1}",
                     [[status, datetime.now(timezone.utc).isoformat()]])
        return True

    async def record_submission(self, session_id: str, email: str, status: str) -> bool:
        return await asyncio.to_thread(self._record_submission, session_id, email, status)


class CrmNotifier:
    def __init__(self, credentials_file: str, project_id: str, topic: str):
        self.credentials_file = credentials_file
        self.topic_path = f"projects/{project_id}/topics/{topic}"
        self._service = None

    def _publish(self, message: dict) -> str:
        if self._service is None:
            creds = load_google_credentials(self.credentials_file)
            self._service = build("pubsub", "v1", credentials=creds, cache_discovery=False)
        data = base64.b64encode(json.dumps(message).encode("utf-8")).decode("ascii")
        resp = self._service.projects().topics().publish(
            topic=self.topic_path, body={"messages": [{"data": data}]}
        ).execute()
        return (resp.get("messageIds") or [""])[0]

    async def publish(self, message: dict) -> str:
        message_id = await asyncio.to_thread(self._publish, message)
        logger.info("Message %s published to %s", message_id, self.topic_path)
        return message_id


def crm_message(email: str, session_id: str, metadata: dict, artifacts: dict, timestamp: int) -> dict:
    return {
        "crmProcess": "screenerNotification",
        "customer": {"email": email, "name": None},
        "origin": "screener",
        "timestamp": timestamp,
        "sessionId": session_id,
        "metadata": {
            "originalName": metadata.get("originalName"),
            "imageUrl": metadata.get("imageUrl"),
            "timestamp": timestamp,
            "analyzed": "analysis" in artifacts,
            "originAnalyzed": "origin" in artifacts,
            "size": metadata.get("size"),
            "mimeType": metadata.get("mimeType"),
        },
    }
