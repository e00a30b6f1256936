"""
Communication normalizer.

Maps raw Microsoft Graph payloads (mail message, chat message, meeting
transcript) onto the canonical Communication model. Sources hand over the
Graph JSON untouched; all shape knowledge lives here.
"""
import logging
import re
from typing import Any, Callable

from bs4 import BeautifulSoup
from pydantic import ValidationError

from cosell.core.errors import MalformedInput
from cosell.models.schemas import Communication, CommunicationType

logger = logging.getLogger(__name__)

PREVIEW_LENGTH = 150

_VTT_TIMING = re.compile(r"^\d{2}:\d{2}(:\d{2})?\.\d{3} --> ")
_VTT_VOICE = re.compile(r"<v ([^>]+)>(.*?)(</v>)?$")


def html_to_text(body: dict | None) -> str:
    """Return plain text for a Graph itemBody ({contentType, content})."""
    if not body:
        return ""
    content = body.get("content") or ""
    if (body.get("contentType") or "").lower() == "html":
        return BeautifulSoup(content, "html.parser").get_text(" ", strip=True)
    return content.strip()


def vtt_to_text(vtt: str) -> tuple[str, list[str]]:
    """Flatten a WebVTT transcript into 'Speaker: line' text plus the speaker list."""
    lines = []
    speakers: list[str] = []
    for raw_line in vtt.splitlines():
        line = raw_line.strip()
        if not line or line == "WEBVTT" or _VTT_TIMING.match(line) or line.isdigit():
            continue
        voice = _VTT_VOICE.match(line)
        if voice:
            speaker, text = voice.group(1).strip(), voice.group(2).strip()
            if speaker not in speakers:
                speakers.append(speaker)
            lines.append(f"{speaker}: {text}")
        else:
            lines.append(line)
    return "\n".join(lines), speakers


def _require(raw: dict, key: str, kind: str) -> Any:
    value = raw.get(key)
    if not value:
        raise MalformedInput(f"{kind} record missing '{key}'")
    return value


def _normalize_email(raw: dict) -> Communication:
    sender = (raw.get("from") or {}).get("emailAddress") or {}
    content = html_to_text(raw.get("body")) or raw.get("bodyPreview") or ""
    recipients = [
        (r.get("emailAddress") or {}).get("address")
        for r in (raw.get("toRecipients") or []) + (raw.get("ccRecipients") or [])
    ]
    return Communication(
        id=_require(raw, "id", "email"),
        type=CommunicationType.EMAIL,
        subject=raw.get("subject") or "(No Subject)",
        sender=sender.get("name") or sender.get("address") or "Unknown",
        occurred_at=_require(raw, "receivedDateTime", "email"),
        preview=raw.get("bodyPreview") or content[:PREVIEW_LENGTH],
        content=content,
        participants=[r for r in recipients if r],
    )


def _normalize_chat(raw: dict) -> Communication:
    user = (raw.get("from") or {}).get("user") or {}
    content = html_to_text(raw.get("body"))
    mentions = [
        ((m.get("mentioned") or {}).get("user") or {}).get("displayName")
        for m in (raw.get("mentions") or [])
    ]
    return Communication(
        id=_require(raw, "id", "chat"),
        type=CommunicationType.CHAT,
        subject=raw.get("subject") or "Teams Chat Message",
        sender=user.get("displayName") or "Unknown",
        occurred_at=_require(raw, "createdDateTime", "chat"),
        preview=content[:PREVIEW_LENGTH],
        content=content,
        participants=[m for m in mentions if m],
    )


def _normalize_meeting(raw: dict) -> Communication:
    text = raw.get("content") or ""
    content, speakers = vtt_to_text(text) if text.lstrip().startswith("WEBVTT") else (text, [])
    return Communication(
        id=_require(raw, "id", "meeting"),
        type=CommunicationType.MEETING,
        subject=raw.get("subject") or "Teams Meeting Transcript",
        sender=raw.get("organizer") or "Meeting Participant",
        occurred_at=_require(raw, "createdDateTime", "meeting"),
        preview=content[:PREVIEW_LENGTH],
        content=content,
        participants=raw.get("participants") or speakers,
    )


_NORMALIZERS: dict[CommunicationType, Callable[[dict], Communication]] = {
    CommunicationType.EMAIL: _normalize_email,
    CommunicationType.CHAT: _normalize_chat,
    CommunicationType.MEETING: _normalize_meeting,
}


def normalize(source_type: CommunicationType, raw: dict) -> Communication:
    """
    Convert one raw source record into a Communication.

    Raises MalformedInput when the id or timestamp is missing or the record
    does not validate; callers skip the record and carry on.
    """
    if not isinstance(raw, dict):
        raise MalformedInput(f"{source_type.value} record is not an object")
    try:
        return _NORMALIZERS[CommunicationType(source_type)](raw)
    except ValidationError as e:
        raise MalformedInput(f"{source_type.value} record {raw.get('id')!r} invalid: {e}") from e
