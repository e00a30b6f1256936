"""Microsoft Graph communication sources (mail, Teams chat, meeting transcripts)."""
import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Optional, Protocol

import httpx

from cosell.core.auth import Credential
from cosell.core.config import get_settings
from cosell.core.errors import FetchFailure
from cosell.models.schemas import CommunicationType, as_utc

logger = logging.getLogger(__name__)


class CommunicationSource(Protocol):
    """Fetches raw records for one source type within [start, end]."""

    async def fetch(
        self, source_type: CommunicationType, start: datetime, end: datetime
    ) -> list[dict]:
        ...


def _iso(dt: datetime) -> str:
    return as_utc(dt).strftime("%Y-%m-%dT%H:%M:%SZ")


def _in_window(timestamp: Optional[str], start: datetime, end: datetime) -> bool:
    if not timestamp:
        # Let the normalizer reject it rather than dropping it silently here
        return True
    try:
        value = as_utc(datetime.fromisoformat(timestamp.replace("Z", "+00:00")))
    except ValueError:
        return True
    return as_utc(start) <= value <= as_utc(end)


class GraphSource(ABC):
    """Shared plumbing for Graph sources: auth headers, paging, error mapping."""

    source_type: CommunicationType

    def __init__(self, credential: Credential, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.settings = get_settings()
        self.credential = credential
        self.transport = transport
        self.base_url = self.settings.graph_base_url.rstrip("/")

    @property
    def mailbox(self) -> str:
        if self.credential.user_id:
            return f"/users/{self.credential.user_id}"
        return "/me"

    async def fetch(
        self, source_type: CommunicationType, start: datetime, end: datetime
    ) -> list[dict]:
        """
        Fetch raw Graph records. Any HTTP failure fails the whole source with
        FetchFailure so the caller does not advance its scan history.
        """
        try:
            async with httpx.AsyncClient(
                timeout=self.settings.http_timeout_seconds,
                headers={"Authorization": self.credential.authorization},
                transport=self.transport,
            ) as client:
                records = await self._fetch(client, start, end)
        except httpx.HTTPStatusError as e:
            logger.error(
                f"Graph {self.source_type.value} fetch failed: "
                f"{e.response.status_code} - {e.response.text[:200]}"
            )
            raise FetchFailure(self.source_type.value, f"HTTP {e.response.status_code}") from e
        except httpx.RequestError as e:
            logger.error(f"Graph {self.source_type.value} request failed: {e}")
            raise FetchFailure(self.source_type.value, str(e)) from e

        logger.info(f"Fetched {len(records)} {self.source_type.value} records from Graph")
        return records

    @abstractmethod
    async def _fetch(self, client: httpx.AsyncClient, start: datetime, end: datetime) -> list[dict]:
        """Fetch raw records for this source within [start, end]."""

    async def _get_json(self, client: httpx.AsyncClient, url: str, params: Optional[dict] = None) -> dict:
        response = await client.get(url, params=params)
        response.raise_for_status()
        return response.json()

    async def _get_all(self, client: httpx.AsyncClient, path: str, params: Optional[dict] = None) -> list[dict]:
        """Follow @odata.nextLink up to graph_max_pages pages."""
        items: list[dict] = []
        url: Optional[str] = f"{self.base_url}{path}"
        pages = 0
        while url and pages < self.settings.graph_max_pages:
            payload = await self._get_json(client, url, params)
            items.extend(payload.get("value", []))
            url = payload.get("@odata.nextLink")
            params = None  # nextLink already carries the query
            pages += 1
        if url:
            logger.warning(
                f"Graph {path}: stopped after {pages} pages, more results available"
            )
        return items


class EmailSource(GraphSource):
    source_type = CommunicationType.EMAIL

    async def _fetch(self, client: httpx.AsyncClient, start: datetime, end: datetime) -> list[dict]:
        params = {
            "$filter": f"receivedDateTime ge {_iso(start)} and receivedDateTime le {_iso(end)}",
            "$select": "id,subject,from,receivedDateTime,bodyPreview,body,toRecipients,ccRecipients",
            "$orderby": "receivedDateTime desc",
            "$top": self.settings.graph_page_size,
        }
        return await self._get_all(client, f"{self.mailbox}/messages", params)


class ChatSource(GraphSource):
    source_type = CommunicationType.CHAT

    async def _fetch(self, client: httpx.AsyncClient, start: datetime, end: datetime) -> list[dict]:
        chats = await self._get_all(client, f"{self.mailbox}/chats", {"$top": 50})
        messages: list[dict] = []
        for chat in chats:
            chat_messages = await self._get_all(
                client, f"{self.mailbox}/chats/{chat['id']}/messages", {"$top": 50}
            )
            for msg in chat_messages:
                # System events (members added etc.) carry no body worth scanning
                if msg.get("messageType", "message") != "message":
                    continue
                if _in_window(msg.get("createdDateTime"), start, end):
                    messages.append({**msg, "chatId": chat["id"], "subject": chat.get("topic")})
        return messages


class MeetingTranscriptSource(GraphSource):
    source_type = CommunicationType.MEETING

    async def _fetch(self, client: httpx.AsyncClient, start: datetime, end: datetime) -> list[dict]:
        meetings = await self._get_all(
            client,
            f"{self.mailbox}/onlineMeetings",
            {"$filter": f"startDateTime ge {_iso(start)} and endDateTime le {_iso(end)}"},
        )
        transcripts: list[dict] = []
        for meeting in meetings:
            path = f"{self.mailbox}/onlineMeetings/{meeting['id']}/transcripts"
            for transcript in await self._get_all(client, path):
                response = await client.get(
                    f"{self.base_url}{path}/{transcript['id']}/content",
                    params={"$format": "text/vtt"},
                )
                response.raise_for_status()
                participants = [
                    (a.get("identity") or {}).get("user", {}).get("displayName")
                    for a in (meeting.get("participants") or {}).get("attendees", [])
                ]
                transcripts.append({
                    "id": transcript["id"],
                    "meetingId": meeting["id"],
                    "subject": meeting.get("subject"),
                    "createdDateTime": transcript.get("createdDateTime"),
                    "content": response.text,
                    "participants": [p for p in participants if p],
                })
        return transcripts


GRAPH_SOURCES: dict[CommunicationType, type[GraphSource]] = {
    CommunicationType.EMAIL: EmailSource,
    CommunicationType.CHAT: ChatSource,
    CommunicationType.MEETING: MeetingTranscriptSource,
}


def build_graph_sources(credential: Credential) -> dict[CommunicationType, GraphSource]:
    """One source per communication type, all bound to the same request credential."""
    return {source_type: cls(credential) for source_type, cls in GRAPH_SOURCES.items()}
