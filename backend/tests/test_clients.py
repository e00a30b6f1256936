"""Tests for the Graph sources and MSX client against a mocked HTTP transport."""
import asyncio
from datetime import datetime, timezone

import httpx
import pytest

from cosell.core.auth import Credential, bearer_token
from cosell.core.errors import CrmQueryFailure, FetchFailure
from cosell.models.schemas import (
    CRMAction, Communication, CommunicationType, DetectedOpportunity, Entity, EntityKind,
)
from cosell.services.crm_validator import CrmCrossValidator
from cosell.services.graph_client import (
    ChatSource, EmailSource, GraphSource, MeetingTranscriptSource, build_graph_sources,
)
from cosell.services.msx_client import (
    FabricReferralRepository, MSXClient, MsxCrmService, escape_odata,
)

START = datetime(2025, 3, 1, tzinfo=timezone.utc)
END = datetime(2025, 3, 10, tzinfo=timezone.utc)
GRAPH = "https://graph.microsoft.com/v1.0"


class Recorder:
    """MockTransport handler mapping URL paths to JSON payloads."""

    def __init__(self, routes: dict):
        self.routes = routes
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        key = request.url.path
        if key in self.routes:
            payload = self.routes[key]
            if isinstance(payload, httpx.Response):
                return payload
            if isinstance(payload, str):
                return httpx.Response(200, text=payload)
            return httpx.Response(200, json=payload)
        return httpx.Response(404, json={"error": {"code": "NotFound"}})


def _transport(routes: dict) -> tuple[httpx.MockTransport, Recorder]:
    recorder = Recorder(routes)
    return httpx.MockTransport(recorder), recorder


class TestEmailSource:
    def test_follows_next_link_and_sends_token(self):
        transport, recorder = _transport({
            "/v1.0/me/messages": {
                "value": [{"id": "m1"}],
                "@odata.nextLink": f"{GRAPH}/me/messages/page2",
            },
            "/v1.0/me/messages/page2": {"value": [{"id": "m2"}]},
        })
        source = EmailSource(Credential(access_token="tok"), transport=transport)
        records = asyncio.run(source.fetch(CommunicationType.EMAIL, START, END))

        assert [r["id"] for r in records] == ["m1", "m2"]
        first = recorder.requests[0]
        assert first.headers["Authorization"] == "Bearer tok"
        assert "receivedDateTime ge 2025-03-01T00:00:00Z" in first.url.params["$filter"]
        assert "$filter" not in recorder.requests[1].url.params

    def test_user_mailbox_for_app_credentials(self):
        transport, recorder = _transport({"/v1.0/users/u-1/messages": {"value": []}})
        source = EmailSource(Credential(access_token="tok", user_id="u-1"), transport=transport)
        assert asyncio.run(source.fetch(CommunicationType.EMAIL, START, END)) == []
        assert recorder.requests[0].url.path == "/v1.0/users/u-1/messages"

    def test_http_error_fails_source(self):
        transport, _ = _transport({"/v1.0/me/messages": httpx.Response(503, text="busy")})
        source = EmailSource(Credential(access_token="tok"), transport=transport)
        with pytest.raises(FetchFailure) as excinfo:
            asyncio.run(source.fetch(CommunicationType.EMAIL, START, END))
        assert excinfo.value.source == "email"


class TestChatSource:
    def test_window_and_system_messages_filtered(self):
        transport, _ = _transport({
            "/v1.0/me/chats": {"value": [{"id": "c1", "topic": "Contoso co-sell"}]},
            "/v1.0/me/chats/c1/messages": {"value": [
                {"id": "in", "messageType": "message", "createdDateTime": "2025-03-05T10:00:00Z"},
                {"id": "old", "messageType": "message", "createdDateTime": "2025-02-01T10:00:00Z"},
                {"id": "sys", "messageType": "systemEventMessage", "createdDateTime": "2025-03-05T10:00:00Z"},
            ]},
        })
        source = ChatSource(Credential(access_token="tok"), transport=transport)
        records = asyncio.run(source.fetch(CommunicationType.CHAT, START, END))
        assert [r["id"] for r in records] == ["in"]
        assert records[0]["chatId"] == "c1"
        assert records[0]["subject"] == "Contoso co-sell"

    def test_failed_message_page_fails_whole_source(self):
        transport, _ = _transport({
            "/v1.0/me/chats": {"value": [{"id": "c1"}, {"id": "c2"}]},
            "/v1.0/me/chats/c1/messages": {"value": []},
        })
        source = ChatSource(Credential(access_token="tok"), transport=transport)
        with pytest.raises(FetchFailure):
            asyncio.run(source.fetch(CommunicationType.CHAT, START, END))


class TestMeetingTranscriptSource:
    def test_transcript_content(self):
        base = "/v1.0/me/onlineMeetings/meet-1/transcripts"
        transport, _ = _transport({
            "/v1.0/me/onlineMeetings": {"value": [{
                "id": "meet-1",
                "subject": "Partner sync",
                "participants": {"attendees": [{"identity": {"user": {"displayName": "Ana"}}}]},
            }]},
            base: {"value": [{"id": "t-1", "createdDateTime": "2025-03-04T15:00:00Z"}]},
            f"{base}/t-1/content": "WEBVTT\n\n<v Ana>co-sell</v>\n",
        })
        source = MeetingTranscriptSource(Credential(access_token="tok"), transport=transport)
        [record] = asyncio.run(source.fetch(CommunicationType.MEETING, START, END))
        assert record["id"] == "t-1"
        assert record["subject"] == "Partner sync"
        assert record["participants"] == ["Ana"]
        assert record["content"].startswith("WEBVTT")


def test_graph_source_is_abstract():
    with pytest.raises(TypeError):
        GraphSource(Credential(access_token="tok"))


def test_build_graph_sources_shares_credential():
    credential = Credential(access_token="tok")
    sources = build_graph_sources(credential)
    assert set(sources) == set(CommunicationType)
    assert all(s.credential is credential for s in sources.values())


class TestMSXClient:
    def _client(self, routes: dict) -> tuple[MSXClient, Recorder]:
        transport, recorder = _transport(routes)
        client = MSXClient(Credential(access_token="msx"), transport=transport)
        client.base_url = "https://msx.example/api/data/v9.2"
        return client, recorder

    def test_search_open_opportunities(self):
        client, recorder = self._client({"/api/data/v9.2/opportunities": {"value": [{
            "opportunityid": "o-1",
            "name": "O'Brien Azure",
            "modifiedon": "2025-03-02T09:00:00Z",
            "estimatedvalue": 120000,
            "parentaccountid": {"accountid": "a-1", "name": "O'Brien Ltd"},
        }]}})
        [opp] = asyncio.run(client.search_open_opportunities("O'Brien"))
        assert opp.id == "o-1"
        assert opp.account_name == "O'Brien Ltd"
        params = recorder.requests[0].url.params
        assert params["$filter"] == "statecode eq 0 and contains(parentaccountid/name,'O''Brien')"
        assert params["$orderby"] == "modifiedon desc"

    def test_short_name_skips_query(self):
        client, recorder = self._client({})
        assert asyncio.run(client.search_open_opportunities("A")) == []
        assert recorder.requests == []

    @pytest.mark.parametrize("status", [401, 403, 404, 500])
    def test_http_errors_become_crm_failures(self, status):
        client, _ = self._client({"/api/data/v9.2/opportunities": httpx.Response(status)})
        with pytest.raises(CrmQueryFailure) as excinfo:
            asyncio.run(client.search_open_opportunities("Contoso"))
        assert excinfo.value.status_code == status

    def test_non_json_reply_becomes_crm_failure(self):
        client, _ = self._client({"/api/data/v9.2/opportunities": httpx.Response(
            200, text="<html>Sign in</html>", headers={"Content-Type": "text/html"},
        )})
        with pytest.raises(CrmQueryFailure):
            asyncio.run(client.search_open_opportunities("Contoso"))

    def test_unexpected_payload_becomes_crm_failure(self):
        client, _ = self._client({"/api/data/v9.2/opportunities": {"value": [{"name": "no id"}]}})
        with pytest.raises(CrmQueryFailure):
            asyncio.run(client.search_open_opportunities("Contoso"))

    def test_non_json_reply_fails_open_to_create(self):
        client, _ = self._client({"/api/data/v9.2/opportunities": "<html>Sign in</html>"})
        crm = MsxCrmService(client, FabricReferralRepository(None))
        opp = DetectedOpportunity(
            communication=Communication(
                id="msg-1", type=CommunicationType.EMAIL, occurred_at=START,
            ),
            customer=Entity(name="Contoso", kind=EntityKind.CUSTOMER, confidence=0.8),
            matched_keywords=["co-sell"],
            confidence=0.74,
        )
        asyncio.run(CrmCrossValidator(crm).validate([opp]))
        assert opp.crm_action == CRMAction.CREATE


def test_fabric_repository_requires_engine():
    with pytest.raises(CrmQueryFailure):
        asyncio.run(FabricReferralRepository(None).referrals_for_opportunity("o-1"))


def test_escape_odata():
    assert escape_odata("O'Brien's") == "O''Brien''s"


@pytest.mark.parametrize("header,expected", [
    ("Bearer abc", "abc"),
    ("bearer  abc ", "abc"),
    ("Basic abc", None),
    ("Bearer", None),
    (None, None),
])
def test_bearer_token(header, expected):
    assert bearer_token(header) == expected
