"""MSX (Dynamics 365) and Fabric lookups used for CRM cross-validation."""
import logging
from typing import Optional, Protocol

import httpx
from pydantic import ValidationError
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine

from cosell.core.auth import Credential
from cosell.core.config import get_settings
from cosell.core.errors import CrmQueryFailure
from cosell.models.schemas import CrmOpportunity, PartnerReferral

logger = logging.getLogger(__name__)

# Dynamics statecode: 0 = Open, 1 = Won, 2 = Lost
OPEN_STATECODE = 0

_OPPORTUNITY_SELECT = "opportunityid,name,statecode,estimatedvalue,modifiedon"
_OPPORTUNITY_EXPAND = "parentaccountid($select=accountid,name)"

_REFERRALS_SQL = text(
    "SELECT ReferralId, PartnerName, OpportunityId "
    "FROM dbo._PartnerReferralData "
    "WHERE OpportunityId = :opportunity_id"
)


class CrmQueryService(Protocol):
    async def find_open_opportunities_for_customer(self, name: str) -> list[CrmOpportunity]: ...

    async def find_partner_referrals_for_opportunity(self, opportunity_id: str) -> list[PartnerReferral]: ...


def escape_odata(value: str) -> str:
    """Escape a value for use inside a single-quoted OData string literal."""
    return value.replace("'", "''")


class MSXClient:
    """Client for the Dynamics 365 Web API backing MSX."""

    def __init__(self, credential: Credential, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.settings = get_settings()
        self.credential = credential
        self.transport = transport
        self.base_url = (
            f"{self.settings.msx_base_url.rstrip('/')}/api/data/{self.settings.msx_api_version}"
        )

    async def _get(self, path: str, params: dict) -> dict:
        headers = {
            "Authorization": self.credential.authorization,
            "Accept": "application/json",
            "OData-MaxVersion": "4.0",
            "OData-Version": "4.0",
        }
        try:
            async with httpx.AsyncClient(
                timeout=self.settings.http_timeout_seconds, headers=headers, transport=self.transport
            ) as client:
                response = await client.get(f"{self.base_url}{path}", params=params)
                response.raise_for_status()
                return response.json()
        except ValueError as e:
            # e.g. an HTML sign-in page served with 200 after the session expired
            logger.error(f"MSX returned a non-JSON reply for {path}: {e}")
            raise CrmQueryFailure(f"MSX returned an unreadable reply: {e}") from e
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            logger.error(f"MSX API error: {status} - {e.response.text[:200]}")
            if status == 401:
                raise CrmQueryFailure("MSX authentication expired", status) from e
            if status == 403:
                raise CrmQueryFailure("Insufficient permissions to access MSX data", status) from e
            raise CrmQueryFailure(f"MSX request failed ({status})", status) from e
        except httpx.RequestError as e:
            logger.error(f"MSX request failed: {e}")
            raise CrmQueryFailure(f"MSX unreachable: {e}") from e

    async def search_open_opportunities(self, customer_name: str) -> list[CrmOpportunity]:
        """Open opportunities whose account name contains customer_name, newest first."""
        if not customer_name or len(customer_name.strip()) < 2:
            return []
        name_filter = f"contains(parentaccountid/name,'{escape_odata(customer_name.strip())}')"
        params = {
            "$filter": f"statecode eq {OPEN_STATECODE} and {name_filter}",
            "$select": _OPPORTUNITY_SELECT,
            "$expand": _OPPORTUNITY_EXPAND,
            "$orderby": "modifiedon desc",
            "$top": 20,
        }
        payload = await self._get("/opportunities", params)
        try:
            return [self._parse_opportunity(item) for item in payload.get("value", [])]
        except (KeyError, TypeError, AttributeError, ValidationError) as e:
            logger.error(f"MSX opportunity payload not understood: {e}")
            raise CrmQueryFailure(f"Unexpected MSX opportunity payload: {e}") from e

    def _parse_opportunity(self, item: dict) -> CrmOpportunity:
        account = item.get("parentaccountid") or {}
        return CrmOpportunity(
            id=item["opportunityid"],
            name=item.get("name") or "",
            modified_at=item["modifiedon"],
            account_name=account.get("name"),
            estimated_value=item.get("estimatedvalue"),
        )


class FabricReferralRepository:
    """Reads partner referrals from the Fabric warehouse (dbo._PartnerReferralData)."""

    def __init__(self, engine: Optional[AsyncEngine]):
        self.engine = engine

    async def referrals_for_opportunity(self, opportunity_id: str) -> list[PartnerReferral]:
        if self.engine is None:
            raise CrmQueryFailure("Fabric warehouse not configured. Set FABRIC_DATABASE_URL.")
        try:
            async with self.engine.connect() as conn:
                result = await conn.execute(_REFERRALS_SQL, {"opportunity_id": opportunity_id})
                rows = result.mappings().all()
        except SQLAlchemyError as e:
            logger.error(f"Fabric referral query failed for {opportunity_id}: {e}")
            raise CrmQueryFailure(f"Fabric query failed: {e}") from e

        return [
            PartnerReferral(
                referral_id=str(row["ReferralId"]),
                partner_name=row["PartnerName"] or "",
                opportunity_id=row["OpportunityId"],
            )
            for row in rows
        ]


class MsxCrmService:
    """CrmQueryService backed by MSX opportunities and Fabric referrals."""

    def __init__(self, msx: MSXClient, referrals: FabricReferralRepository):
        self.msx = msx
        self.referrals = referrals

    async def find_open_opportunities_for_customer(self, name: str) -> list[CrmOpportunity]:
        return await self.msx.search_open_opportunities(name)

    async def find_partner_referrals_for_opportunity(self, opportunity_id: str) -> list[PartnerReferral]:
        return await self.referrals.referrals_for_opportunity(opportunity_id)
