"""
CRM cross-validation.

Reconciles detected opportunities against MSX so the reviewer knows whether
to create a new opportunity, link the partner to an existing one, or do
nothing because the partner referral is already there.
"""
import logging
from typing import Optional

from cosell.core.errors import CrmQueryFailure
from cosell.models.schemas import DetectedOpportunity, EngagementCheck, PartnerReferral, utcnow
from cosell.services.msx_client import CrmQueryService

logger = logging.getLogger(__name__)


def names_overlap(a: str, b: str) -> bool:
    """Case-insensitive substring match in either direction ('Acme' ~ 'Acme Corp')."""
    a, b = a.strip().lower(), b.strip().lower()
    if not a or not b:
        return False
    return a in b or b in a


def find_partner_referral(
    referrals: list[PartnerReferral], partner_name: str
) -> Optional[PartnerReferral]:
    return next((r for r in referrals if names_overlap(r.partner_name, partner_name)), None)


class CrmCrossValidator:
    """Assigns crm_action (create / link / already_linked) to detected opportunities."""

    def __init__(self, crm: CrmQueryService):
        self.crm = crm

    async def validate(self, opportunities: list[DetectedOpportunity]) -> None:
        """
        Mutate crm_action and the existing_* fields in place.

        Lookups are memoized per (customer name, partner name) for this call
        only. Opportunities without a customer keep their provisional action.
        """
        cache: dict[tuple[str, str], EngagementCheck] = {}

        for opp in opportunities:
            if opp.customer is None or not opp.customer.name:
                continue

            key = (opp.customer.name, opp.partner.name if opp.partner else "")
            check = cache.get(key)
            if check is None:
                check = await self._check_engagement(*key)
                cache[key] = check

            self._apply(opp, check)

        logger.info(
            f"CRM cross-validation: {len(opportunities)} opportunities, "
            f"{len(cache)} distinct customer/partner pairs queried"
        )

    async def _check_engagement(self, customer_name: str, partner_name: str) -> EngagementCheck:
        try:
            open_opps = await self.crm.find_open_opportunities_for_customer(customer_name)
            if not open_opps:
                logger.info(f"MSX: no open opportunity for '{customer_name}' - will create")
                return EngagementCheck(opportunity_exists=False)

            latest = max(open_opps, key=lambda o: o.modified_at)
            check = EngagementCheck(
                opportunity_exists=True,
                opportunity_id=latest.id,
                opportunity_name=latest.name,
            )
            if not partner_name:
                return check

            referrals = await self.crm.find_partner_referrals_for_opportunity(latest.id)
            referral = find_partner_referral(referrals, partner_name)
            if referral:
                check.partner_already_linked = True
                check.referral_id = referral.referral_id
            logger.info(
                f"MSX match: '{customer_name}' -> {latest.name} "
                f"({'partner already linked' if referral else 'partner not linked'})"
            )
            return check

        except CrmQueryFailure as e:
            # Fail open: a CRM outage must not block the review queue
            logger.warning(
                f"CRM lookup failed for ('{customer_name}', '{partner_name}'), "
                f"defaulting to create: {e}"
            )
            return EngagementCheck(opportunity_exists=False)
        except Exception as e:
            logger.error(
                f"Unexpected CRM error for ('{customer_name}', '{partner_name}'), "
                f"defaulting to create: {e}",
                exc_info=True,
            )
            return EngagementCheck(opportunity_exists=False)

    def _apply(self, opp: DetectedOpportunity, check: EngagementCheck) -> None:
        opp.crm_action = check.action
        opp.existing_opportunity_id = check.opportunity_id
        opp.existing_opportunity_name = check.opportunity_name
        opp.existing_referral_id = check.referral_id
        opp.updated_at = utcnow()
