"""Tier catalog: the single authority on plans, prices, quotas and capabilities."""

from __future__ import annotations

import enum
from collections.abc import Mapping
from dataclasses import dataclass, field
from decimal import Decimal
from types import MappingProxyType

from practicegate.core.exceptions import InvalidTierError, TierNotFoundError

UNLIMITED = -1


class BillingCadence(str, enum.Enum):
    """How often a subscription is billed."""

    MONTHLY = "monthly"
    ANNUAL = "annual"


class ActionKind(str, enum.Enum):
    """Metered actions counted against a per-period quota."""

    CONVERSATION = "conversation"
    SOAP_SUMMARY = "soap_summary"
    FOLLOW_UP_EMAIL = "follow_up_email"


class Capability(str, enum.Enum):
    """Closed set of features a tier can unlock."""

    ENCRYPTION = "encryption"
    PROGRESS_TRACKING = "progress_tracking"
    AUTOMATED_FOLLOW_UPS = "automated_follow_ups"
    MOBILE_ACCESS = "mobile_access"
    BASIC_ANALYTICS = "basic_analytics"
    ADVANCED_ANALYTICS = "advanced_analytics"
    AUDIT_LOGS = "audit_logs"
    DATA_EXPORT = "data_export"
    EMAIL_SUPPORT = "email_support"
    PRIORITY_SUPPORT = "priority_support"
    TEAM_COLLABORATION = "team_collaboration"
    CUSTOM_FORMS = "custom_forms"
    TEAM_SCHEDULING = "team_scheduling"
    ROLE_BASED_ACCESS = "role_based_access"
    DEDICATED_ACCOUNT_MANAGER = "dedicated_account_manager"
    SSO = "sso"
    CUSTOM_API = "custom_api"
    CUSTOM_INTEGRATIONS = "custom_integrations"


@dataclass(frozen=True)
class Tier:
    """Immutable catalog entry.

    ``quotas`` maps each metered action to its per-period allowance;
    ``UNLIMITED`` means no cap and a missing action means 0.
    """

    id: str
    name: str
    price_monthly: Decimal
    price_annual: Decimal
    seats_included: int
    quotas: Mapping[ActionKind, int]
    capabilities: frozenset[Capability]
    seat_addon_monthly: Decimal | None = None
    sort_order: int = field(default=0, compare=False)

    def quota_for(self, action: ActionKind) -> int:
        """Quota for ``action`` in one period."""
        return self.quotas.get(action, 0)

    def is_unlimited(self, action: ActionKind) -> bool:
        """Whether ``action`` is uncapped on this tier."""
        return self.quota_for(action) == UNLIMITED

    def has_capability(self, capability: Capability) -> bool:
        """Whether this tier unlocks ``capability``."""
        return capability in self.capabilities

    def price_for(self, cadence: BillingCadence) -> Decimal:
        """List price for one billing cycle."""
        if cadence == BillingCadence.ANNUAL:
            return self.price_annual
        return self.price_monthly


_BASE_CAPABILITIES = frozenset(
    {
        Capability.ENCRYPTION,
        Capability.DATA_EXPORT,
    }
)

_SOLO_CAPABILITIES = _BASE_CAPABILITIES | {
    Capability.PROGRESS_TRACKING,
    Capability.AUTOMATED_FOLLOW_UPS,
    Capability.MOBILE_ACCESS,
    Capability.BASIC_ANALYTICS,
    Capability.EMAIL_SUPPORT,
    Capability.AUDIT_LOGS,
}

_GROUP_CAPABILITIES = _SOLO_CAPABILITIES | {
    Capability.TEAM_COLLABORATION,
    Capability.ADVANCED_ANALYTICS,
    Capability.CUSTOM_FORMS,
    Capability.TEAM_SCHEDULING,
    Capability.PRIORITY_SUPPORT,
    Capability.ROLE_BASED_ACCESS,
}

_ENTERPRISE_CAPABILITIES = _GROUP_CAPABILITIES | {
    Capability.DEDICATED_ACCOUNT_MANAGER,
    Capability.SSO,
    Capability.CUSTOM_API,
    Capability.CUSTOM_INTEGRATIONS,
}

DEFAULT_TIER_ID = "free"

_TIERS: tuple[Tier, ...] = (
    Tier(
        id="free",
        name="Free",
        price_monthly=Decimal("0"),
        price_annual=Decimal("0"),
        seats_included=1,
        quotas=MappingProxyType(
            {
                ActionKind.CONVERSATION: 5,
                ActionKind.SOAP_SUMMARY: 0,
                ActionKind.FOLLOW_UP_EMAIL: 0,
            }
        ),
        capabilities=_BASE_CAPABILITIES,
        sort_order=0,
    ),
    Tier(
        id="solo",
        name="Solo",
        price_monthly=Decimal("125"),
        price_annual=Decimal("1250"),
        seats_included=1,
        quotas=MappingProxyType(
            {
                ActionKind.CONVERSATION: 100,
                ActionKind.SOAP_SUMMARY: 100,
                ActionKind.FOLLOW_UP_EMAIL: 200,
            }
        ),
        capabilities=_SOLO_CAPABILITIES,
        sort_order=1,
    ),
    Tier(
        id="group",
        name="Group",
        price_monthly=Decimal("400"),
        price_annual=Decimal("4000"),
        seats_included=5,
        quotas=MappingProxyType(
            {
                ActionKind.CONVERSATION: 1000,
                ActionKind.SOAP_SUMMARY: 1000,
                ActionKind.FOLLOW_UP_EMAIL: 2000,
            }
        ),
        capabilities=_GROUP_CAPABILITIES,
        seat_addon_monthly=Decimal("75"),
        sort_order=2,
    ),
    Tier(
        id="enterprise",
        name="Enterprise (Clinic)",
        price_monthly=Decimal("1200"),
        price_annual=Decimal("12000"),
        seats_included=UNLIMITED,
        quotas=MappingProxyType(
            {
                ActionKind.CONVERSATION: UNLIMITED,
                ActionKind.SOAP_SUMMARY: UNLIMITED,
                ActionKind.FOLLOW_UP_EMAIL: UNLIMITED,
            }
        ),
        capabilities=_ENTERPRISE_CAPABILITIES,
        sort_order=3,
    ),
)

TIER_CATALOG: Mapping[str, Tier] = MappingProxyType({tier.id: tier for tier in _TIERS})


def get_tier(tier_id: str) -> Tier:
    """Look up a tier by id.

    Raises:
        TierNotFoundError: If the id is not in the catalog.
    """
    tier = TIER_CATALOG.get(tier_id)
    if tier is None:
        raise TierNotFoundError(resource_type="Tier", resource_id=tier_id)
    return tier


def list_tiers() -> tuple[Tier, ...]:
    """All tiers, cheapest first."""
    return tuple(sorted(TIER_CATALOG.values(), key=lambda tier: tier.sort_order))


def is_known_tier(tier_id: str) -> bool:
    """Whether ``tier_id`` names a catalog tier."""
    return tier_id in TIER_CATALOG


class PriceBook:
    """Maps catalog tiers to billing provider price identifiers.

    Keys of the configured mapping are ``"<tier_id>:<cadence>"``.
    """

    def __init__(self, price_ids: Mapping[str, str]) -> None:
        self._by_key: dict[tuple[str, BillingCadence], str] = {}
        self._by_price: dict[str, tuple[Tier, BillingCadence]] = {}
        for key, price_id in price_ids.items():
            tier_id, _, cadence_value = key.partition(":")
            tier = get_tier(tier_id)
            cadence = BillingCadence(cadence_value or BillingCadence.MONTHLY.value)
            self._by_key[(tier.id, cadence)] = price_id
            self._by_price[price_id] = (tier, cadence)

    def price_id_for(self, tier_id: str, cadence: BillingCadence) -> str:
        """Provider price id for a tier and cadence.

        Raises:
            InvalidTierError: If no price is configured for the pair.
        """
        price_id = self._by_key.get((tier_id, cadence))
        if price_id is None:
            raise InvalidTierError(
                f"No price configured for tier {tier_id} ({cadence.value})",
                field="tier_id",
                value=tier_id,
            )
        return price_id

    def resolve(self, price_id: str) -> tuple[Tier, BillingCadence]:
        """Tier and cadence for a provider price id.

        Raises:
            InvalidTierError: If the price id is unknown.
        """
        resolved = self._by_price.get(price_id)
        if resolved is None:
            raise InvalidTierError(
                "Unknown price identifier",
                field="price_id",
                value=price_id,
            )
        return resolved

    def is_known_price(self, price_id: str) -> bool:
        """Whether ``price_id`` is configured."""
        return price_id in self._by_price
