"""Geofence and role resolution for new and returning users."""

import ipaddress
import logging
from collections.abc import Iterable
from dataclasses import dataclass
from enum import Enum

from latchkey.models import User

logger = logging.getLogger(__name__)

IPNetwork = ipaddress.IPv4Network | ipaddress.IPv6Network


def parse_networks(networks: Iterable[str | IPNetwork]) -> tuple[IPNetwork, ...]:
    return tuple(ipaddress.ip_network(network, strict=False) for network in networks)


def address_in_networks(ip_address: str | None, networks: Iterable[IPNetwork]) -> bool:
    """Check whether an address falls inside any of the given ranges.

    Unparseable or missing addresses are treated as outside.
    """
    if not ip_address:
        return False
    try:
        address = ipaddress.ip_address(ip_address.strip())
    except ValueError:
        logger.debug(f"Ignoring unparseable address {ip_address!r}")
        return False

    # ::ffff:10.0.0.1 should match 10.0.0.0/8
    if isinstance(address, ipaddress.IPv6Address) and address.ipv4_mapped is not None:
        address = address.ipv4_mapped

    return any(address.version == network.version and address in network for network in networks)


def client_address(
    peer: str | None,
    forwarded_for: str | None,
    real_ip: str | None,
    trusted_proxies: Iterable[IPNetwork],
) -> str | None:
    """Originating address of a request that may have passed through proxies.

    Forwarding headers are only read when the socket peer is a trusted proxy.
    X-Forwarded-For is walked from the right, skipping trusted hops; the
    first untrusted hop is the client. Entries to its left were written by
    the client and are ignored.
    """
    trusted_proxies = tuple(trusted_proxies)
    if not address_in_networks(peer, trusted_proxies):
        return peer

    hops = [hop.strip() for hop in (forwarded_for or "").split(",") if hop.strip()]
    for hop in reversed(hops):
        if not address_in_networks(hop, trusted_proxies):
            return hop
    if hops:
        return hops[0]

    if real_ip and real_ip.strip():
        return real_ip.strip()
    return peer


class SignupIntent(str, Enum):
    """Why the caller is asking for a login link."""

    GENERAL = "general"
    BUSINESS_ADVERTISING = "business_advertising"


@dataclass(frozen=True)
class OriginContext:
    """Where a token request came from."""

    ip_address: str | None = None
    intent: SignupIntent = SignupIntent.GENERAL

    @property
    def is_business(self) -> bool:
        return self.intent == SignupIntent.BUSINESS_ADVERTISING


@dataclass(frozen=True)
class RoleDecision:
    community_verified: bool
    is_admin: bool


class RoleResolver:
    """Decides community verification and admin status.

    The admin allow-list and community network ranges are passed in at
    construction; nothing here reads global settings.
    """

    def __init__(
        self,
        admin_emails: Iterable[str] = (),
        community_networks: Iterable[str | IPNetwork] = (),
    ) -> None:
        self.admin_emails = frozenset(email.strip().lower() for email in admin_emails)
        self.community_networks = parse_networks(community_networks)

    def is_admin_email(self, email: str) -> bool:
        return email.strip().lower() in self.admin_emails

    def in_community_network(self, ip_address: str | None) -> bool:
        return address_in_networks(ip_address, self.community_networks)

    def resolve_on_create(self, email: str, origin: OriginContext) -> RoleDecision:
        """Role flags for an account that does not exist yet.

        Business advertisers are always verified; everyone else depends on
        network origin.
        """
        community_verified = origin.is_business or self.in_community_network(origin.ip_address)
        return RoleDecision(
            community_verified=community_verified,
            is_admin=self.is_admin_email(email),
        )

    def resolve_on_login(self, user: User, origin: OriginContext) -> RoleDecision:
        """Role flags for a returning user.

        The geofence is only applied at creation. On later logins the admin
        allow-list is re-read and a business context verifies the account.
        Flags that are already set stay set.
        """
        return RoleDecision(
            community_verified=user.community_verified or origin.is_business,
            is_admin=user.is_admin or self.is_admin_email(user.email),
        )
