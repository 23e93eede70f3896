"""
Runtime conditions attached to a permission.

A permission held by a user may still be unusable at a given moment: it
can be restricted to office hours, to certain weekdays, to a set of
networks, or to a number of uses per time window. These checks are pure
functions of the conditions and the request context, so they live here
rather than on the model.
"""
import ipaddress
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Tuple
from zoneinfo import ZoneInfo

from django.conf import settings
from django.utils import timezone

WEEKDAYS = ('monday', 'tuesday', 'wednesday', 'thursday', 'friday', 'saturday', 'sunday')


def parse_network(value: str):
    """
    Parse an IP address or CIDR block into a network.

    Raises:
        ValueError: if ``value`` is neither
    """
    return ipaddress.ip_network(value.strip(), strict=False)


@dataclass(frozen=True)
class PermissionConditions:
    """Immutable snapshot of a permission's runtime conditions."""

    allowed_hours_start: Optional[int] = None
    allowed_hours_end: Optional[int] = None
    allowed_days: Tuple[str, ...] = ()
    allowed_ips: Tuple[str, ...] = ()
    blocked_ips: Tuple[str, ...] = ()
    requires_approval: bool = False
    rate_limit_max_requests: Optional[int] = None
    rate_limit_window_seconds: Optional[int] = None

    @property
    def has_time_window(self) -> bool:
        return (
            self.allowed_hours_start is not None
            or self.allowed_hours_end is not None
            or bool(self.allowed_days)
        )

    @property
    def has_ip_restrictions(self) -> bool:
        return bool(self.allowed_ips or self.blocked_ips)

    @property
    def is_rate_limited(self) -> bool:
        return bool(self.rate_limit_max_requests and self.rate_limit_window_seconds)

    def is_within_time_window(self, moment: datetime, tz_name: Optional[str] = None) -> bool:
        """
        Check the hour and weekday restrictions at ``moment``.

        Hours are inclusive and evaluated in ``RBAC_TIMEZONE``. A window
        whose start is after its end wraps past midnight (e.g. 22 to 6).

        Args:
            moment: Aware or naive datetime (naive is taken as UTC)
            tz_name: Timezone name overriding ``settings.RBAC_TIMEZONE``

        Returns:
            bool: True if no time restriction applies or all are satisfied
        """
        if not self.has_time_window:
            return True

        if timezone.is_naive(moment):
            moment = timezone.make_aware(moment, ZoneInfo('UTC'))
        local = moment.astimezone(ZoneInfo(tz_name or settings.RBAC_TIMEZONE))

        if self.allowed_days and WEEKDAYS[local.weekday()] not in self.allowed_days:
            return False

        if self.allowed_hours_start is None and self.allowed_hours_end is None:
            return True

        start = 0 if self.allowed_hours_start is None else self.allowed_hours_start
        end = 23 if self.allowed_hours_end is None else self.allowed_hours_end
        hour = local.hour
        if start <= end:
            return start <= hour <= end
        return hour >= start or hour <= end

    def is_ip_allowed(self, ip_address: Optional[str]) -> bool:
        """
        Check the block list and allow list for ``ip_address``.

        An unknown or unparseable address passes only when no allow list
        is configured and no block list needs it.
        """
        if not self.has_ip_restrictions:
            return True

        if not ip_address:
            return not self.allowed_ips

        try:
            address = ipaddress.ip_address(ip_address.strip())
        except ValueError:
            return False

        if any(_matches(address, entry) for entry in self.blocked_ips):
            return False

        if self.allowed_ips:
            return any(_matches(address, entry) for entry in self.allowed_ips)

        return True

    def as_dict(self) -> dict:
        return {
            'allowed_hours_start': self.allowed_hours_start,
            'allowed_hours_end': self.allowed_hours_end,
            'allowed_days': list(self.allowed_days),
            'allowed_ips': list(self.allowed_ips),
            'blocked_ips': list(self.blocked_ips),
            'requires_approval': self.requires_approval,
            'rate_limit_max_requests': self.rate_limit_max_requests,
            'rate_limit_window_seconds': self.rate_limit_window_seconds,
        }


def _matches(address, entry: str) -> bool:
    try:
        network = parse_network(entry)
    except ValueError:
        return False
    return address.version == network.version and address in network
