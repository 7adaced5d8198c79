"""
Request Context

What the pipeline knows about one visitor: network identity, headers, and
the device facts derived from the User-Agent. Built once per request by
the HTTP layer and passed through every stage.
"""

from dataclasses import dataclass, field
from typing import Optional

from user_agents import parse as parse_ua

UNKNOWN = "unknown"


@dataclass(frozen=True)
class DeviceInfo:
    device_type: str = UNKNOWN  # mobile | tablet | desktop | unknown
    browser: str = UNKNOWN
    os: str = UNKNOWN


def parse_user_agent(user_agent: Optional[str]) -> DeviceInfo:
    """
    Structural User-Agent parsing.

    Tablets and phones are classified as such, bots as unknown, and
    everything else with a parseable UA as desktop.
    """
    if not user_agent:
        return DeviceInfo()

    ua = parse_ua(user_agent)

    if ua.is_tablet:
        device_type = "tablet"
    elif ua.is_mobile:
        device_type = "mobile"
    elif ua.is_bot:
        device_type = UNKNOWN
    else:
        device_type = "desktop"

    browser = ua.browser.family if ua.browser.family and ua.browser.family != "Other" else UNKNOWN
    os_name = ua.os.family if ua.os.family and ua.os.family != "Other" else UNKNOWN

    return DeviceInfo(device_type=device_type, browser=browser[:50], os=os_name[:50])


@dataclass(frozen=True)
class RequestContext:
    """
    Visitor facts for one short-link hit.

    Attributes:
        ip: Client IP (first X-Forwarded-For hop when proxied)
        user_agent: Raw User-Agent header
        referer: Raw Referer header
        country: ISO country code from the edge (e.g. CF-IPCountry), if any
        password: Password submitted for a protected link, if any
    """
    ip: str
    user_agent: Optional[str] = None
    referer: Optional[str] = None
    country: Optional[str] = None
    password: Optional[str] = None
    device: DeviceInfo = field(default=None)

    def __post_init__(self):
        if self.device is None:
            object.__setattr__(self, "device", parse_user_agent(self.user_agent))
