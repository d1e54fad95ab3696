"""Gateway address value type and Brazilian phone-number normalization.

A WhatsApp address (JID) comes in a handful of shapes:

  5541991188909@s.whatsapp.net   stable, phone-number derived
  5541991188909:12@s.whatsapp.net  same, with a device suffix
  5541991188909@c.us             legacy spelling of the stable form
  207112233445566@lid            opaque linked identity, no phone inside
  120363164787189624@g.us        group
  status@broadcast, ...@newsletter  everything else

Parsing never mutates the raw value. Canonical forms are new strings.
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass
from enum import Enum

BRAZIL_COUNTRY_CODE = "55"

# Area code assumed for 8-digit numbers, which carry none. Known-lossy.
DEFAULT_AREA_CODE = os.environ.get("DEFAULT_AREA_CODE", "11")

_DEVICE_SUFFIX = re.compile(r":\d+$")
_DIGITS = re.compile(r"^\d+$")

_STABLE_DOMAINS = {"s.whatsapp.net", "c.us"}
ALIAS_DOMAIN = "lid"
GROUP_DOMAIN = "g.us"


class AddressKind(str, Enum):
    STABLE = "stable"
    ALIAS = "alias"
    GROUP = "group"
    OTHER = "other"


@dataclass(frozen=True)
class Address:
    """Parsed view of a raw gateway address."""

    raw: str
    kind: AddressKind
    user: str

    @property
    def is_stable(self) -> bool:
        return self.kind is AddressKind.STABLE

    @property
    def is_alias(self) -> bool:
        return self.kind is AddressKind.ALIAS

    @property
    def is_group(self) -> bool:
        return self.kind is AddressKind.GROUP


def parse_address(raw: str) -> Address:
    """Classify a raw JID (or bare number) without altering it."""
    value = raw.strip()
    user, sep, domain = value.partition("@")
    user = _DEVICE_SUFFIX.sub("", user)

    if not sep:
        digits = re.sub(r"[^\d]", "", user)
        if digits and _DIGITS.match(digits):
            return Address(raw=raw, kind=AddressKind.STABLE, user=digits)
        return Address(raw=raw, kind=AddressKind.OTHER, user=user)

    domain = domain.lower()
    if domain in _STABLE_DOMAINS and _DIGITS.match(user):
        return Address(raw=raw, kind=AddressKind.STABLE, user=user)
    if domain == ALIAS_DOMAIN and user:
        return Address(raw=raw, kind=AddressKind.ALIAS, user=user)
    if domain == GROUP_DOMAIN and user:
        return Address(raw=raw, kind=AddressKind.GROUP, user=user)
    return Address(raw=raw, kind=AddressKind.OTHER, user=user)


def normalize_brazilian_number(digits: str, default_area_code: str | None = None) -> str:
    """Bring a Brazilian mobile number to the 13-digit 55+DD+9XXXXXXXX form.

    Lengths are counted after removing the 55 prefix:
      8  subscriber only       -> default area code + 9 + subscriber
      9  area code + 7 digits  -> area code + 9 + rest
      10 area code + 8 digits  -> area code + 9 + subscriber
      11 already modern        -> unchanged
    Any other shape, or a non-Brazilian number, passes through unchanged.
    """
    if not _DIGITS.match(digits) or not digits.startswith(BRAZIL_COUNTRY_CODE):
        return digits

    national = digits[len(BRAZIL_COUNTRY_CODE):]

    if len(national) == 8:
        area = default_area_code or DEFAULT_AREA_CODE
        return f"{BRAZIL_COUNTRY_CODE}{area}9{national}"

    if len(national) in (9, 10):
        return f"{BRAZIL_COUNTRY_CODE}{national[:2]}9{national[2:]}"

    return digits


def canonical_form(address: Address, default_area_code: str | None = None) -> str:
    """Canonical key for an address, before any alias substitution."""
    if address.kind is AddressKind.STABLE:
        return normalize_brazilian_number(address.user, default_area_code)
    if address.kind is AddressKind.ALIAS:
        return f"{address.user}@{ALIAS_DOMAIN}"
    if address.kind is AddressKind.GROUP:
        return f"{address.user}@{GROUP_DOMAIN}"
    return address.raw.strip()


def is_group_canonical(canonical: str) -> bool:
    return canonical.endswith(f"@{GROUP_DOMAIN}")
