"""Identity key normalization for people and organizations."""

from __future__ import annotations

import re
import unicodedata
from email.utils import parseaddr
from typing import List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field

_WS = re.compile(r"\s+")
_ORG_PUNCT = re.compile(r"[^\w\s&]")
_MIN_PHONE_DIGITS = 7


class IdentityHints(BaseModel):
    """Raw participant identifiers as observed in a record."""

    model_config = ConfigDict(frozen=True)

    email: Optional[str] = None
    phone: Optional[str] = None
    display_name: Optional[str] = None
    roles: Tuple[str, ...] = Field(default_factory=tuple)

    @classmethod
    def from_address(cls, address: str, roles: Tuple[str, ...] = ()) -> "IdentityHints":
        """Build hints from an RFC 5322 address such as ``Jane Roe <jane@x.com>``."""
        name, addr = parseaddr(address or "")
        return cls(email=addr or None, display_name=name or None, roles=roles)

    def identity_keys(self) -> List[str]:
        """Normalized keys in resolution order (email first, then phone)."""
        keys: List[str] = []
        email = normalize_email(self.email)
        if email:
            keys.append(f"email:{email}")
        phone = normalize_phone(self.phone)
        if phone:
            keys.append(f"phone:{phone}")
        return keys


def normalize_email(value: Optional[str]) -> Optional[str]:
    """Lowercase bare address; display names and angle brackets are stripped."""
    if not value:
        return None
    _, addr = parseaddr(value.strip())
    addr = addr.strip().lower()
    if "@" not in addr or addr.startswith("@") or addr.endswith("@"):
        return None
    return addr


def normalize_phone(value: Optional[str]) -> Optional[str]:
    """Digits only, keeping a leading ``+``; fewer than seven digits is not a phone number."""
    if not value:
        return None
    stripped = value.strip()
    digits = re.sub(r"\D", "", stripped)
    if len(digits) < _MIN_PHONE_DIGITS:
        return None
    return f"+{digits}" if stripped.startswith("+") else digits


def normalize_org_name(value: Optional[str]) -> Optional[str]:
    """Casefolded organization name with punctuation dropped and whitespace collapsed."""
    if not value:
        return None
    text = unicodedata.normalize("NFKC", value).casefold()
    text = _ORG_PUNCT.sub(" ", text)
    text = _WS.sub(" ", text).strip()
    return text or None
