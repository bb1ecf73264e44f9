"""Entity resolution package."""

from billgraph.resolution.entity_resolver import EntityResolver, person_id_for
from billgraph.resolution.identity import (
    IdentityHints,
    normalize_email,
    normalize_org_name,
    normalize_phone,
)

__all__ = [
    "EntityResolver",
    "IdentityHints",
    "normalize_email",
    "normalize_org_name",
    "normalize_phone",
    "person_id_for",
]
