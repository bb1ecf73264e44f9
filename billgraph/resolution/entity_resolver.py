"""Resolve participant identifiers to canonical Person/Organization nodes.

Resolution order is exact email, then exact phone, then create. A person is
only ever matched through a shared normalized key: a phone-only record and
an email-only record for the same human stay separate nodes until someone
merges them by hand. Wrong automatic merges would corrupt billing evidence,
so there is no fuzzy or name-based matching here.

When the hints carry both keys and only one matches, the other key is
attached to the matched person as an alias, provided no other person owns it.
"""

from __future__ import annotations

import uuid
from typing import Optional

from loguru import logger

from billgraph.resolution.identity import (
    IdentityHints,
    normalize_email,
    normalize_org_name,
    normalize_phone,
)
from billgraph.storage.graph_store import GraphStore, GraphTransaction
from billgraph.storage.locks import KeyedLocks
from billgraph.storage.schemas import (
    EdgeType,
    NodeLabel,
    NodeRef,
    OrganizationRef,
    Person,
    PersonRef,
)


def person_id_for(identity_key: str) -> str:
    """Deterministic person id derived from the first identity key."""
    return str(uuid.uuid5(uuid.NAMESPACE_URL, f"person:{identity_key}"))


class EntityResolver:
    """Resolves or creates canonical people and organizations.

    Example:
        >>> resolver = EntityResolver(store)
        >>> ref = resolver.resolve(IdentityHints(email="Jane.Roe@Example.com"))
        >>> ref.person_id == resolver.resolve(IdentityHints(email="jane.roe@example.com")).person_id
        True
    """

    def __init__(self, store: GraphStore, locks: Optional[KeyedLocks] = None) -> None:
        self.store = store
        self.locks = locks or store.locks

    def resolve(self, hints: IdentityHints) -> PersonRef:
        """Return the canonical person for ``hints``, creating one if needed.

        Raises:
            ValueError: If the hints carry neither a usable email nor phone.
        """
        email = normalize_email(hints.email)
        phone = normalize_phone(hints.phone)
        keys = hints.identity_keys()
        if not keys:
            raise ValueError("identity hints need a valid email or phone number")

        with self.locks.hold(*(f"identity:{key}" for key in keys)):
            with self.store.transaction() as tx:
                person, matched_by = self._lookup(tx, email, phone)
                created = person is None
                if person is None:
                    person = Person(id=person_id_for(keys[0]))
                    matched_by = "created"

                changed = self._absorb(tx, person, hints, email, phone)
                if created or changed:
                    tx.put_node(person.ref, person.to_graph_dict())

        logger.debug(
            "Resolved participant",
            person_id=person.id,
            matched_by=matched_by,
            created=created,
        )
        return PersonRef(person_id=person.id, display_name=person.display_name, created=created)

    def get_person(self, person_id: str) -> Optional[Person]:
        with self.store.transaction() as tx:
            data = tx.get_node(NodeRef(label=NodeLabel.PERSON, key=person_id))
        return Person.from_graph_dict(data) if data else None

    def resolve_organization(self, name: str) -> OrganizationRef:
        """Upsert an organization keyed by normalized name."""
        key = normalize_org_name(name)
        if not key:
            raise ValueError("organization name cannot be empty")

        ref = NodeRef(label=NodeLabel.ORGANIZATION, key=key)
        with self.locks.hold(f"organization:{key}"):
            with self.store.transaction() as tx:
                existing = tx.get_node(ref)
                if existing is None:
                    tx.put_node(ref, {"key": key, "name": name.strip()})
                    logger.info("Created organization", key=key)
                    return OrganizationRef(key=key, name=name.strip())
        return OrganizationRef(key=key, name=existing.get("name") or name.strip())

    def link_member(self, person: PersonRef, organization: OrganizationRef) -> bool:
        """Person MEMBER_OF Organization; idempotent, many-to-many."""
        with self.store.transaction() as tx:
            return tx.add_edge(person.ref, EdgeType.MEMBER_OF, organization.ref)

    # -----------------------
    # Internals
    # -----------------------
    def _lookup(
        self, tx: GraphTransaction, email: Optional[str], phone: Optional[str]
    ) -> tuple[Optional[Person], str]:
        if email:
            data = tx.find_node(NodeLabel.PERSON, "emails", email)
            if data:
                return Person.from_graph_dict(data), "email"
        if phone:
            data = tx.find_node(NodeLabel.PERSON, "phones", phone)
            if data:
                return Person.from_graph_dict(data), "phone"
        return None, ""

    def _absorb(
        self,
        tx: GraphTransaction,
        person: Person,
        hints: IdentityHints,
        email: Optional[str],
        phone: Optional[str],
    ) -> bool:
        """Attach unowned keys, fill a missing display name and append roles."""
        changed = False

        if email and email not in person.emails:
            owner = tx.find_node(NodeLabel.PERSON, "emails", email)
            if owner is None:
                person.emails.append(email)
                changed = True
            else:
                logger.info(
                    "Email already belongs to another person; not aliasing",
                    person_id=person.id,
                    owner_id=owner["key"],
                )

        if phone and phone not in person.phones:
            owner = tx.find_node(NodeLabel.PERSON, "phones", phone)
            if owner is None:
                person.phones.append(phone)
                changed = True
            else:
                logger.info(
                    "Phone already belongs to another person; not aliasing",
                    person_id=person.id,
                    owner_id=owner["key"],
                )

        if hints.display_name and not person.display_name:
            person.display_name = hints.display_name.strip()
            changed = True

        for role in hints.roles:
            role = role.strip().lower()
            if role and role not in person.roles:
                person.roles.append(role)
                changed = True

        return changed
