import pytest

from billgraph.resolution.identity import (
    IdentityHints,
    normalize_email,
    normalize_org_name,
    normalize_phone,
)


@pytest.mark.parametrize(
    "value,expected",
    [
        ("Jane.Roe@Example.com", "jane.roe@example.com"),
        ("Jane Roe <Jane.Roe@Example.com>", "jane.roe@example.com"),
        ("  billing@firm.example ", "billing@firm.example"),
        ("not-an-email", None),
        ("@example.com", None),
        ("", None),
        (None, None),
    ],
)
def test_normalize_email(value, expected) -> None:
    assert normalize_email(value) == expected


@pytest.mark.parametrize(
    "value,expected",
    [
        ("+1 (555) 010-2000", "+15550102000"),
        ("555.010.2000", "5550102000"),
        ("555-12", None),
        (None, None),
    ],
)
def test_normalize_phone(value, expected) -> None:
    assert normalize_phone(value) == expected


def test_normalize_org_name() -> None:
    assert normalize_org_name("Acme, Inc.") == "acme inc"
    assert normalize_org_name("  ACME   Inc ") == "acme inc"
    assert normalize_org_name("Smith & Partners") == "smith & partners"
    assert normalize_org_name("...") is None


def test_hints_from_address_and_keys() -> None:
    hints = IdentityHints.from_address("Jane Roe <Jane@Example.com>")

    assert hints.display_name == "Jane Roe"
    assert hints.identity_keys() == ["email:jane@example.com"]


def test_identity_keys_email_before_phone() -> None:
    hints = IdentityHints(email="a@b.com", phone="555 010 2000")

    assert hints.identity_keys() == ["email:a@b.com", "phone:5550102000"]
    assert IdentityHints(display_name="Nobody").identity_keys() == []
