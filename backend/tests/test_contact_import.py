import pytest

from conftest import build_journey, chain
from journeyflow.errors import ValidationError
from journeyflow.services.contact_import import import_contacts, parse_contact_file


def test_parse_normalises_headers_and_drops_blank_rows():
    rows = parse_contact_file("Customer ID,Name\n c1 ,Ana\n,Nobody\nc2,Bo\nc1,Ana again\n")
    assert rows == [{"customer_id": "c1"}, {"customer_id": "c2"}]


def test_parse_accepts_camel_case_header():
    assert parse_contact_file("customerId\n42\n") == [{"customer_id": "42"}]


def test_parse_requires_customer_id_column():
    with pytest.raises(ValidationError):
        parse_contact_file("email\nana@example.com\n")


def test_empty_file_has_no_rows():
    assert parse_contact_file("") == []


async def test_import_enrolls_each_row(executor, store, commerce):
    commerce.add_customer(id="c2", phone="+15550000002")
    await store.save_journey(
        build_journey(
            nodes=[{"id": "t1", "type": "trigger"}, {"id": "g1", "type": "goal"}],
            edges=chain("t1", "g1"),
            entry={"maxEntries": 1},
        )
    )
    await executor.enroll_customer("j1", "c2")

    summary = await import_contacts(executor, "j1", "customer_id\nc1\nc2\n")
    assert summary.rows == 2
    assert summary.enrolled == 1
    assert summary.rejected == 1
