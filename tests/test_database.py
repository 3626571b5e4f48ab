from unittest.mock import MagicMock

import pytest
from fastapi import HTTPException

import database


def test_run_transaction_uses_a_session(monkeypatch):
    session = MagicMock(name="session")
    session.with_transaction.side_effect = lambda callback: callback(session)
    client = MagicMock(name="client")
    client.start_session.return_value.__enter__.return_value = session
    monkeypatch.setattr(database, "client", client)
    monkeypatch.setattr(database, "db", MagicMock(name="db"))
    monkeypatch.setattr(database, "TRANSACTIONS_ENABLED", True)

    seen = []
    result = database.run_transaction(lambda s: seen.append(s) or "done")

    assert result == "done"
    assert seen == [session]
    session.with_transaction.assert_called_once()


def test_run_transaction_without_transactions(mongo):
    assert database.run_transaction(lambda s: s) is None


def test_collection_requires_configuration(monkeypatch):
    monkeypatch.setattr(database, "db", None)
    with pytest.raises(HTTPException) as exc:
        database.collection("product")
    assert exc.value.status_code == 500


def test_oid_rejects_garbage():
    with pytest.raises(HTTPException) as exc:
        database.oid("nope")
    assert exc.value.status_code == 400


def test_next_sequence_counts_per_name(mongo):
    assert [database.next_sequence("serviceorder") for _ in range(3)] == [1, 2, 3]
    assert database.next_sequence("quote") == 1


def test_create_document_stamps_created_at(mongo):
    _id = database.create_document("customer", {"name": "Zé"})
    doc = mongo.customer.find_one({"_id": database.oid(_id)})
    assert doc["name"] == "Zé"
    assert doc["created_at"] is not None


def test_get_or_404(mongo):
    with pytest.raises(HTTPException) as exc:
        database.get_or_404("customer", "64b000000000000000000000", "Customer")
    assert exc.value.detail == "Customer not found"
