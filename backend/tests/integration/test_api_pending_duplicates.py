"""Integration tests for pending duplicate endpoints."""

from datetime import date
from decimal import Decimal

import pytest

from models import PendingDuplicate, Transaction
from tests.fixtures import create_transaction


@pytest.fixture
def pending(db, linked_account):
    existing = create_transaction(db, linked_account, date(2024, 3, 5), "-12.50", "coffee bar")
    row = PendingDuplicate(
        bank_account_id=linked_account.id,
        existing_transaction_id=existing.id,
        external_id="tx-1",
        booking_date=date(2024, 3, 4),
        amount=Decimal("-12.50"),
        currency="EUR",
        description="Coffee Bar",
    )
    db.add(row)
    db.commit()
    return row


class TestListPendingDuplicates:
    def test_lists_unresolved(self, client, pending):
        response = client.get("/api/pending-duplicates")
        assert response.status_code == 200
        data = response.json()
        assert len(data) == 1
        assert data[0]["externalId"] == "tx-1"
        assert data[0]["bookingDate"] == "2024-03-04"
        assert data[0]["resolved"] is False

    def test_filter_by_account(self, client, pending, bank_account):
        response = client.get(
            "/api/pending-duplicates", params={"bank_account_id": bank_account.id}
        )
        assert response.json() == []


class TestResolvePendingDuplicate:
    def test_keep_existing(self, client, db, pending):
        response = client.post(
            f"/api/pending-duplicates/{pending.id}/resolve", json={"action": "keep_existing"}
        )
        assert response.status_code == 200
        assert response.json()["resolution"] == "kept_existing"
        assert db.query(Transaction).count() == 1
        assert client.get("/api/pending-duplicates").json() == []

    def test_import(self, client, db, pending):
        response = client.post(
            f"/api/pending-duplicates/{pending.id}/resolve", json={"action": "import"}
        )
        assert response.status_code == 200
        assert response.json()["resolution"] == "imported"
        assert db.query(Transaction).count() == 2

    def test_resolve_twice_returns_409(self, client, pending):
        url = f"/api/pending-duplicates/{pending.id}/resolve"
        assert client.post(url, json={"action": "import"}).status_code == 200
        assert client.post(url, json={"action": "import"}).status_code == 409

    def test_unknown_returns_404(self, client):
        response = client.post(
            "/api/pending-duplicates/missing/resolve", json={"action": "import"}
        )
        assert response.status_code == 404

    def test_invalid_action_rejected(self, client, pending):
        response = client.post(
            f"/api/pending-duplicates/{pending.id}/resolve", json={"action": "delete"}
        )
        assert response.status_code == 422
