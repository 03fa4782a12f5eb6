"""
API tests: the HTTP surface calling the ledger, inventory and payment rules.
"""

from datetime import datetime, timedelta, timezone

from main import app, get_shop

from conftest import OTHER_SHOP_ID


def create_customer(client, **kw):
    payload = {"name": "Ramesh", "phone": "9876543210", "credit_limit": 5000}
    payload.update(kw)
    return client.post("/api/customers", json=payload)


def create_product(client, **kw):
    payload = {"name": "Parle-G", "cost_price": 4, "selling_price": 5, "current_stock": 50, "min_stock": 10}
    payload.update(kw)
    return client.post("/api/products", json=payload)


def test_root(client):
    assert client.get("/").json() == {"message": "ShopSmart Backend is running"}


class TestCustomersApi:
    def test_create_and_get(self, client):
        res = create_customer(client)
        assert res.status_code == 201
        body = res.json()
        assert body["available_credit"] == 5000
        assert body["payment_score"] == 100

        got = client.get(f"/api/customers/{body['id']}").json()
        assert got["name"] == "Ramesh"

    def test_duplicate_phone_conflicts(self, client):
        create_customer(client)
        assert create_customer(client, name="Another").status_code == 409

    def test_invalid_gst_is_422(self, client):
        res = create_customer(client, gst_number="NOT-A-GST")
        assert res.status_code == 422

    def test_patch_cannot_break_pan(self, client):
        cid = create_customer(client).json()["id"]
        assert client.patch(f"/api/customers/{cid}", json={"pan_number": "bad"}).status_code == 422
        res = client.patch(f"/api/customers/{cid}", json={"payment_terms": "net_15"})
        assert res.status_code == 200
        assert res.json()["payment_due_days"] == 15

    def test_invalid_id(self, client):
        assert client.get("/api/customers/not-an-id").status_code == 400

    def test_other_shop_sees_nothing(self, client):
        cid = create_customer(client).json()["id"]
        app.dependency_overrides[get_shop] = lambda: OTHER_SHOP_ID
        assert client.get(f"/api/customers/{cid}").status_code == 404
        assert client.get("/api/customers").json() == []


class TestTransactionsApi:
    def test_credit_payment_and_delete(self, client):
        cid = create_customer(client).json()["id"]

        res = client.post("/api/transactions", json={"customer_id": cid, "type": "credit", "amount": 700})
        assert res.status_code == 201
        assert res.json()["customer"]["balance"] == 700

        res = client.post("/api/transactions", json={"customer_id": cid, "type": "payment", "amount": 200,
                                                     "payment_method": "upi"})
        txn_id = res.json()["transaction"]["id"]
        assert res.json()["customer"]["balance"] == 500

        assert client.delete(f"/api/customers/{cid}").status_code == 400

        res = client.delete(f"/api/transactions/{txn_id}")
        assert res.json()["customer"]["balance"] == 700

        today = client.get("/api/transactions/today").json()
        assert today["credit"] == {"total": 700, "count": 1}
        assert today["payment"]["count"] == 0

        history = client.get(f"/api/customers/{cid}/transactions").json()
        assert len(history) == 1

    def test_non_positive_amount_rejected(self, client):
        cid = create_customer(client).json()["id"]
        res = client.post("/api/transactions", json={"customer_id": cid, "type": "credit", "amount": -5})
        assert res.status_code == 422


class TestProductsApi:
    def test_stock_adjustments(self, client):
        pid = create_product(client).json()["id"]

        res = client.patch(f"/api/products/{pid}/stock", json={"type": "remove", "adjustment": 45})
        assert res.status_code == 200
        assert res.json()["previous_stock"] == 50
        assert res.json()["stock_status"] == "low_stock"

        res = client.patch(f"/api/products/{pid}/stock", json={"type": "remove", "adjustment": 6})
        assert res.status_code == 400

        low = client.get("/api/products/alerts/low-stock").json()
        assert [p["id"] for p in low] == [pid]

    def test_batches_and_expiry_alert(self, client):
        pid = create_product(client, has_expiry=True, current_stock=0).json()["id"]
        expiry = (datetime.now(timezone.utc) + timedelta(days=10)).isoformat()

        res = client.post(f"/api/products/{pid}/batches",
                          json={"batch_number": "LOT-7", "quantity": 24, "expiry_date": expiry})
        assert res.status_code == 201
        assert res.json()["current_stock"] == 24
        assert res.json()["expiry_status"] == "expiring_soon"

        expiring = client.get("/api/products/alerts/expiring", params={"days": 15}).json()
        assert [p["id"] for p in expiring] == [pid]
        assert client.get("/api/products/alerts/expiring", params={"days": 5}).json() == []

        res = client.post(f"/api/products/{pid}/batches/refresh")
        assert res.json()["batches"][0]["status"] == "expiring_soon"

    def test_soft_delete(self, client):
        pid = create_product(client, sku="PG-100").json()["id"]
        assert client.delete(f"/api/products/{pid}").json() == {"status": "ok"}
        assert client.get("/api/products").json() == []
        assert client.get("/api/products", params={"include_inactive": True}).json()[0]["is_active"] is False

    def test_duplicate_sku(self, client):
        create_product(client, sku="PG-100")
        assert create_product(client, sku="PG-100", name="Other").status_code == 409

    def test_sale_reduces_stock(self, client):
        pid = create_product(client).json()["id"]
        res = client.post("/api/sales", json={"items": [{"product_id": pid, "quantity": 3}]})
        assert res.status_code == 201
        assert res.json()["total_amount"] == 15
        assert client.get(f"/api/products/{pid}").json()["current_stock"] == 47


class TestPaymentSchedulesApi:
    def test_installment_plan_and_payment(self, client):
        cid = create_customer(client).json()["id"]
        due = (datetime.now(timezone.utc) + timedelta(days=3)).isoformat()

        res = client.post("/api/payment-schedules", json={
            "customer_id": cid, "total_amount": 900, "due_date": due,
            "number_of_installments": 3, "installment_frequency": "monthly",
        })
        assert res.status_code == 201
        schedule = res.json()
        assert schedule["schedule_type"] == "installment"
        assert [i["amount"] for i in schedule["installments"]] == [300, 300, 300]

        res = client.post(f"/api/payment-schedules/{schedule['id']}/payments",
                          json={"amount": 300, "installment_index": 0})
        assert res.json()["installments"][0]["status"] == "paid"
        assert res.json()["status"] == "partial"
        assert res.json()["remaining_amount"] == 600

        upcoming = client.get("/api/payment-schedules/upcoming").json()
        assert [s["id"] for s in upcoming] == [schedule["id"]]

        res = client.post(f"/api/payment-schedules/{schedule['id']}/payments",
                          json={"amount": 100, "installment_index": 7})
        assert res.status_code == 400

    def test_overdue_and_late_fee(self, client):
        cid = create_customer(client).json()["id"]
        due = (datetime.now(timezone.utc) - timedelta(days=2)).isoformat()
        sid = client.post("/api/payment-schedules", json={
            "customer_id": cid, "total_amount": 1000, "due_date": due,
            "late_fee_enabled": True, "late_fee_type": "percentage", "late_fee_value": 10,
        }).json()["id"]

        overdue = client.get("/api/payment-schedules/overdue").json()
        assert [s["id"] for s in overdue] == [sid]

        res = client.post(f"/api/payment-schedules/{sid}/late-fee")
        assert res.json()["late_fee_applied"] == 100
        assert res.json()["remaining_amount"] == 1100

        res = client.post(f"/api/payment-schedules/{sid}/cancel")
        assert res.json()["status"] == "cancelled"
        assert client.get("/api/payment-schedules/overdue").json() == []


def test_stats_summary(client):
    cid = create_customer(client).json()["id"]
    client.post("/api/transactions", json={"customer_id": cid, "type": "credit", "amount": 250})
    pid = create_product(client, current_stock=2).json()["id"]
    client.post("/api/sales", json={"items": [{"product_id": pid, "quantity": 1}]})

    summary = client.get("/api/stats/summary").json()
    assert summary["total_receivable"] == 250
    assert summary["sales_today"] == 5
    assert summary["low_stock_count"] == 1
    assert summary["ledger_today"]["credit"]["total"] == 250
