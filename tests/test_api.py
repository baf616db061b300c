from datetime import datetime, timezone
from typing import Optional

from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from gymdesk.db import Base
from gymdesk.main import app, get_db, get_now

# Noon on 2024-01-15 in Asia/Kuala_Lumpur.
NOW = datetime(2024, 1, 15, 4, 0, tzinfo=timezone.utc)


def _make_client(clock: Optional[dict] = None) -> TestClient:
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    TestingSessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False)
    Base.metadata.create_all(bind=engine)

    def override_get_db():
        db = TestingSessionLocal()
        try:
            yield db
        finally:
            db.close()

    clock = clock if clock is not None else {"now": NOW}
    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_now] = lambda: clock["now"]
    return TestClient(app)


def _open_desk(client: TestClient, cash_float: float = 100.0) -> tuple[int, int]:
    staff_resp = client.post("/api/v1/profiles", json={"full_name": "Aina", "role": "CS"})
    assert staff_resp.status_code == 200
    staff_id = staff_resp.json()["data"]["profile_id"]
    shift_resp = client.post(
        "/api/v1/shifts:start",
        json={"starting_staff_id": staff_id, "starting_cash_float": cash_float},
    )
    assert shift_resp.status_code == 200
    return staff_id, shift_resp.json()["data"]["shift_id"]


def _new_member(client: TestClient, name: str = "Nur Iman") -> int:
    resp = client.post("/api/v1/members", json={"full_name": name})
    assert resp.status_code == 200
    return resp.json()["data"]["member_id"]


def _new_plan(client: TestClient, **overrides) -> int:
    plan = {
        "name": "Monthly",
        "price": 120.0,
        "duration_months": 1,
        "has_registration_fee": False,
        "free_months_on_signup": 0,
    }
    plan.update(overrides)
    resp = client.post("/api/v1/membership-plans", json=plan)
    assert resp.status_code == 200
    return resp.json()["data"]["plan_id"]


def _purchase(client: TestClient, member_id: int, plan_id: int, shift_id: int, staff_id: int, **extra):
    body = {
        "member_id": member_id,
        "plan_id": plan_id,
        "payment_method": "CASH",
        "shift_id": shift_id,
        "processed_by": staff_id,
    }
    body.update(extra)
    return client.post("/api/v1/memberships:purchase", json=body)


def test_health() -> None:
    client = _make_client()
    with client:
        assert client.get("/health").json() == {"status": "healthy"}


def test_one_active_shift_per_staff_member() -> None:
    client = _make_client()
    with client:
        staff_id, shift_id = _open_desk(client)
        again = client.post(
            "/api/v1/shifts:start",
            json={"starting_staff_id": staff_id, "starting_cash_float": 50},
        )
        assert again.status_code == 409

        other = client.post("/api/v1/profiles", json={"full_name": "Ravi", "role": "ADMIN"})
        other_id = other.json()["data"]["profile_id"]
        second = client.post(
            "/api/v1/shifts:start",
            json={"starting_staff_id": other_id, "starting_cash_float": 50},
        )
        assert second.status_code == 200

        active = client.get("/api/v1/shifts/active", params={"staff_id": staff_id}).json()["data"]
        assert [shift["shift_id"] for shift in active] == [shift_id]


def test_member_ids_are_generated_in_sequence() -> None:
    client = _make_client()
    with client:
        first = client.post("/api/v1/members", json={"full_name": "A"}).json()["data"]
        second = client.post("/api/v1/members", json={"full_name": "B"}).json()["data"]
        assert first["member_id_string"] == "0001"
        assert second["member_id_string"] == "0002"
        assert first["status"] == "EXPIRED"
        assert first["days_until_expiry"] is None

        duplicate = client.post("/api/v1/members", json={"full_name": "C", "member_id_string": "0002"})
        assert duplicate.status_code == 409

        found = client.get("/api/v1/members", params={"q": "b"}).json()["data"]
        assert [member["member_id_string"] for member in found] == ["0002"]


def test_purchase_adds_free_months_and_registration_fee() -> None:
    client = _make_client()
    with client:
        staff_id, shift_id = _open_desk(client)
        member_id = _new_member(client)
        plan_id = _new_plan(client, has_registration_fee=True, free_months_on_signup=2)

        resp = _purchase(client, member_id, plan_id, shift_id, staff_id)
        assert resp.status_code == 200
        data = resp.json()["data"]
        assert data["membership"]["start_date"] == "2024-01-15"
        assert data["membership"]["end_date"] == "2024-04-15"
        assert [(t["type"], t["amount"]) for t in data["transactions"]] == [
            ("MEMBERSHIP", 120.0),
            ("REGISTRATION_FEE", 50.0),
        ]

        member = client.get(f"/api/v1/members/{member_id}").json()["data"]
        assert member["status"] == "ACTIVE"
        assert member["days_until_expiry"] == 91


def test_renewal_in_grace_is_backdated_and_expires_previous() -> None:
    clock = {"now": datetime(2023, 12, 10, 4, 0, tzinfo=timezone.utc)}
    client = _make_client(clock)
    with client:
        staff_id, shift_id = _open_desk(client)
        member_id = _new_member(client)
        plan_id = _new_plan(client, has_registration_fee=True)
        first = _purchase(client, member_id, plan_id, shift_id, staff_id).json()["data"]
        assert first["membership"]["end_date"] == "2024-01-10"

        clock["now"] = NOW
        member = client.get(f"/api/v1/members/{member_id}").json()["data"]
        assert member["status"] == "IN_GRACE"
        assert member["days_until_expiry"] == -5

        renewal = _purchase(client, member_id, plan_id, shift_id, staff_id, is_renewal=True)
        data = renewal.json()["data"]
        assert data["membership"]["start_date"] == "2024-01-11"
        assert data["membership"]["end_date"] == "2024-02-11"
        assert [t["type"] for t in data["transactions"]] == ["MEMBERSHIP"]

        member = client.get(f"/api/v1/members/{member_id}").json()["data"]
        assert member["status"] == "ACTIVE"
        assert member["current_membership"]["membership_id"] == data["membership"]["membership_id"]


def test_member_check_in_rules() -> None:
    client = _make_client()
    with client:
        staff_id, shift_id = _open_desk(client)
        member_id = _new_member(client)
        lapsed_id = _new_member(client, "Lapsed")
        plan_id = _new_plan(client)
        _purchase(client, member_id, plan_id, shift_id, staff_id)

        body = {"type": "MEMBER", "member_id": member_id, "shift_id": shift_id, "processed_by": staff_id}
        first = client.post("/api/v1/check-ins", json=body)
        assert first.status_code == 200
        assert first.json()["data"]["member"]["status"] == "ACTIVE"
        assert first.json()["meta"]["warnings"] == []

        again = client.post("/api/v1/check-ins", json=body)
        assert again.status_code == 409
        assert again.json()["detail"] == "duplicate_check_in"

        confirmed = client.post("/api/v1/check-ins", json={**body, "confirm_duplicate": True})
        assert confirmed.status_code == 200
        assert confirmed.json()["meta"]["warnings"] == ["duplicate_check_in"]

        expired = client.post("/api/v1/check-ins", json={**body, "member_id": lapsed_id})
        assert expired.status_code == 403

        stats = client.get("/api/v1/check-ins/stats").json()["data"]
        assert stats["members"] == 2
        assert stats["total"] == 2


def test_grace_member_gets_in_with_warning() -> None:
    clock = {"now": datetime(2023, 12, 10, 4, 0, tzinfo=timezone.utc)}
    client = _make_client(clock)
    with client:
        staff_id, shift_id = _open_desk(client)
        member_id = _new_member(client)
        _purchase(client, member_id, _new_plan(client), shift_id, staff_id)

        clock["now"] = NOW
        resp = client.post(
            "/api/v1/check-ins",
            json={"type": "MEMBER", "member_id": member_id, "shift_id": shift_id, "processed_by": staff_id},
        )
        assert resp.status_code == 200
        assert resp.json()["meta"]["warnings"] == ["membership_in_grace"]
        assert "grace period" in resp.json()["data"]["message"]


def test_coupon_sale_and_check_ins_spend_entries() -> None:
    client = _make_client()
    with client:
        staff_id, shift_id = _open_desk(client)
        template = client.post(
            "/api/v1/coupon-templates",
            json={"name": "2 Entry Pass", "price": 25.0, "max_entries": 2},
        ).json()["data"]
        sale = client.post(
            "/api/v1/coupons:sell",
            json={
                "template_id": template["template_id"],
                "shift_id": shift_id,
                "processed_by": staff_id,
                "payment_method": "CASH",
                "customer_name": "Ali",
            },
        )
        assert sale.status_code == 200
        coupon = sale.json()["data"]["coupon"]
        assert coupon["code"] == "0001"
        assert coupon["expiry_date"] == "2024-04-15"
        assert coupon["entries_remaining"] == 2
        assert sale.json()["data"]["transaction"]["type"] == "COUPON_SALE"

        validation = client.get("/api/v1/check-ins/validate-coupon/0001").json()["data"]
        assert validation["valid"] is True

        body = {"type": "COUPON", "coupon_code": "0001", "shift_id": shift_id, "processed_by": staff_id}
        remaining = []
        for _ in range(2):
            resp = client.post("/api/v1/check-ins", json=body)
            assert resp.status_code == 200
            remaining.append(resp.json()["data"]["coupon"]["entries_remaining"])
        assert remaining == [1, 0]

        spent = client.post("/api/v1/check-ins", json=body)
        assert spent.status_code == 403
        assert client.get("/api/v1/coupons/0001").json()["data"]["entries_remaining"] == 0


def test_walk_in_rates_come_from_settings() -> None:
    client = _make_client()
    with client:
        staff_id, shift_id = _open_desk(client)
        body = {"type": "WALK_IN", "shift_id": shift_id, "processed_by": staff_id}
        regular = client.post("/api/v1/check-ins", json=body).json()["data"]
        assert regular["transaction"]["amount"] == 15.0
        assert regular["check_in"]["transaction_id"] == regular["transaction"]["transaction_id"]

        student = client.post("/api/v1/check-ins", json={**body, "type": "WALK_IN_STUDENT"}).json()["data"]
        assert student["transaction"]["amount"] == 8.0
        assert student["transaction"]["type"] == "WALK_IN"

        assert client.put("/api/v1/settings/walk_in_rate", json={"value": "20"}).status_code == 200
        raised = client.post("/api/v1/check-ins", json=body).json()["data"]
        assert raised["transaction"]["amount"] == 20.0

        stats = client.get("/api/v1/check-ins/stats", params={"shift_id": shift_id}).json()["data"]
        assert stats["walk_ins"] == 3
        assert stats["revenue"] == 43.0


def test_sale_rejects_oversell_without_side_effects() -> None:
    client = _make_client()
    with client:
        staff_id, shift_id = _open_desk(client)
        product = client.post(
            "/api/v1/products",
            json={"name": "Protein Bar", "price": 6.5, "current_stock": 2},
        ).json()["data"]
        sale = {
            "shift_id": shift_id,
            "processed_by": staff_id,
            "payment_method": "CASH",
            "items": [{"product_id": product["product_id"], "quantity": 3}],
        }
        oversell = client.post("/api/v1/pos/sales", json=sale)
        assert oversell.status_code == 409
        assert client.get(f"/api/v1/products/{product['product_id']}").json()["data"]["current_stock"] == 2
        assert client.get("/api/v1/transactions", params={"shift_id": shift_id}).json()["data"] == []

        sale["items"] = [{"product_id": product["product_id"], "quantity": 2}]
        done = client.post("/api/v1/pos/sales", json=sale)
        assert done.status_code == 200
        assert done.json()["data"]["transaction"]["amount"] == 13.0
        assert done.json()["data"]["stock_movements"][0]["change_quantity"] == -2
        assert client.get(f"/api/v1/products/{product['product_id']}").json()["data"]["current_stock"] == 0

        low = client.get("/api/v1/products/low-stock").json()["data"]
        assert [p["product_id"] for p in low] == [product["product_id"]]

        restock = client.post(
            "/api/v1/stock-movements:adjust",
            json={"created_by": staff_id, "items": [{"product_id": product["product_id"], "change_quantity": 12}]},
        )
        assert restock.status_code == 200
        assert restock.json()["data"][0]["current_stock"] == 12

        report = client.get(
            "/api/v1/reports/sales",
            params={"start_date": "2024-01-15", "end_date": "2024-01-15"},
        ).json()["data"]
        assert report["total_sales"] == 1
        assert report["total_revenue"] == 13.0
        assert report["top_products"][0]["quantity"] == 2


def test_end_shift_reconciles_and_locks_out_new_sales() -> None:
    client = _make_client()
    with client:
        staff_id, shift_id = _open_desk(client, cash_float=100.0)
        member_id = _new_member(client)
        plan_id = _new_plan(client, has_registration_fee=True)
        _purchase(client, member_id, plan_id, shift_id, staff_id)
        client.post("/api/v1/check-ins", json={"type": "WALK_IN", "shift_id": shift_id, "processed_by": staff_id})

        closed = client.post(
            f"/api/v1/shifts/{shift_id}/end",
            json={"ending_staff_id": staff_id, "ending_cash_balance": 280.0, "handover_notes": "short"},
        )
        assert closed.status_code == 200
        data = closed.json()["data"]
        assert data["status"] == "CLOSED"
        assert data["total_revenue"] == 185.0
        assert data["system_calculated_cash"] == 285.0
        assert data["cash_discrepancy"] == -5.0
        assert closed.json()["meta"]["warnings"] == ["Cash discrepancy: -RM5.00"]

        late = client.post(
            "/api/v1/check-ins",
            json={"type": "WALK_IN", "shift_id": shift_id, "processed_by": staff_id},
        )
        assert late.status_code == 409
        assert late.json()["detail"] == "shift is closed"

        twice = client.post(
            f"/api/v1/shifts/{shift_id}/end",
            json={"ending_staff_id": staff_id, "ending_cash_balance": 285.0},
        )
        assert twice.status_code == 409

        history = client.get("/api/v1/shifts/history").json()["data"]
        assert [shift["shift_id"] for shift in history] == [shift_id]

        stats = client.get(f"/api/v1/shifts/{shift_id}/stats").json()["data"]
        assert stats["total_transactions"] == 3
        assert stats["check_ins"] == 1


def test_balanced_close_has_no_warning() -> None:
    client = _make_client()
    with client:
        staff_id, shift_id = _open_desk(client, cash_float=100.0)
        closed = client.post(
            f"/api/v1/shifts/{shift_id}/end",
            json={"ending_staff_id": staff_id, "ending_cash_balance": 100.0},
        )
        assert closed.json()["data"]["cash_discrepancy"] == 0.0
        assert closed.json()["meta"]["warnings"] == []
        assert closed.json()["data"]["message"] == "Shift ended successfully. Cash reconciliation perfect!"


def test_settings_round_trip_and_validation() -> None:
    client = _make_client()
    with client:
        settings = client.get("/api/v1/settings").json()["data"]
        assert settings["grace_period_days"] == 7

        settings["grace_period_days"] = 3
        saved = client.put("/api/v1/settings", json=settings)
        assert saved.status_code == 200
        assert client.get("/api/v1/settings/grace_period_days").json()["data"]["value"] == "3"

        settings["grace_period_days"] = -1
        assert client.put("/api/v1/settings", json=settings).status_code == 422
        assert client.put("/api/v1/settings/grace_period_days", json={"value": "-1"}).status_code == 422
        assert client.get("/api/v1/settings").json()["data"]["grace_period_days"] == 3


def test_plan_in_use_cannot_be_deleted() -> None:
    client = _make_client()
    with client:
        staff_id, shift_id = _open_desk(client)
        plan_id = _new_plan(client)
        spare_id = _new_plan(client, name="Annual", price=1000.0, duration_months=12)
        _purchase(client, _new_member(client), plan_id, shift_id, staff_id)

        assert client.delete(f"/api/v1/membership-plans/{plan_id}").status_code == 409
        removed = client.delete(f"/api/v1/membership-plans/{spare_id}")
        assert removed.status_code == 200
        assert removed.json()["data"]["is_active"] is False

        active = client.get("/api/v1/membership-plans").json()["data"]
        assert [plan["plan_id"] for plan in active] == [plan_id]


def test_dashboard_stats() -> None:
    clock = {"now": datetime(2023, 12, 10, 4, 0, tzinfo=timezone.utc)}
    client = _make_client(clock)
    with client:
        staff_id, shift_id = _open_desk(client)
        monthly_id = _new_plan(client)
        annual_id = _new_plan(client, name="Annual", price=1000.0, duration_months=12)
        _purchase(client, _new_member(client, "In Grace"), monthly_id, shift_id, staff_id)

        clock["now"] = datetime(2023, 12, 20, 4, 0, tzinfo=timezone.utc)
        _purchase(client, _new_member(client, "Ends Soon"), monthly_id, shift_id, staff_id)

        clock["now"] = NOW
        _purchase(client, _new_member(client, "Fresh"), annual_id, shift_id, staff_id)
        _new_member(client, "Never Paid")
        client.post("/api/v1/check-ins", json={"type": "WALK_IN", "shift_id": shift_id, "processed_by": staff_id})
        client.post("/api/v1/products", json={"name": "Towel", "price": 5.0, "current_stock": 3})
        client.post("/api/v1/products", json={"name": "Water", "price": 2.0, "current_stock": 50})

        stats = client.get("/api/v1/dashboard/stats").json()["data"]
        assert stats == {
            "active_members": 2,
            "today_revenue": 1015.0,
            "active_shifts": 1,
            "today_check_ins": 1,
            "expiring_memberships": 1,
            "low_stock_products": 1,
        }


def test_update_staff_profile() -> None:
    client = _make_client()
    with client:
        staff_id, _ = _open_desk(client)
        updated = client.patch(
            f"/api/v1/profiles/{staff_id}",
            json={"full_name": "Aina Binti Ali", "role": "ADMIN"},
        )
        assert updated.status_code == 200
        assert updated.json()["data"] == {"profile_id": staff_id, "full_name": "Aina Binti Ali", "role": "ADMIN"}

        assert client.patch(f"/api/v1/profiles/{staff_id}", json={"full_name": "  "}).status_code == 400
        assert client.patch(f"/api/v1/profiles/{staff_id}", json={"role": None}).status_code == 400
        assert client.patch(f"/api/v1/profiles/{staff_id}", json={"role": "OWNER"}).status_code == 422
        assert client.patch("/api/v1/profiles/999", json={"role": "CS"}).status_code == 404
        assert client.get(f"/api/v1/profiles/{staff_id}").json()["data"]["role"] == "ADMIN"


def test_product_update_ignores_nulls() -> None:
    client = _make_client()
    with client:
        product = client.post(
            "/api/v1/products",
            json={"name": "Protein Bar", "price": 6.5, "current_stock": 4},
        ).json()["data"]
        url = f"/api/v1/products/{product['product_id']}"

        resp = client.patch(url, json={"name": None, "price": None, "is_active": None})
        assert resp.status_code == 200
        assert resp.json()["data"]["name"] == "Protein Bar"
        assert resp.json()["data"]["price"] == 6.5
        assert resp.json()["data"]["is_active"] is True

        assert client.patch(url, json={"name": " "}).status_code == 400
        assert client.patch(url, json={"price": 7.0}).json()["data"]["price"] == 7.0


def test_expired_coupon_is_refused_and_keeps_entries() -> None:
    clock = {"now": NOW}
    client = _make_client(clock)
    with client:
        staff_id, shift_id = _open_desk(client)
        template = client.post(
            "/api/v1/coupon-templates",
            json={"name": "5 Entry Pass", "price": 60.0, "max_entries": 5},
        ).json()["data"]
        coupon = client.post(
            "/api/v1/coupons:sell",
            json={
                "template_id": template["template_id"],
                "shift_id": shift_id,
                "processed_by": staff_id,
                "payment_method": "CASH",
            },
        ).json()["data"]["coupon"]
        assert coupon["expiry_date"] == "2024-04-15"

        clock["now"] = datetime(2024, 4, 16, 4, 0, tzinfo=timezone.utc)
        resp = client.post(
            "/api/v1/check-ins",
            json={"type": "COUPON", "coupon_code": coupon["code"], "shift_id": shift_id, "processed_by": staff_id},
        )
        assert resp.status_code == 403
        assert resp.json()["detail"] == "Coupon has expired."
        assert client.get(f"/api/v1/coupons/{coupon['code']}").json()["data"]["entries_remaining"] == 5
        assert client.get("/api/v1/check-ins", params={"shift_id": shift_id}).json()["data"] == []


def test_generated_coupon_code_skips_custom_codes() -> None:
    client = _make_client()
    with client:
        staff_id, shift_id = _open_desk(client)
        template = client.post(
            "/api/v1/coupon-templates",
            json={"name": "Day Pass", "price": 15.0, "max_entries": 1},
        ).json()["data"]
        sale = {
            "template_id": template["template_id"],
            "shift_id": shift_id,
            "processed_by": staff_id,
            "payment_method": "CASH",
        }
        codes = [
            client.post("/api/v1/coupons:sell", json=sale).json()["data"]["coupon"]["code"],
            client.post("/api/v1/coupons:sell", json={**sale, "code": "VIP"}).json()["data"]["coupon"]["code"],
        ]
        after_custom = client.post("/api/v1/coupons:sell", json=sale)
        assert after_custom.status_code == 200
        codes.append(after_custom.json()["data"]["coupon"]["code"])
        assert codes == ["0001", "VIP", "0002"]


def test_student_walk_in_note_is_on_check_in_and_payment() -> None:
    client = _make_client()
    with client:
        staff_id, shift_id = _open_desk(client)
        data = client.post(
            "/api/v1/check-ins",
            json={"type": "WALK_IN_STUDENT", "shift_id": shift_id, "processed_by": staff_id, "notes": "UM card"},
        ).json()["data"]
        assert data["transaction"]["notes"] == "Student walk-in. UM card"
        assert data["check_in"]["notes"] == "Student walk-in. UM card"


def test_sales_report_keeps_price_charged_at_sale() -> None:
    client = _make_client()
    with client:
        staff_id, shift_id = _open_desk(client)
        product = client.post(
            "/api/v1/products",
            json={"name": "Protein Bar", "price": 6.5, "current_stock": 10},
        ).json()["data"]
        client.post(
            "/api/v1/pos/sales",
            json={
                "shift_id": shift_id,
                "processed_by": staff_id,
                "payment_method": "CASH",
                "items": [{"product_id": product["product_id"], "quantity": 2}],
            },
        )
        client.patch(f"/api/v1/products/{product['product_id']}", json={"price": 9.0})

        report = client.get(
            "/api/v1/reports/sales",
            params={"start_date": "2024-01-15", "end_date": "2024-01-15"},
        ).json()["data"]
        assert report["total_revenue"] == 13.0
        assert report["top_products"][0]["revenue"] == 13.0
