"""API tests over the ASGI app."""

from httpx import AsyncClient

from .conftest import BAS_ENLISTED, E05_BASE_PAY

FREE = {"X-User-ID": "member-free"}
PREMIUM = {"X-User-ID": "member-premium"}

LINE_ITEMS = [
    {"code": "BASE PAY", "amount_cents": E05_BASE_PAY},
    {"code": "BAH", "amount_cents": 180_000},
    {"code": "BAS", "amount_cents": BAS_ENLISTED},
]

# 6.2% and 1.45% of E05_BASE_PAY
TAX_ITEMS = [
    {"code": "FICA", "amount_cents": 22_954},
    {"code": "MEDICARE", "amount_cents": 5_368},
]
NET_PAY = E05_BASE_PAY + 180_000 + BAS_ENLISTED - 22_954 - 5_368


async def create_computed(client: AsyncClient, headers: dict, month: int = 6) -> dict:
    response = await client.post(
        "/api/v1/les/audits",
        json={"month": month, "year": 2025, "line_items": LINE_ITEMS},
        headers=headers,
    )
    assert response.status_code == 201
    audit_id = response.json()["audit_id"]
    response = await client.post(f"/api/v1/les/audits/{audit_id}/recompute", headers=headers)
    assert response.status_code == 200
    return response.json()


class TestHealth:
    async def test_health(self, client):
        response = await client.get("/health")
        assert response.status_code == 200
        body = response.json()
        assert body["database"] == "healthy"
        assert body["version"]

    async def test_live(self, client):
        response = await client.get("/live")
        assert response.json() == {"status": "alive"}


class TestCompute:
    """Test the stateless compute endpoint."""

    async def test_requires_user(self, client):
        response = await client.post(
            "/api/v1/les/audits/compute", json={"month": 6, "year": 2025}
        )
        assert response.status_code == 401

    async def test_free_caller_sees_masked_result(self, client):
        response = await client.post(
            "/api/v1/les/audits/compute",
            json={"month": 6, "year": 2025, "line_items": LINE_ITEMS},
            headers=FREE,
        )

        assert response.status_code == 200
        result = response.json()["result"]
        assert result["tier"] == "free"
        assert result["masked"] is True
        assert result["hidden_count"] == 1
        assert result["waterfall"] is None
        assert result["section_totals"] is None
        assert result["net_delta_cents"] is None

        bah = result["flags"][0]
        assert bah["flag_code"] == "BAH_MISMATCH"
        assert bah["severity"] == "yellow"
        assert bah["delta_cents"] is None
        assert bah["message"] == bah["headline"]
        assert bah["variance_bucket"] == "$5.01-$100.00"

    async def test_premium_caller_sees_everything(self, client):
        response = await client.post(
            "/api/v1/les/audits/compute",
            json={"month": 6, "year": 2025, "line_items": LINE_ITEMS},
            headers=PREMIUM,
        )

        result = response.json()["result"]
        assert result["masked"] is False
        assert result["hidden_count"] == 0
        assert len(result["flags"]) == 3
        assert result["flags"][1]["delta_cents"] == 5_000
        assert result["net_delta_cents"] == 5_000
        assert len(result["waterfall"]) == 3
        assert result["confidence"] == "high"
        assert result["estimated"] is False

    async def test_rejected_items_reported(self, client):
        """A bad item is reported; the rest still reconciles."""
        response = await client.post(
            "/api/v1/les/audits/compute",
            json={
                "month": 6,
                "year": 2025,
                "line_items": LINE_ITEMS + [{"code": "SGLI"}, {"code": "XYZ123", "amount_cents": 500}],
            },
            headers=PREMIUM,
        )

        body = response.json()
        assert response.status_code == 200
        assert body["rejected_items"] == [
            {"index": 3, "raw_code": "SGLI", "reason": "amount is required"}
        ]
        assert [item["code"] for item in body["line_items"]] == [
            "BASE_PAY",
            "BAH",
            "BAS",
            "OTHER",
        ]
        assert body["result"]["section_totals"]["OTHER"] == 500

    async def test_rejected_component_not_reported_missing(self, client):
        """BAH entered without an amount is unverifiable, not missing."""
        response = await client.post(
            "/api/v1/les/audits/compute",
            json={
                "month": 6,
                "year": 2025,
                "line_items": [LINE_ITEMS[0], {"code": "BAH"}, LINE_ITEMS[2]],
            },
            headers=PREMIUM,
        )

        body = response.json()
        assert body["rejected_items"][0]["index"] == 1
        flags = {f["component"]: f for f in body["result"]["flags"]}
        assert flags["BAH"]["flag_code"] == "BAH_UNVERIFIABLE"
        assert "rejected" in flags["BAH"]["message"]
        assert body["result"]["confidence"] == "medium"

    async def test_payroll_taxes_and_net_pay(self, client):
        response = await client.post(
            "/api/v1/les/audits/compute",
            json={
                "month": 6,
                "year": 2025,
                "line_items": LINE_ITEMS + TAX_ITEMS,
                "net_pay_cents": NET_PAY,
            },
            headers=PREMIUM,
        )

        result = response.json()["result"]
        assert [f["flag_code"] for f in result["flags"]] == [
            "BASE_PAY_CORRECT",
            "BAH_MISMATCH",
            "BAS_CORRECT",
            "FICA_CORRECT",
            "MEDICARE_CORRECT",
            "NET_PAY_CORRECT",
        ]
        assert result["net_delta_cents"] == 5_000
        assert result["section_totals"]["TAX"] == 28_322

    async def test_negative_net_pay(self, client):
        response = await client.post(
            "/api/v1/les/audits/compute",
            json={"month": 6, "year": 2025, "net_pay_cents": -1},
            headers=PREMIUM,
        )
        assert response.status_code == 422

    async def test_explicit_profile_with_missing_rate(self, client):
        """An unknown duty station degrades confidence instead of failing."""
        response = await client.post(
            "/api/v1/les/audits/compute",
            json={
                "month": 6,
                "year": 2025,
                "profile": {
                    "paygrade": "E-5",
                    "with_dependents": True,
                    "years_of_service": 6,
                    "location_code": "ZZ999",
                },
                "line_items": LINE_ITEMS,
            },
            headers=PREMIUM,
        )

        result = response.json()["result"]
        assert result["confidence"] == "low"
        assert result["estimated"] is True
        assert result["warnings"][0]["code"] == "RATE_NOT_FOUND"
        bah = next(f for f in result["flags"] if f["component"] == "BAH")
        assert bah["verifiable"] is False

    async def test_unknown_special_pay(self, client):
        response = await client.post(
            "/api/v1/les/audits/compute",
            json={
                "month": 6,
                "year": 2025,
                "profile": {
                    "paygrade": "E-5",
                    "with_dependents": True,
                    "years_of_service": 6,
                    "special_pays": [{"code": "JUMP"}],
                },
            },
            headers=PREMIUM,
        )
        assert response.status_code == 422
        assert response.json()["code"] == "INVALID_INPUT"

    async def test_invalid_month(self, client):
        response = await client.post(
            "/api/v1/les/audits/compute", json={"month": 13, "year": 2025}, headers=FREE
        )
        assert response.status_code == 422


class TestAuditLifecycle:
    """Test persisted audits end to end."""

    async def test_create_and_get(self, client):
        response = await client.post(
            "/api/v1/les/audits",
            json={"month": 6, "year": 2025, "line_items": LINE_ITEMS},
            headers=FREE,
        )

        assert response.status_code == 201
        created = response.json()
        assert created["status"] == "draft"
        assert created["version"] == 1
        assert created["result"]["flags"] == []

        response = await client.get(f"/api/v1/les/audits/{created['audit_id']}", headers=FREE)
        assert response.status_code == 200
        assert [item["code"] for item in response.json()["line_items"]] == [
            "BASE_PAY",
            "BAH",
            "BAS",
        ]

    async def test_get_other_users_audit(self, client):
        audit = await create_computed(client, FREE)
        response = await client.get(f"/api/v1/les/audits/{audit['audit_id']}", headers=PREMIUM)
        assert response.status_code == 404
        assert response.json()["code"] == "NOT_FOUND"

    async def test_recompute_masks_for_free(self, client):
        audit = await create_computed(client, FREE)

        assert audit["status"] == "computed"
        assert audit["result"]["masked"] is True
        assert len(audit["result"]["flags"]) == 2

    async def test_free_save_quota(self, client):
        """First free save succeeds, second in the same month is 402."""
        first = await create_computed(client, FREE, month=5)
        second = await create_computed(client, FREE, month=6)

        response = await client.post(
            f"/api/v1/les/audits/{first['audit_id']}/save", headers=FREE
        )
        assert response.status_code == 200
        body = response.json()
        assert body["audit"]["status"] == "ready_to_submit"
        assert body["quota_count"] == 1

        response = await client.post(
            f"/api/v1/les/audits/{second['audit_id']}/save", headers=FREE
        )
        assert response.status_code == 402
        assert response.json()["code"] == "QUOTA_EXCEEDED"

        response = await client.get(f"/api/v1/les/audits/{second['audit_id']}", headers=FREE)
        assert response.json()["status"] == "computed"

    async def test_premium_saves_unlimited(self, client):
        for month in (4, 5, 6):
            audit = await create_computed(client, PREMIUM, month)
            response = await client.post(
                f"/api/v1/les/audits/{audit['audit_id']}/save", headers=PREMIUM
            )
            assert response.status_code == 200
            assert response.json()["quota_count"] is None

    async def test_save_replay_with_idempotency_key(self, client):
        audit = await create_computed(client, FREE)
        url = f"/api/v1/les/audits/{audit['audit_id']}/save"
        headers = {**FREE, "Idempotency-Key": "save-1"}

        first = await client.post(url, headers=headers)
        replay = await client.post(url, headers=headers)

        assert first.status_code == 200
        assert replay.status_code == 200
        assert replay.json()["replayed"] is True
        assert replay.json()["quota_count"] == 1

    async def test_save_draft_conflicts(self, client):
        response = await client.post(
            "/api/v1/les/audits", json={"month": 6, "year": 2025}, headers=PREMIUM
        )
        audit_id = response.json()["audit_id"]

        response = await client.post(f"/api/v1/les/audits/{audit_id}/save", headers=PREMIUM)
        assert response.status_code == 409
        assert response.json()["code"] == "INVALID_TRANSITION"

    async def test_edit_line_items(self, client):
        audit = await create_computed(client, PREMIUM)
        url = f"/api/v1/les/audits/{audit['audit_id']}/line-items"

        response = await client.put(
            url,
            json={"line_items": LINE_ITEMS[:1], "expected_version": audit["version"]},
            headers=PREMIUM,
        )
        assert response.status_code == 200
        assert response.json()["status"] == "draft"
        assert response.json()["result"]["flags"] == []

        response = await client.put(
            url,
            json={"line_items": LINE_ITEMS, "expected_version": audit["version"]},
            headers=PREMIUM,
        )
        assert response.status_code == 409
        assert response.json()["code"] == "CONCURRENT_MODIFICATION"

    async def test_edit_with_invalid_items(self, client):
        audit = await create_computed(client, PREMIUM)
        response = await client.put(
            f"/api/v1/les/audits/{audit['audit_id']}/line-items",
            json={"line_items": [{"code": "BAS", "amount_cents": -1}]},
            headers=PREMIUM,
        )

        assert response.status_code == 422
        body = response.json()
        assert body["code"] == "INVALID_LINE_ITEMS"
        assert body["context"]["errors"][0]["index"] == 0

    async def test_resolve_flag(self, client):
        audit = await create_computed(client, PREMIUM)
        flag_id = audit["result"]["flags"][1]["flag_id"]

        response = await client.post(
            f"/api/v1/les/audits/{audit['audit_id']}/flags/{flag_id}/resolve",
            json={"resolved": True},
            headers=PREMIUM,
        )
        assert response.status_code == 200
        resolved = [f["resolved"] for f in response.json()["result"]["flags"]]
        assert resolved == [False, True, False]

    async def test_net_pay_persisted_and_cloned(self, client):
        response = await client.post(
            "/api/v1/les/audits",
            json={
                "month": 6,
                "year": 2025,
                "line_items": LINE_ITEMS + TAX_ITEMS,
                "net_pay_cents": NET_PAY - 500,
            },
            headers=PREMIUM,
        )
        audit_id = response.json()["audit_id"]
        assert response.json()["net_pay_cents"] == NET_PAY - 500

        response = await client.post(f"/api/v1/les/audits/{audit_id}/recompute", headers=PREMIUM)
        net = response.json()["result"]["flags"][-1]
        assert net["flag_code"] == "NET_PAY_MISMATCH"
        assert net["severity"] == "red"
        assert net["delta_cents"] == -500

        response = await client.post(f"/api/v1/les/audits/{audit_id}/clone", headers=PREMIUM)
        assert response.json()["net_pay_cents"] == NET_PAY - 500

    async def test_clone_and_delete(self, client):
        audit = await create_computed(client, PREMIUM)
        await client.post(f"/api/v1/les/audits/{audit['audit_id']}/save", headers=PREMIUM)

        response = await client.post(
            f"/api/v1/les/audits/{audit['audit_id']}/clone", headers=PREMIUM
        )
        assert response.status_code == 201
        clone = response.json()
        assert clone["status"] == "draft"
        assert clone["cloned_from_audit_id"] == audit["audit_id"]
        assert len(clone["line_items"]) == 3

        response = await client.delete(f"/api/v1/les/audits/{clone['audit_id']}", headers=PREMIUM)
        assert response.status_code == 204

        response = await client.get(f"/api/v1/les/audits/{clone['audit_id']}", headers=PREMIUM)
        assert response.status_code == 404

        response = await client.get("/api/v1/les/audits", headers=PREMIUM)
        assert response.json()["total"] == 1
