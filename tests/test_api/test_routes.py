"""HTTP surface tests."""

from uuid import uuid4

import pytest

from conftest import DROP_OFF, PICKUP


@pytest.mark.asyncio
async def test_health(test_client) -> None:
    response = await test_client.get("/health")

    assert response.status_code == 200
    assert response.json()["status"] == "healthy"


@pytest.mark.asyncio
async def test_assign_then_accept(test_client, order, near_driver) -> None:
    response = await test_client.post("/api/v1/assignments", json={"order_id": str(order.id)})

    assert response.status_code == 201
    body = response.json()
    assert body["status"] == "assigned"
    assert body["driver_id"] == str(near_driver.id)
    assignment_id = body["assignment"]["id"]

    accepted = await test_client.post(
        f"/api/v1/assignments/{assignment_id}/respond",
        json={"driver_id": str(near_driver.id), "decision": "accept"},
    )
    assert accepted.status_code == 200
    assert accepted.json()["outcome"] == "accepted"

    again = await test_client.post(
        f"/api/v1/assignments/{assignment_id}/respond",
        json={"driver_id": str(near_driver.id), "decision": "accept"},
    )
    assert again.status_code == 409
    assert again.json()["outcome"] == "stale"

    fetched = await test_client.get(f"/api/v1/assignments/{assignment_id}")
    assert fetched.json()["status"] == "accepted"


@pytest.mark.asyncio
async def test_assign_without_drivers(test_client, order) -> None:
    response = await test_client.post("/api/v1/assignments", json={"order_id": str(order.id)})

    assert response.status_code == 200
    assert response.json()["status"] == "no_drivers_available"
    assert response.json()["assignment"] is None


@pytest.mark.asyncio
async def test_assign_unknown_order(test_client) -> None:
    response = await test_client.post("/api/v1/assignments", json={"order_id": str(uuid4())})

    assert response.status_code == 404
    assert response.json()["error_code"] == "ORDER_NOT_FOUND"


@pytest.mark.asyncio
async def test_duplicate_assignment_conflict(test_client, order, near_driver, far_driver) -> None:
    await test_client.post("/api/v1/assignments", json={"order_id": str(order.id)})
    response = await test_client.post("/api/v1/assignments", json={"order_id": str(order.id)})

    assert response.status_code == 409
    assert response.json()["error_code"] == "DUPLICATE_ASSIGNMENT"


@pytest.mark.asyncio
async def test_decline_without_reason_is_bad_request(test_client, order, near_driver) -> None:
    body = (await test_client.post("/api/v1/assignments", json={"order_id": str(order.id)})).json()

    response = await test_client.post(
        f"/api/v1/assignments/{body['assignment']['id']}/respond",
        json={"driver_id": str(near_driver.id), "decision": "decline"},
    )

    assert response.status_code == 400
    assert response.json()["error_code"] == "VALIDATION_ERROR"


@pytest.mark.asyncio
async def test_malformed_body_is_bad_request(test_client) -> None:
    response = await test_client.post("/api/v1/assignments", json={"order_id": "not-a-uuid"})

    assert response.status_code == 400
    assert response.json()["error_code"] == "VALIDATION_ERROR"


@pytest.mark.asyncio
async def test_ping_with_bad_latitude(test_client, order, near_driver) -> None:
    body = (await test_client.post("/api/v1/assignments", json={"order_id": str(order.id)})).json()

    response = await test_client.post(
        f"/api/v1/assignments/{body['assignment']['id']}/locations",
        json={"lat": 123.0, "lng": 46.6},
    )

    assert response.status_code == 400


@pytest.mark.asyncio
async def test_unknown_assignment(test_client) -> None:
    response = await test_client.get(f"/api/v1/assignments/{uuid4()}")

    assert response.status_code == 404
    assert response.json()["error_code"] == "ASSIGNMENT_NOT_FOUND"


@pytest.mark.asyncio
async def test_single_order_batch_rejected(test_client, order) -> None:
    response = await test_client.post("/api/v1/batches", json={"order_ids": [str(order.id)]})

    assert response.status_code == 400


@pytest.mark.asyncio
async def test_optimize_route(test_client) -> None:
    response = await test_client.post(
        "/api/v1/routes/optimize",
        json={
            "waypoints": [
                {"lat": PICKUP.lat, "lng": PICKUP.lng, "type": "pickup"},
                {"lat": DROP_OFF.lat, "lng": DROP_OFF.lng, "type": "delivery"},
            ]
        },
    )

    assert response.status_code == 200
    plan = response.json()
    assert [stop["waypoint"]["type"] for stop in plan["stops"]] == ["pickup", "delivery"]
    assert plan["total_distance_km"] > 0


@pytest.mark.asyncio
async def test_optimize_route_needs_two_waypoints(test_client) -> None:
    response = await test_client.post(
        "/api/v1/routes/optimize",
        json={"waypoints": [{"lat": PICKUP.lat, "lng": PICKUP.lng}]},
    )

    assert response.status_code == 400


@pytest.mark.asyncio
async def test_driver_search(test_client, near_driver, far_driver) -> None:
    response = await test_client.get(
        "/api/v1/drivers/search", params={"lat": PICKUP.lat, "lng": PICKUP.lng}
    )

    assert response.status_code == 200
    ids = [candidate["driver"]["id"] for candidate in response.json()]
    assert ids == [str(near_driver.id), str(far_driver.id)]


@pytest.mark.asyncio
async def test_report_inverted_window(test_client) -> None:
    response = await test_client.get(
        "/api/v1/reports/deliveries",
        params={"start_date": "2026-03-02T00:00:00Z", "end_date": "2026-03-01T00:00:00Z"},
    )

    assert response.status_code == 400


@pytest.mark.asyncio
async def test_admin_metrics(test_client, order, near_driver) -> None:
    await test_client.post("/api/v1/assignments", json={"order_id": str(order.id)})

    response = await test_client.get("/api/v1/admin/metrics")

    assert response.status_code == 200
    assert response.json()["assignments_by_status"]["offered"] == 1
