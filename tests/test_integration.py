import pytest
from fastapi.testclient import TestClient

from conftest import START, pickup_order, point
from route_planner.api.dependencies import build_services, get_services
from route_planner.main import create_app
from route_planner.persistence.memory import (
    InMemoryCourierRouteRepository,
    InMemoryOrderPool,
    InMemoryRouteCacheRepository,
)
from route_planner.services.routing.estimator import HaversineEstimator

START_JSON = {"lat": START.lat, "lng": START.lng, "address": "Depot", "city": "Tbilisi"}


@pytest.fixture
def services():
    services = build_services(
        cache_repository=InMemoryRouteCacheRepository(),
        route_repository=InMemoryCourierRouteRepository(),
        order_pool=InMemoryOrderPool(
            [
                pickup_order("O1", point(1), point(2), 6.0),
                pickup_order("O2", point(3), point(4), 8.0),
            ]
        ),
        estimator=HaversineEstimator(30),
    )
    yield services
    services.cache_manager.shutdown()


@pytest.fixture
def api_client(services) -> TestClient:
    app = create_app()
    app.dependency_overrides[get_services] = lambda: services
    return TestClient(app)


def _generate(api_client, courier_id="c1", **overrides):
    payload = {
        "courier_id": courier_id,
        "vehicle_type": "car",
        "starting_point": START_JSON,
        "duration_buckets": [60],
        "include_breaks": False,
    }
    payload.update(overrides)
    return api_client.post("/api/routes/generate", json=payload)


def test_generate_claim_and_deliver(api_client: TestClient):
    generated = _generate(api_client)
    assert generated.status_code == 200
    body = generated.json()
    assert body["version"] == 1
    assert body["from_cache"] is False
    (candidate,) = body["routes"]
    assert candidate["duration_label"] == "1h"
    assert sorted(candidate["order_ids"]) == ["O1", "O2"]

    cached = _generate(api_client)
    assert cached.json()["from_cache"] is True

    claimed = api_client.post(
        "/api/routes/claim", json={"courier_id": "c1", "candidate_route_id": candidate["route_id"]}
    )
    assert claimed.status_code == 201
    route = claimed.json()
    assert route["status"] == "draft"
    route_id = route["route_id"]

    active = api_client.get("/api/routes/active", params={"courier_id": "c1"})
    assert active.json()["route_id"] == route_id

    for stop in route["stops"]:
        stop_id = stop["stop"]["stop_id"]
        arrived = api_client.post(f"/api/routes/{route_id}/stops/{stop_id}/arrive", json={"courier_id": "c1"})
        assert arrived.status_code == 200
        completed = api_client.post(f"/api/routes/{route_id}/stops/{stop_id}/complete", json={"courier_id": "c1"})
        assert completed.status_code == 200

    final = api_client.get(f"/api/routes/{route_id}", params={"courier_id": "c1"}).json()
    assert final["status"] == "completed"
    assert final["actual_earnings"] == pytest.approx(14.0)
    assert final["completed_stops"] == final["total_stops"]

    history = api_client.get("/api/routes/history", params={"courier_id": "c1"}).json()
    assert [item["route_id"] for item in history["routes"]] == [route_id]
    assert api_client.get("/api/routes/active", params={"courier_id": "c1"}).json() is None


def test_conflicts_map_to_409(api_client: TestClient):
    first = _generate(api_client, "c1").json()["routes"][0]
    second = _generate(api_client, "c2").json()["routes"][0]

    ok = api_client.post("/api/routes/claim", json={"courier_id": "c1", "candidate_route_id": first["route_id"]})
    lost = api_client.post("/api/routes/claim", json={"courier_id": "c2", "candidate_route_id": second["route_id"]})

    assert ok.status_code == 201
    assert lost.status_code == 409

    route = ok.json()
    second_stop = route["stops"][1]["stop"]["stop_id"]
    out_of_order = api_client.post(f"/api/routes/{route['route_id']}/stops/{second_stop}/arrive")
    assert out_of_order.status_code == 409


def test_skip_and_abandon(api_client: TestClient, services):
    candidate = _generate(api_client).json()["routes"][0]
    route = api_client.post(
        "/api/routes/claim", json={"courier_id": "c1", "candidate_route_id": candidate["route_id"]}
    ).json()
    first_stop = route["stops"][0]["stop"]["stop_id"]

    skipped = api_client.post(
        f"/api/routes/{route['route_id']}/stops/{first_stop}/skip", json={"reason": "closed"}
    )
    assert skipped.status_code == 200
    assert skipped.json()["skipped_stops"] == 2

    abandoned = api_client.post(f"/api/routes/{route['route_id']}/abandon", json={"reason": "done for today"})
    assert abandoned.status_code == 200
    assert abandoned.json()["status"] == "abandoned"
    assert services.order_pool.claimed_by("O1") is None
    assert services.order_pool.claimed_by("O2") is None


@pytest.mark.parametrize(
    "overrides",
    [
        {"vehicle_type": "hovercraft"},
        {"duration_buckets": [0]},
        {"starting_point": {"lat": 0.0, "lng": 0.0}},
    ],
)
def test_bad_generation_requests_are_400(api_client: TestClient, overrides):
    assert _generate(api_client, **overrides).status_code == 400


def test_schema_violations_are_422(api_client: TestClient):
    response = api_client.post("/api/routes/generate", json={"vehicle_type": "car", "starting_point": START_JSON})
    assert response.status_code == 422


def test_unknown_things_are_404(api_client: TestClient):
    claim = api_client.post("/api/routes/claim", json={"courier_id": "c1", "candidate_route_id": "nope"})
    assert claim.status_code == 404
    assert api_client.get("/api/routes/missing").status_code == 404


def test_invalidate_endpoint(api_client: TestClient):
    _generate(api_client)

    response = api_client.post("/api/routes/invalidate", json={"order_ids": ["O1"]})

    assert response.status_code == 200
    assert response.json() == {"invalidated": ["c1"]}
    assert _generate(api_client).json()["version"] == 2


def test_unexpected_errors_are_500(api_client: TestClient, services, monkeypatch: pytest.MonkeyPatch):
    def boom(courier_id):
        raise RuntimeError("disk on fire")

    monkeypatch.setattr(services.lifecycle, "get_active_route", boom)

    response = api_client.get("/api/routes/active", params={"courier_id": "c1"})

    assert response.status_code == 500
    assert "disk on fire" in response.json()["detail"]


def test_health_endpoints(api_client: TestClient, monkeypatch: pytest.MonkeyPatch):
    from route_planner.config import settings
    from route_planner.db import supabase as supabase_module

    monkeypatch.setattr(settings, "osrm_base_url", None)
    monkeypatch.setattr(supabase_module, "get_supabase_client", lambda: None)

    assert api_client.get("/api/health").json() == {"status": "ok"}
    osrm = api_client.get("/api/health/osrm").json()
    assert osrm["configured"] is False
    assert osrm["fallback"] == "haversine"
    assert api_client.get("/api/health/database").json()["configured"] is False
    assert api_client.get("/").json()["status"] == "running"


def test_cannot_carry_and_remove_order(api_client: TestClient, services):
    candidate = _generate(api_client).json()["routes"][0]
    route = api_client.post(
        "/api/routes/claim", json={"courier_id": "c1", "candidate_route_id": candidate["route_id"]}
    ).json()

    postponed = api_client.post(f"/api/routes/{route['route_id']}/cannot-carry", json={"courier_id": "c1"})
    assert postponed.status_code == 200
    assert postponed.json()["nothing_in_bag"] is True
    assert postponed.json()["route"]["route_id"] == route["route_id"]

    removed = api_client.post("/api/routes/active/orders/O2/remove", json={"courier_id": "c1"})
    assert removed.status_code == 200
    assert removed.json()["order_ids"] == ["O1"]
    assert services.order_pool.claimed_by("O2") is None

    missing = api_client.post("/api/routes/active/orders/O9/remove", json={"courier_id": "c1"})
    assert missing.status_code == 200
    assert missing.json() is None
    assert api_client.post("/api/routes/active/orders/O1/remove", json={}).status_code == 422
