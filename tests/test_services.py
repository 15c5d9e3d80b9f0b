from fastapi.testclient import TestClient

from services.web.app import APP_STATE, app


def test_cpu_simulation_and_reset():
    client = TestClient(app)

    # Start clean
    client.post("/simulate/reset")
    assert APP_STATE["cpu_load"] == 0

    r = client.post("/simulate/cpu/10")
    assert r.status_code == 200
    assert APP_STATE["cpu_load"] == 10

    r = client.get("/")
    assert r.status_code == 200
    assert r.json()["load"] == "10%"

    # Out of range levels are clamped
    assert client.post("/simulate/cpu/250").json()["cpu_load"] == 100

    client.post("/simulate/reset")
    assert APP_STATE["cpu_load"] == 0


def test_unhealthy_flag_fails_health_until_reset():
    client = TestClient(app)
    client.post("/simulate/reset")

    r = client.get("/health")
    assert r.status_code == 200
    assert r.json()["status"] == "healthy"

    client.post("/simulate/unhealthy")
    assert client.get("/health").status_code == 503

    client.post("/simulate/reset")
    assert client.get("/health").status_code == 200
