"""
End-to-end tests of the gateway application, lifespan included.
"""

import json

import pytest
from fastapi.testclient import TestClient

from gateway import __version__
from gateway.errors import RouteConflict
from gateway.main import create_app, lifespan

TRIVIA_PLUGIN = """
    config = {
        "name": "trivia",
        "author": "tests",
        "description": "Fetches random trivia questions",
        "method": "get",
        "category": "others",
        "link": ["/trivia?limit=1"],
    }

    async def initialize(request, response, env):
        limit = int(request.query_params.get("limit", 1))
        response.json({
            "count": limit,
            "trivia": [{"question": "q", "options": ["a", "b"], "answer": "a"}] * limit,
        })
"""

BROKEN_PLUGIN = """
    config = {"name": "broken", "link": ["/broken"], "category": "tests"}

    def initialize(request, response, env):
        raise RuntimeError("database password is hunter2")
"""


@pytest.fixture
def app_factory(gateway_settings, write_plugin, tmp_path):
    def _build(plugins=None, config=None):
        for filename, source in (plugins or {"trivia.py": TRIVIA_PLUGIN}).items():
            write_plugin(filename, source)
        (tmp_path / "config.json").write_text(json.dumps(config or {"name": "Test Gateway"}))
        return create_app(gateway_settings)

    return _build


def test_plugin_request_is_served_and_counted(app_factory):
    with TestClient(app_factory()) as client:
        response = client.get("/api/trivia", params={"limit": 1})
        assert response.status_code == 200
        assert response.json()["count"] == 1
        assert response.json()["trivia"][0]["answer"] == "a"

        stats = client.get("/stats").json()
        assert stats == {
            "totalRequests": 1,
            "mostUsedToday": {"name": "trivia", "category": "others"},
        }
        usage = client.app.state.usage.snapshot()
        assert dict(usage.usage_by_key) == {"trivia": 1}


def test_unknown_plugin_is_404_and_unattributed(app_factory):
    with TestClient(app_factory()) as client:
        response = client.get("/api/nonexistent")

        assert response.status_code == 404
        assert response.json()["error"] == "Not Found"
        usage = client.app.state.usage.snapshot()
        assert usage.total_requests == 1
        assert dict(usage.usage_by_key) == {}


def test_pages_outside_prefix_are_not_metered(app_factory):
    with TestClient(app_factory()) as client:
        response = client.get("/no/such/page")

        assert response.status_code == 404
        assert response.json() == {"error": "Not Found", "message": "Page not found"}
        assert client.app.state.usage.snapshot().total_requests == 0


def test_api_list(app_factory):
    with TestClient(app_factory(config={"name": "Test Gateway", "port": 4000})) as client:
        body = client.get("/api-list").json()

    assert body["apis"] == [
        {
            "name": "trivia",
            "description": "Fetches random trivia questions",
            "endpoint": "api/trivia?limit=1",
            "category": "others",
        }
    ]
    assert body["config"] == {"name": "Test Gateway", "port": 4000}


def test_failing_plugin_is_isolated(app_factory):
    app = app_factory(plugins={"trivia.py": TRIVIA_PLUGIN, "broken.py": BROKEN_PLUGIN})
    with TestClient(app) as client:
        failed = client.get("/api/broken")
        ok = client.get("/api/trivia")

    assert failed.status_code == 500
    assert set(failed.json()) == {"error", "message"}
    assert "hunter2" not in failed.text
    assert ok.status_code == 200


def test_counts_survive_restart(app_factory, tmp_path):
    with TestClient(app_factory()) as client:
        client.get("/api/trivia")
        client.get("/api/trivia")
        client.get("/api/missing")

    saved = json.loads((tmp_path / "db.json").read_text())
    assert saved == {"totalRequests": 3, "usageCounts": {"trivia": 2}}

    with TestClient(app_factory()) as client:
        client.get("/api/trivia")
        stats = client.get("/stats").json()

    assert stats["totalRequests"] == 4


def test_corrupt_snapshot_starts_from_zero(app_factory, tmp_path):
    (tmp_path / "db.json").write_text("{corrupt")

    with TestClient(app_factory()) as client:
        stats = client.get("/stats").json()

    assert stats == {"totalRequests": 0, "mostUsedToday": {"name": "N/A", "category": "N/A"}}


@pytest.mark.asyncio
async def test_route_conflict_stops_startup(app_factory):
    app = app_factory(
        plugins={
            "trivia.py": TRIVIA_PLUGIN,
            "trivia_clone.py": TRIVIA_PLUGIN.replace('"name": "trivia"', '"name": "trivia clone"'),
        }
    )

    with pytest.raises(RouteConflict) as exc_info:
        async with lifespan(app):
            pass

    assert {exc_info.value.plugin_name, exc_info.value.existing_name} == {"trivia", "trivia clone"}


def test_broken_plugin_file_does_not_stop_startup(app_factory):
    app = app_factory(plugins={"trivia.py": TRIVIA_PLUGIN, "empty.py": "x = 1\n"})
    with TestClient(app) as client:
        status = client.get("/plugins/status").json()
        assert client.get("/api/trivia").status_code == 200

    assert status["registered_plugins"] == 1
    assert "empty.py" in status["failed"]


def test_health_and_gateway_headers(app_factory):
    with TestClient(app_factory()) as client:
        response = client.get("/health")

    assert response.status_code == 200
    assert response.json()["status"] == "healthy"
    assert response.headers["X-Gateway-Version"] == __version__
    assert response.headers["X-Request-ID"]


def test_json_is_pretty_printed(app_factory):
    with TestClient(app_factory()) as client:
        response = client.get("/stats")

    assert response.text.startswith('{\n  "totalRequests"')
