"""
HTTP tests for the FastAPI controller
"""
import pytest
from fastapi.testclient import TestClient

from conftest import face_frames
from liveness_controller.main import create_app


def cells(grid):
    return grid.ravel().tolist()


@pytest.fixture
def client(settings):
    with TestClient(create_app(settings)) as test_client:
        yield test_client


class TestHealth:
    """Test health and performance routes"""

    def test_healthz(self, client):
        response = client.get("/healthz")

        assert response.status_code == 200
        assert response.json() == {"status": "ok", "phase": "idle"}

    def test_performance(self, client):
        payload = client.get("/debug/performance").json()

        assert {"cpu_percent", "memory_percent", "memory_used_mb", "memory_total_mb"} <= set(payload)


class TestVerificationRoutes:
    """Test a verification session over HTTP"""

    def test_live_face_confirms(self, client):
        started = client.post("/verification/start")
        assert started.status_code == 200
        session_id = started.json()["session_id"]

        for grid in face_frames(3):
            response = client.post("/verification/frame", json={"grid": cells(grid)})
            assert response.status_code == 200

        status = client.get("/verification/status").json()
        assert status["phase"] == "complete"
        assert status["is_live"] is True

        results = client.get("/results").json()
        assert results["count"] == 1
        assert results["results"][0]["session_id"] == session_id

    def test_missing_cells_are_null(self, client):
        client.post("/verification/start", json={"direction": "turn_right"})
        grid = cells(face_frames(1)[0])
        grid[:80] = [None] * 80

        payload = client.post("/verification/frame", json={"grid": grid}).json()

        assert payload["last_result"]["verdict"] == "insufficient_data"
        assert payload["last_result"]["sample_count"] == 20

    def test_wrong_grid_size(self, client):
        client.post("/verification/start")
        response = client.post("/verification/frame", json={"grid": [0.5] * 64})

        assert response.status_code == 422

    def test_frame_without_session(self, client):
        response = client.post("/verification/frame", json={"grid": cells(face_frames(1)[0])})

        assert response.status_code == 409

    def test_yaw_without_challenge(self, client):
        client.post("/verification/start")
        response = client.post("/verification/yaw", json={"yaw": 3.0})

        assert response.status_code == 409

    def test_start_twice(self, client):
        client.post("/verification/start")

        assert client.post("/verification/start").status_code == 409

    def test_unknown_direction(self, client):
        response = client.post("/verification/start", json={"direction": "nod"})

        assert response.status_code == 422

    def test_manual_result(self, client):
        assert client.post("/verification/manual", json={"is_live": True}).status_code == 409

        client.post("/verification/start")
        response = client.post("/verification/manual", json={"is_live": True})

        assert response.json() == {"status": "stored"}
        assert client.get("/results").json()["results"][0]["method"] == "manual"


class TestResultRoutes:
    """Test history export and clearing"""

    def test_export_and_clear(self, client):
        client.post("/verification/start")
        client.post("/verification/manual", json={"is_live": False})

        exported = client.get("/results/export")
        assert exported.status_code == 200
        assert exported.json()[0]["is_live"] is False

        assert client.delete("/results").json() == {"status": "cleared"}
        assert client.get("/results").json()["count"] == 0


class TestEnrollmentRoutes:
    """Test enrollment control over HTTP"""

    def test_start_and_cancel(self, client):
        started = client.post("/enrollment/start").json()
        assert started["state"] == "capturing"
        assert started["pose"] == "center"

        frame = client.post("/enrollment/frame", json={"grid": cells(face_frames(1)[0])})
        assert frame.status_code == 200

        cancelled = client.post("/enrollment/cancel").json()
        assert cancelled["state"] == "failed"
        assert cancelled["failure_reason"] == "cancelled"

    def test_enrollment_blocks_verification(self, client):
        client.post("/enrollment/start")

        assert client.post("/verification/start").status_code == 409

    def test_clear_enrollment(self, client):
        response = client.delete("/enrollment")

        assert response.json() == {"status": "cleared", "personalized": False}
        assert client.get("/verification/status").json()["enrollment"]["state"] == "not_enrolled"
