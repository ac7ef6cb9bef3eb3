"""HTTP surface for search jobs."""

import pytest
from fastapi.testclient import TestClient

from api_service import create_app
from job_processor import JobProcessor
from models import JobResults
from sessions import JobSessionStore

USER = {"X-User-Id": "1"}
OTHER_USER = {"X-User-Id": "2"}


class InstantService:
    async def execute(self, job):
        return JobResults(total_companies=1)

    def result_count(self, job, results):
        return results.total_companies


@pytest.fixture
def sessions():
    return JobSessionStore()


@pytest.fixture
def client(job_manager, sessions):
    processor = JobProcessor(job_manager, InstantService(), sessions)
    with TestClient(create_app(job_manager, processor, sessions)) as test_client:
        yield test_client


def create(client, headers=USER, **body):
    body.setdefault("query", "robotics startups in Austin")
    return client.post("/search-jobs", json=body, headers=headers)


class TestServiceEndpoints:

    def test_ping(self, client):
        data = client.get("/ping").json()
        assert data["ping"] == "pong"
        assert "timestamp" in data

    def test_health_reports_processor(self, client):
        data = client.get("/health").json()
        assert data["status"] == "healthy"
        assert data["processor"]["running"] is False


class TestCreateJob:

    def test_create_queues_job(self, client, db):
        response = create(client, priority=4)

        assert response.status_code == 200
        body = response.json()
        assert body["message"] == "Job created and queued for processing"
        stored = db.jobs[body["job_id"]]
        assert stored.status.value == "pending"
        assert stored.priority == 4
        assert stored.user_id == 1

    def test_empty_query_rejected(self, client):
        response = create(client, query="  ")
        assert response.status_code == 400
        assert response.json()["detail"] == "Invalid request: query must be a non-empty string"

    def test_user_header_required(self, client):
        response = client.post("/search-jobs", json={"query": "robotics"})
        assert response.status_code == 422

    def test_unknown_search_config_key_rejected(self, client):
        response = create(client, contact_search_config={"enable_ceo_only": True})
        assert response.status_code == 422

    def test_execute_immediately(self, client, db):
        response = create(client, execute_immediately=True)

        body = response.json()
        assert body["message"] == "Job created and processed"
        assert db.jobs[body["job_id"]].status.value == "completed"

    def test_contact_search_job(self, client, db):
        response = client.post("/search-jobs/contacts", json={"company_ids": [3, 4]}, headers=USER)

        job_id = response.json()["job_id"]
        assert job_id.startswith("contacts-")
        assert db.jobs[job_id].priority == 3
        assert db.jobs[job_id].metadata.company_ids == [3, 4]


class TestReadJobs:

    def test_get_job(self, client):
        job_id = create(client).json()["job_id"]

        response = client.get(f"/search-jobs/{job_id}", headers=USER)

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "pending"
        assert body["progress"]["phase"] == "Queued"
        assert body["max_retries"] == 3

    def test_other_users_job_is_hidden(self, client):
        job_id = create(client).json()["job_id"]
        assert client.get(f"/search-jobs/{job_id}", headers=OTHER_USER).status_code == 404

    def test_unknown_job(self, client):
        assert client.get("/search-jobs/search-missing", headers=USER).status_code == 404

    def test_list_jobs(self, client):
        create(client)
        create(client)
        create(client, headers=OTHER_USER)

        body = client.get("/search-jobs?limit=10", headers=USER).json()

        assert body["total"] == 2
        assert all(job["results"] is None for job in body["jobs"])

    def test_session_jobs(self, client, sessions):
        job_id = create(client, metadata={"session_id": "tab-1"}).json()["job_id"]
        create(client)

        body = client.get("/search-jobs/sessions/tab-1", headers=USER).json()

        assert [job["job_id"] for job in body["jobs"]] == [job_id]
        assert sessions.session_for(job_id) == "tab-1"


class TestCancelJob:

    def test_cancel_pending_job(self, client, db):
        job_id = create(client).json()["job_id"]

        response = client.delete(f"/search-jobs/{job_id}", headers=USER)

        assert response.status_code == 200
        assert db.jobs[job_id].status.value == "failed"
        assert db.jobs[job_id].error == "Job cancelled by user"

    def test_cancel_twice(self, client):
        job_id = create(client).json()["job_id"]
        client.delete(f"/search-jobs/{job_id}", headers=USER)

        response = client.delete(f"/search-jobs/{job_id}", headers=USER)

        assert response.status_code == 400
        assert response.json()["detail"] == "Cannot cancel job with status: failed"

    def test_cancel_unknown_job(self, client):
        assert client.delete("/search-jobs/search-missing", headers=USER).status_code == 404

    def test_cancel_other_users_job(self, client):
        job_id = create(client).json()["job_id"]
        assert client.delete(f"/search-jobs/{job_id}", headers=OTHER_USER).status_code == 404
