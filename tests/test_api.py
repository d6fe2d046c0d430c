from unittest.mock import MagicMock, patch

from rq.exceptions import NoSuchJobError

BASE = "/v1/admin/daily-quiz"
DROP = "2030-01-15T17:00:00Z"


def compose(client, drop=DROP, **body):
    return client.post(f"{BASE}/compose", json={"dropAtUTC": drop, **body})


class TestHealth:
    def test_liveness(self, client):
        r = client.get("/health")
        assert r.status_code == 200
        assert r.json()["status"] == "healthy"

    def test_composer_health(self, client, make_pool):
        make_pool()
        r = client.get(f"{BASE}/health")
        assert r.status_code == 200
        body = r.json()
        assert body["success"] is True
        assert {"healthy", "issues", "recommendations", "questionPoolStats"} <= set(body["data"])


class TestCompose:
    def test_compose_response_shape(self, client, make_pool):
        make_pool()
        r = compose(client)
        assert r.status_code == 200
        body = r.json()
        assert body["success"] is True
        assert body["data"]["questionCount"] == 5
        assert body["data"]["template"]["version"] == 1
        assert body["data"]["template"]["cdnUrl"].endswith("/quiz/2030-01-15/v1.json")
        assert body["data"]["composition"]["difficultyActual"] == {"easy": 2, "medium": 2, "hard": 1}
        assert "message" in body

    def test_duplicate_is_conflict(self, client, make_pool):
        make_pool()
        assert compose(client).status_code == 200
        r = compose(client)
        assert r.status_code == 409
        assert r.json()["error"]["type"] == "conflict"

    def test_bad_drop_time(self, client):
        r = compose(client, drop="soon")
        assert r.status_code == 400
        assert r.json()["error"]["code"] == "INVALID_DROP_TIME"

    def test_missing_body_field(self, client):
        r = client.post(f"{BASE}/compose", json={"mode": "mix"})
        assert r.status_code == 400
        assert r.json()["error"]["type"] == "validation"

    def test_pool_exhausted(self, client, make_pool):
        make_pool(easy=1, medium=0, hard=0)
        r = compose(client)
        assert r.status_code == 422
        assert r.json()["error"]["type"] == "pool_exhausted"

    def test_preview_returns_template_body(self, client, make_pool):
        make_pool()
        r = client.post(f"{BASE}/preview", json={"dropAtUTC": DROP, "mode": "spotlight"})
        assert r.status_code == 200
        data = r.json()["data"]
        assert data["preview"] is True
        assert data["quizId"] is None
        assert len(data["template"]["body"]["questions"]) == 5


class TestQuizEndpoints:
    def test_lifecycle(self, client, make_pool):
        make_pool()
        quiz_id = compose(client).json()["data"]["quizId"]

        r = client.get(f"{BASE}/quizzes/{quiz_id}")
        assert r.status_code == 200
        assert r.json()["data"]["status"] == "ready"

        r = client.post(f"{BASE}/quizzes/{quiz_id}/regenerate-template")
        assert r.json()["data"]["version"] == 2

        r = client.post(f"{BASE}/quizzes/{quiz_id}/drop")
        assert r.json()["data"]["status"] == "dropped"

        r = client.post(f"{BASE}/quizzes/{quiz_id}/regenerate-template")
        assert r.status_code == 423
        assert r.json()["error"]["code"] == "QUIZ_DROPPED"

        r = client.delete(f"{BASE}/quizzes/{quiz_id}")
        assert r.status_code == 423

    def test_not_found(self, client):
        r = client.get(f"{BASE}/quizzes/does-not-exist")
        assert r.status_code == 404
        assert r.json()["error"]["type"] == "not_found"

    def test_custom_quiz_and_replace(self, client, make_pool):
        pool = make_pool()
        ids = [q.id for q in pool]
        r = client.post(f"{BASE}/quizzes/custom", json={"dropAtUTC": DROP, "questionIds": ids[:5]})
        assert r.status_code == 200
        quiz_id = r.json()["data"]["quizId"]

        r = client.put(f"{BASE}/quizzes/{quiz_id}/questions", json={"questionIds": ids[5:10]})
        assert r.status_code == 200
        assert sorted(r.json()["data"]["questionIds"]) == sorted(ids[5:10])

        r = client.post(f"{BASE}/quizzes/{quiz_id}/swap", json={"oldQuestionId": ids[5], "newQuestionId": ids[0]})
        assert r.status_code == 200
        assert r.json()["data"]["version"] == 3

        r = client.patch(f"{BASE}/quizzes/{quiz_id}/drop-time", json={"newDropAtUTC": "2030-02-01T17:00:00Z"})
        assert r.status_code == 200
        assert r.json()["data"]["dropAtUTC"].startswith("2030-02-01T17:00:00")

        r = client.delete(f"{BASE}/quizzes/{quiz_id}")
        assert r.status_code == 200
        assert r.json()["data"]["deleted"] is True


class TestReporting:
    def test_stats_options_availability_logs(self, client, make_pool):
        make_pool()
        compose(client)
        assert client.get(f"{BASE}/stats").json()["data"]["totalQuizzes"] == 1
        assert "mix" in client.get(f"{BASE}/options").json()["data"]["modes"]
        availability = client.get(f"{BASE}/availability", params={"dropAtUTC": DROP}).json()["data"]
        assert len(availability["difficulties"]) == 3
        logs = client.get(f"{BASE}/logs", params={"limit": 5}).json()["data"]
        assert logs["pagination"]["total"] == 1
        assert logs["logs"][0]["hasErrors"] is False

    def test_log_limit_validated(self, client):
        assert client.get(f"{BASE}/logs", params={"limit": 500}).status_code == 400


class TestJobs:
    def test_enqueue_compose(self, client):
        job = MagicMock(id="job-1")
        with patch("app.api.admin_daily_quiz.queue") as queue:
            queue.enqueue.return_value = job
            r = client.post(f"{BASE}/jobs/compose", json={"dropAtUTC": DROP})
        assert r.status_code == 200
        assert r.json()["data"]["job_id"] == "job-1"
        args = queue.enqueue.call_args[0]
        assert args[1:] == (DROP, "mix")

    def test_job_status(self, client):
        job = MagicMock(id="job-1", meta={"state": "done"})
        job.return_value.return_value = {"quizId": "q1"}
        with patch("app.api.admin_daily_quiz.Job.fetch", return_value=job):
            r = client.get(f"{BASE}/jobs/status", params={"job_id": "job-1"})
        assert r.status_code == 200
        assert r.json() == {"job_id": "job-1", "state": "done", "result": {"quizId": "q1"}, "error": None}

    def test_unknown_job(self, client):
        with patch("app.api.admin_daily_quiz.Job.fetch", side_effect=NoSuchJobError("gone")):
            r = client.get(f"{BASE}/jobs/status", params={"job_id": "nope"})
        assert r.status_code == 404
