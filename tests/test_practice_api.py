"""API tests for the CBT practice flow."""

from datetime import datetime, timedelta

import pytest
from sqlalchemy import func, select

from cravins import models, tasks
from cravins.gemini_client import GeminiClient
from cravins.main import app
from cravins.tasks import get_llm_factory

from conftest import headers_for, make_question, make_subject, make_user


def _start(client, headers, subject, total=3, **extra):
    body = {"subjects": [subject.id], "difficulty": "EASY", "total_questions": total}
    body.update(extra)
    return client.post("/practice/start", json=body, headers=headers)


def _answer_key(db, question_ids):
    rows = db.execute(
        select(models.Question.id, models.Question.correct_answer).where(models.Question.id.in_(question_ids))
    ).all()
    return dict(rows)


class TestSubjectsAndTopics:
    def test_subjects_lists_counts(self, client, db):
        subject = make_subject(db, topics=["Algebra", "Geometry"])
        make_question(db, subject)
        make_subject(db, "Physics")
        res = client.get("/practice/subjects")
        assert res.status_code == 200
        by_name = {s["name"]: s for s in res.json()}
        assert by_name["Mathematics"]["topic_count"] == 2
        assert by_name["Mathematics"]["question_count"] == 1
        assert by_name["Physics"]["topic_count"] == 0

    def test_topics_page(self, client, db, student):
        subject = make_subject(db, topics=[f"Topic {i}" for i in range(5)])
        res = client.post(
            "/practice/topics",
            json={"subject_ids": [subject.id], "page": 2, "limit": 2},
            headers=headers_for(db, student),
        )
        entry = res.json()[subject.id]
        assert len(entry["topics"]) == 2
        assert entry["generating"] is False
        assert entry["pagination"] == {"current_page": 2, "total_pages": 3, "total_topics": 5, "has_more": True}

    def test_empty_subject_triggers_generation(self, client, db, student):
        subject = make_subject(db, "Economics")
        res = client.post("/practice/topics", json={"subject_ids": [subject.id]}, headers=headers_for(db, student))
        assert res.json()[subject.id]["generating"] is True
        count = db.scalar(select(func.count(models.Topic.id)).where(models.Topic.subject_id == subject.id))
        assert count == 14

    def test_generate_more_at_cap(self, client, db, student):
        subject = make_subject(db, "Geography", topics=[f"Topic {i}" for i in range(70)])
        res = client.post("/practice/topics/generate", json={"subject_id": subject.id}, headers=headers_for(db, student))
        assert res.status_code == 400
        assert "maximum 70 topics" in res.json()["detail"]

    def test_generate_more_reports_remaining(self, client, db, student):
        subject = make_subject(db, "Geography", topics=[f"Topic {i}" for i in range(60)])
        res = client.post("/practice/topics/generate", json={"subject_id": subject.id}, headers=headers_for(db, student))
        assert res.status_code == 200
        assert res.json()["generating"] == 10
        assert res.json()["remaining"] == 10

    def test_generate_more_unknown_subject(self, client, db, student):
        res = client.post("/practice/topics/generate", json={"subject_id": "missing"}, headers=headers_for(db, student))
        assert res.status_code == 404

    def test_subject_already_generating_is_not_requeued(self, client, db, student, llm):
        subject = make_subject(db, "Economics")
        tasks._generating.add(subject.id)
        try:
            res = client.post("/practice/topics", json={"subject_ids": [subject.id]}, headers=headers_for(db, student))
        finally:
            tasks._generating.discard(subject.id)
        assert res.json()[subject.id]["generating"] is True
        assert llm.prompts == []
        assert db.scalar(select(func.count(models.Topic.id)).where(models.Topic.subject_id == subject.id)) == 0


class TestStartTest:
    def test_free_user_is_capped(self, client, db, student):
        subject = make_subject(db, topics=["Algebra"])
        res = _start(client, headers_for(db, student), subject, total=10)
        assert res.status_code == 200
        data = res.json()
        assert data["total_questions"] == 5
        assert len(data["questions"]) == 5
        assert data["is_limited"] is True
        assert data["free_limit"] == 5
        assert data["duration"] == 30
        assert "correct_answer" not in data["questions"][0]

    def test_paid_user_gets_full_count(self, client, db, paid_student):
        subject = make_subject(db, topics=["Algebra", "Geometry"])
        data = _start(client, headers_for(db, paid_student), subject, total=24).json()
        assert data["total_questions"] == 24
        assert data["has_full_access"] is True
        assert data["duration"] == 36
        test = db.get(models.Test, data["id"])
        assert test.question_ids == [q["id"] for q in data["questions"]]

    def test_explicit_duration(self, client, db, paid_student):
        subject = make_subject(db, topics=["Algebra"])
        assert _start(client, headers_for(db, paid_student), subject, duration=45).json()["duration"] == 45

    def test_unknown_subject(self, client, db, student):
        res = client.post(
            "/practice/start",
            json={"subjects": ["missing"], "difficulty": "EASY", "total_questions": 3},
            headers=headers_for(db, student),
        )
        assert res.status_code == 400

    def test_subject_without_topics(self, client, db, student):
        subject = make_subject(db, "Commerce")
        res = _start(client, headers_for(db, student), subject)
        assert res.status_code == 400
        assert "No topics available" in res.json()["detail"]

    def test_bad_difficulty(self, client, db, student):
        subject = make_subject(db, topics=["Algebra"])
        body = {"subjects": [subject.id], "difficulty": "EXPERT", "total_questions": 3}
        assert client.post("/practice/start", json=body, headers=headers_for(db, student)).status_code == 422

    def test_llm_not_configured(self, client, db, student):
        subject = make_subject(db, topics=["Algebra"])
        app.dependency_overrides[get_llm_factory] = lambda: GeminiClient
        res = _start(client, headers_for(db, student), subject)
        assert res.status_code == 503

    def test_requires_login(self, client, db):
        subject = make_subject(db, topics=["Algebra"])
        assert _start(client, {}, subject).status_code == 401

    def test_random_topics_ignores_listed_topics(self, client, db, student):
        subject = make_subject(db, topics=["Algebra"])
        headers = headers_for(db, student)
        assert _start(client, headers, subject, topics=["not-a-topic"]).status_code == 400

        res = _start(client, headers, subject, topics=["not-a-topic"], use_random_topics=True)
        assert res.status_code == 200
        assert res.json()["topics"] == []
        assert db.get(models.Test, res.json()["id"]).topics == []


class TestSubmitAndResults:
    def _take_test(self, client, db, user, total=3):
        subject = make_subject(db, topics=["Algebra"])
        headers = headers_for(db, user)
        started = _start(client, headers, subject, total=total).json()
        ids = [q["id"] for q in started["questions"]]
        key = _answer_key(db, ids)
        answers = [{"question_id": ids[0], "user_answer": key[ids[0]], "time_spent": 12}]
        answers += [{"question_id": qid, "user_answer": (key[qid] + 1) % 4} for qid in ids[1:-1]]
        res = client.post(
            "/practice/submit",
            json={"test_id": started["id"], "answers": answers, "time_spent": 200},
            headers=headers,
        )
        return headers, started, res

    def test_submit_scores_served_questions(self, client, db, paid_student):
        _, started, res = self._take_test(client, db, paid_student)
        assert res.status_code == 200
        result = res.json()["test_result"]
        assert result["correct_answers"] == 1
        assert result["score"] == 33.33
        assert result["subject_scores"] == {"Mathematics": pytest.approx(100 / 3)}
        review = res.json()["questions"]
        assert [q["id"] for q in review] == [q["id"] for q in started["questions"]]
        assert review[-1]["user_answer"] is None

    def test_submit_requires_payment(self, client, db, student):
        _, _, res = self._take_test(client, db, student)
        assert res.status_code == 403
        assert res.json()["detail"]["requires_payment"] is True

    def test_submit_other_users_test(self, client, db, paid_student, admin):
        _, started, _ = self._take_test(client, db, admin)
        res = client.post(
            "/practice/submit",
            json={"test_id": started["id"], "answers": []},
            headers=headers_for(db, paid_student),
        )
        assert res.status_code == 404

    def test_history_result_and_pdf(self, client, db, paid_student):
        headers, _, res = self._take_test(client, db, paid_student)
        result_id = res.json()["test_result"]["id"]

        history = client.get("/practice/history", headers=headers).json()
        assert [r["id"] for r in history["data"]] == [result_id]
        assert history["pagination"]["total_items"] == 1
        assert history["can_download_pdf"] is True

        detail = client.get(f"/practice/result/{result_id}", headers=headers).json()
        assert len(detail["questions"]) == 3
        assert detail["questions"][0]["correct_answer"] in range(4)

        pdf = client.get(f"/practice/download/{result_id}", headers=headers)
        assert pdf.status_code == 200
        assert pdf.headers["content-type"] == "application/pdf"
        assert pdf.content.startswith(b"%PDF")

        stats = client.get("/practice/stats", headers=headers).json()
        assert stats["overall_stats"]["total_tests"] == 1

    def test_result_of_other_user(self, client, db, paid_student, admin):
        _, _, res = self._take_test(client, db, admin)
        result_id = res.json()["test_result"]["id"]
        assert client.get(f"/practice/result/{result_id}", headers=headers_for(db, paid_student)).status_code == 404

    def test_submit_after_access_lapsed(self, client, db):
        lapsed = make_user(
            db,
            "lapsed@example.com",
            paid=True,
            payment_type="MONTHLY",
            expiry=datetime.utcnow() - timedelta(days=1),
        )
        _, _, res = self._take_test(client, db, lapsed)
        assert res.status_code == 403
        detail = res.json()["detail"]
        assert detail["requires_payment"] is True
        assert detail["expired"] is True

    def test_submit_twice_is_rejected(self, client, db, paid_student):
        headers, started, res = self._take_test(client, db, paid_student)
        result_id = res.json()["test_result"]["id"]
        again = client.post(
            "/practice/submit",
            json={"test_id": started["id"], "answers": []},
            headers=headers,
        )
        assert again.status_code == 409
        assert again.json()["detail"]["result_id"] == result_id
        assert client.get("/practice/stats", headers=headers).json()["overall_stats"]["total_tests"] == 1

    def test_result_keeps_served_order(self, client, db, paid_student):
        headers, started, res = self._take_test(client, db, paid_student, total=8)
        result_id = res.json()["test_result"]["id"]
        detail = client.get(f"/practice/result/{result_id}", headers=headers).json()
        assert [q["id"] for q in detail["questions"]] == [q["id"] for q in started["questions"]]
        positions = db.scalars(
            select(models.TestQuestion.position)
            .where(models.TestQuestion.test_result_id == result_id)
            .order_by(models.TestQuestion.position)
        ).all()
        assert positions == list(range(8))
