"""Tests for topic/question generation, uniqueness and scoring."""

import asyncio
import json

import pytest
from sqlalchemy import func, select

from cravins import models, question_service, tasks
from cravins.constants import NIGERIAN_SUBJECTS
from cravins.db import SessionLocal
from cravins.errors import AlreadyInitialized, NoTopicsAvailable

from conftest import FakeLLM, make_question, make_subject, make_user


def _topic(db, subject, name):
    return db.scalars(select(models.Topic).where(models.Topic.subject_id == subject.id, models.Topic.name == name)).one()


class TestTopicGeneration:
    @pytest.mark.asyncio
    async def test_generates_a_batch(self, db, llm):
        subject = make_subject(db, "Physics")
        saved = await question_service.generate_and_save_topics(db, llm, subject)
        assert len(saved) == 14
        assert question_service.active_topic_count(db, subject.id) == 14

    @pytest.mark.asyncio
    async def test_stops_at_curriculum_cap(self, db, llm):
        subject = make_subject(db, "Chemistry", topics=[f"Existing {i}" for i in range(65)])
        saved = await question_service.generate_and_save_topics(db, llm, subject, 14)
        assert len(saved) == 5
        assert "Generate 5 UNIQUE" in llm.prompts[-1]
        assert question_service.active_topic_count(db, subject.id) == 70

        assert await question_service.generate_and_save_topics(db, llm, subject, 14) == []
        assert len(llm.prompts) == 1

    @pytest.mark.asyncio
    async def test_skips_names_already_stored(self, db, llm):
        subject = make_subject(db, "Mathematics", topics=["Surds"])
        llm.topic_names = ["Indices", "indices", "SURDS", "Sets"]
        saved = await question_service.generate_and_save_topics(db, llm, subject, 4)
        assert [t.name for t in saved] == ["Indices", "Sets"]
        assert "Surds" in llm.prompts[-1]

    @pytest.mark.asyncio
    async def test_nothing_new(self, db, llm):
        subject = make_subject(db, "Biology", topics=["Cells"])
        llm.topic_names = ["cells"]
        assert await question_service.generate_and_save_topics(db, llm, subject, 3) == []
        assert question_service.active_topic_count(db, subject.id) == 1


class TestQuestionGeneration:
    @pytest.mark.asyncio
    async def test_serves_from_bank_when_enough(self, db, llm):
        subject = make_subject(db, topics=["Algebra"])
        for i in range(6):
            make_question(db, subject, text=f"Bank question {i}?")
        questions = await question_service.generate_test_questions(db, llm, [subject.id], [], "EASY", 5)
        assert len(questions) == 5
        assert len({q.id for q in questions}) == 5
        assert llm.prompts == []

    @pytest.mark.asyncio
    async def test_bank_respects_difficulty(self, db, llm):
        subject = make_subject(db, topics=["Algebra"])
        for i in range(3):
            make_question(db, subject, text=f"Hard {i}?", difficulty="HARD")
        questions = await question_service.generate_test_questions(db, llm, [subject.id], [], "EASY", 2)
        assert len(questions) == 2
        assert all(q.difficulty == "EASY" for q in questions)
        assert len(llm.prompts) == 1

    @pytest.mark.asyncio
    async def test_fills_gap_across_topics(self, db, llm):
        subject = make_subject(db, topics=["Algebra", "Geometry"])
        questions = await question_service.generate_test_questions(db, llm, [subject.id], [], "MEDIUM", 4)
        assert len(questions) == 4
        assert len(llm.prompts) == 2
        stored = db.scalar(select(func.count(models.Question.id)).where(models.Question.difficulty == "MEDIUM"))
        assert stored == 4
        assert {q.topic.name for q in questions} == {"Algebra", "Geometry"}

    @pytest.mark.asyncio
    async def test_prompt_carries_existing_questions(self, db, llm):
        subject = make_subject(db, topics=["Algebra"])
        algebra = _topic(db, subject, "Algebra")
        make_question(db, subject, algebra, text="Solve x + 1 = 3")
        questions = await question_service.generate_test_questions(db, llm, [subject.id], [algebra.id], "EASY", 3)
        assert len(questions) == 3
        assert "Solve x + 1 = 3" in llm.prompts[0]
        assert "Generate 2 UNIQUE multiple choice" in llm.prompts[0]

    @pytest.mark.asyncio
    async def test_skips_exact_duplicates(self, db):
        subject = make_subject(db, topics=["Algebra"])
        algebra = _topic(db, subject, "Algebra")
        make_question(db, subject, algebra, text="What is 2 + 2?")

        class RepeatingClient:
            async def generate(self, prompt):
                return json.dumps([
                    {"text": "WHAT IS 2 + 2?", "options": ["1", "2", "3", "4"], "correctAnswer": 3, "explanation": "Four."},
                    {"text": "What is 3 + 3?", "options": ["5", "6", "7", "8"], "correctAnswer": 1, "explanation": "Six."},
                    {"text": "what is 3 + 3?", "options": ["5", "6", "7", "8"], "correctAnswer": 1, "explanation": "Six."},
                ])

        questions = await question_service.generate_test_questions(db, RepeatingClient(), [subject.id], [], "EASY", 3)
        assert sorted(q.text for q in questions) == ["What is 2 + 2?", "What is 3 + 3?"]
        assert db.scalar(select(func.count(models.Question.id))) == 2

    @pytest.mark.asyncio
    async def test_failing_topic_is_skipped(self, db, llm):
        subject = make_subject(db, topics=["Algebra", "Geometry"])
        llm.failing_topics = {"Algebra"}
        questions = await question_service.generate_test_questions(db, llm, [subject.id], [], "HARD", 2)
        assert [q.topic.name for q in questions] == ["Geometry"]

    @pytest.mark.asyncio
    async def test_no_topics(self, db, llm):
        subject = make_subject(db, "Commerce")
        with pytest.raises(NoTopicsAvailable):
            await question_service.generate_test_questions(db, llm, [subject.id], [], "EASY", 5)


def test_calculate_test_score(db):
    maths = make_subject(db, "Mathematics")
    physics = make_subject(db, "Physics")
    questions = [
        make_question(db, maths, text="m1", correct=0),
        make_question(db, maths, text="m2", correct=1),
        make_question(db, physics, text="p1", correct=2),
    ]
    scored = question_service.calculate_test_score(questions, [0, 3, None])
    assert scored["correct_answers"] == 1
    assert scored["score"] == 33.33
    assert scored["subject_scores"] == {"Mathematics": 50.0, "Physics": 0.0}
    assert [r["is_correct"] for r in scored["question_results"]] == [True, False, False]
    assert scored["question_results"][2]["user_answer"] is None


def test_calculate_test_score_empty():
    scored = question_service.calculate_test_score([], [])
    assert scored["score"] == 0.0
    assert scored["subject_scores"] == {}


def _record_result(db, user, subject, answers):
    result = models.TestResult(
        user_id=user.id,
        test_name="Mathematics - EASY",
        subjects=[subject.id],
        topics=[],
        difficulty="EASY",
        total_questions=len(answers),
        correct_answers=sum(1 for _, ok, _ in answers if ok),
        score=sum(1 for _, ok, _ in answers if ok) / len(answers) * 100,
        subject_scores={},
        is_complete=True,
    )
    for question, ok, seconds in answers:
        result.questions.append(
            models.TestQuestion(question_id=question.id, user_answer=0, is_correct=ok, time_spent=seconds)
        )
    db.add(result)
    db.commit()
    return result


def test_analytics_and_topic_performance(db):
    user = make_user(db)
    other = make_user(db, "other@example.com")
    subject = make_subject(db, topics=["Algebra"])
    algebra = _topic(db, subject, "Algebra")
    q1 = make_question(db, subject, algebra, text="q1")
    q2 = make_question(db, subject, text="q2")

    _record_result(db, user, subject, [(q1, True, 30), (q2, False, 10)])
    _record_result(db, user, subject, [(q1, False, 50)])
    _record_result(db, other, subject, [(q1, True, 40)])

    analytics = question_service.get_question_analytics(db, q1.id)
    assert analytics == {"total_attempts": 3, "correct_attempts": 2, "success_rate": 66.67, "avg_time_spent": 40}

    perf = question_service.get_topic_performance(db, user.id, algebra.id)
    assert perf == {"total_questions": 2, "correct_answers": 1, "performance": 50.0, "tests_attempted": 2}


def test_user_stats(db):
    user = make_user(db)
    subject = make_subject(db)
    q1 = make_question(db, subject, text="q1")
    q2 = make_question(db, subject, text="q2")
    _record_result(db, user, subject, [(q1, True, 5), (q2, True, 5)])
    _record_result(db, user, subject, [(q1, True, 5), (q2, False, 5)])

    stats = question_service.get_user_stats(db, user.id)
    assert stats["overall_stats"] == {"total_tests": 2, "average_score": 75.0, "highest_score": 100.0}
    assert len(stats["recent_tests"]) == 2
    assert stats["recent_tests"][0]["subjects"] == ["Mathematics"]
    assert stats["subject_performance"] == {"Mathematics": {"count": 2, "average": 75.0}}


def test_user_stats_empty(db):
    user = make_user(db)
    stats = question_service.get_user_stats(db, user.id)
    assert stats["overall_stats"]["total_tests"] == 0
    assert stats["recent_tests"] == []


def test_initialize_subjects_once(db):
    subjects = question_service.initialize_subjects(db)
    assert sorted(s.name for s in subjects) == sorted(NIGERIAN_SUBJECTS)
    with pytest.raises(AlreadyInitialized):
        question_service.initialize_subjects(db)


class SlowLLM(FakeLLM):
    """Holds each reply long enough for a second job to start."""

    async def generate(self, prompt):
        await asyncio.sleep(0.05)
        return await super().generate(prompt)


class TestOverlappingTopicJobs:
    @pytest.mark.asyncio
    async def test_cap_holds_across_sessions(self, db):
        subject = make_subject(db, "Chemistry", topics=[f"Existing {i}" for i in range(60)])
        llm = SlowLLM()
        first, second = SessionLocal(), SessionLocal()
        try:
            saved = await asyncio.gather(
                question_service.generate_and_save_topics(first, llm, first.get(models.Subject, subject.id), 14),
                question_service.generate_and_save_topics(second, llm, second.get(models.Subject, subject.id), 14),
            )
        finally:
            first.close()
            second.close()
        assert sorted(len(batch) for batch in saved) == [0, 10]
        assert question_service.active_topic_count(db, subject.id) == 70

    @pytest.mark.asyncio
    async def test_same_names_saved_once(self, db):
        subject = make_subject(db, "Economics")
        llm = SlowLLM()
        llm.topic_names = [f"Economics Topic {i}" for i in range(14)]
        first, second = SessionLocal(), SessionLocal()
        try:
            await asyncio.gather(
                question_service.generate_and_save_topics(first, llm, first.get(models.Subject, subject.id)),
                question_service.generate_and_save_topics(second, llm, second.get(models.Subject, subject.id)),
            )
        finally:
            first.close()
            second.close()
        names = list(db.scalars(select(models.Topic.name).where(models.Topic.subject_id == subject.id)))
        assert len(names) == 14
        assert len(set(names)) == 14

    @pytest.mark.asyncio
    async def test_background_job_skips_subject_in_flight(self, db):
        subject = make_subject(db, "Government")
        llm = SlowLLM()
        llm.topic_names = [f"Government Topic {i}" for i in range(14)]
        await asyncio.gather(
            tasks.generate_topics_in_background(subject.id, 14, lambda: llm),
            tasks.generate_topics_in_background(subject.id, 14, lambda: llm),
        )
        assert len(llm.prompts) == 1
        assert llm.closed == 1
        assert question_service.active_topic_count(db, subject.id) == 14
        assert not tasks.is_generating(subject.id)
