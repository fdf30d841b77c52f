"""Topic and question generation with uniqueness enforcement, plus scoring.

Questions are served from the bank when enough exist; otherwise the gap is
filled by asking the LLM per topic, passing the topic's recent questions so
the model avoids repeating them. Topics per subject are capped at the size of
the Nigerian senior secondary syllabus.
"""
from __future__ import annotations
import logging
import math
import random
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from . import generation
from .constants import NIGERIAN_SUBJECTS
from .errors import AlreadyInitialized, NoTopicsAvailable
from .gemini_client import GeminiClient
from .models import Question, Subject, TestQuestion, TestResult, Topic
from .settings import settings

logger = logging.getLogger(__name__)

MAX_RANDOM_TOPICS = 20
RANDOM_TOPICS_PER_SUBJECT = 5
EXISTING_QUESTIONS_CONTEXT = 20
RECENT_TESTS = 5


def active_topic_count(db: Session, subject_id: str) -> int:
    return db.scalar(
        select(func.count(Topic.id)).where(Topic.subject_id == subject_id, Topic.is_active.is_(True))
    ) or 0


async def generate_and_save_topics(
    db: Session,
    client: GeminiClient,
    subject: Subject,
    count: Optional[int] = None,
) -> List[Topic]:
    cap = settings.max_topics_per_subject
    count = settings.topic_batch_size if count is None else count
    existing_count = active_topic_count(db, subject.id)
    if existing_count >= cap:
        logger.info("Topic limit (%d) reached for %s; curriculum complete", cap, subject.name)
        return []
    to_generate = min(count, cap - existing_count)
    if to_generate <= 0:
        return []

    existing_names = list(db.scalars(select(Topic.name).where(Topic.subject_id == subject.id)))
    logger.info("Generating %d new topics for %s (%d/%d exist)", to_generate, subject.name, existing_count, cap)
    generated = await generation.generate_topics(client, subject.name, to_generate, existing_names)

    # Another job may have saved topics while the LLM call was in flight
    existing_count = active_topic_count(db, subject.id)
    room = cap - existing_count
    if room <= 0:
        logger.info("Topic limit (%d) reached for %s while generating; discarding batch", cap, subject.name)
        return []
    existing_lower = {name.lower() for name in db.scalars(select(Topic.name).where(Topic.subject_id == subject.id))}
    unique = []
    for name in generated:
        if name.lower() not in existing_lower:
            existing_lower.add(name.lower())
            unique.append(name)
    if not unique:
        logger.info("No new unique topics generated for %s", subject.name)
        return []

    saved = [Topic(name=name, subject_id=subject.id) for name in unique[:room]]
    db.add_all(saved)
    db.commit()
    for topic in saved:
        db.refresh(topic)

    total = existing_count + len(saved)
    logger.info("Generated %d topics for %s (%d/%d total)", len(saved), subject.name, total, cap)
    return saved


def _topics_for_generation(db: Session, subject_ids: Sequence[str], topic_ids: Sequence[str]) -> List[Topic]:
    if topic_ids:
        return list(db.scalars(select(Topic).where(Topic.id.in_(topic_ids))))
    topics = list(
        db.scalars(select(Topic).where(Topic.subject_id.in_(subject_ids), Topic.is_active.is_(True)))
    )
    random.shuffle(topics)
    return topics[: min(len(subject_ids) * RANDOM_TOPICS_PER_SUBJECT, MAX_RANDOM_TOPICS)]


async def generate_test_questions(
    db: Session,
    client: GeminiClient,
    subject_ids: Sequence[str],
    topic_ids: Sequence[str],
    difficulty: str,
    total_questions: int,
) -> List[Question]:
    query = select(Question).where(
        Question.subject_id.in_(subject_ids),
        Question.difficulty == difficulty,
        Question.is_active.is_(True),
    )
    if topic_ids:
        query = query.where(Question.topic_id.in_(topic_ids))
    query = query.order_by(Question.created_at.desc()).limit(total_questions * 3)
    questions = list(db.scalars(query))
    random.shuffle(questions)
    if len(questions) >= total_questions:
        return questions[:total_questions]

    needed = total_questions - len(questions)
    topics = _topics_for_generation(db, subject_ids, topic_ids)
    if not topics:
        raise NoTopicsAvailable(
            "No topics available. Please generate topics first or wait for topics to be generated."
        )
    per_topic = math.ceil(needed / len(topics))

    for topic in topics:
        if len(questions) >= total_questions:
            break
        existing_texts = list(
            db.scalars(
                select(Question.text)
                .where(Question.topic_id == topic.id, Question.difficulty == difficulty, Question.is_active.is_(True))
                .order_by(Question.created_at.desc())
                .limit(EXISTING_QUESTIONS_CONTEXT)
            )
        )
        try:
            generated = await generation.generate_questions(
                client,
                topic.subject.name,
                topic.name,
                difficulty,
                min(per_topic, total_questions - len(questions)),
                existing_texts,
            )
        except Exception:
            # A failing topic is skipped; the rest still fill the test
            logger.warning("Error generating questions for topic %s", topic.name, exc_info=True)
            continue
        known = {text.strip().lower() for text in existing_texts}
        saved: List[Question] = []
        for item in generated:
            key = item["text"].lower()
            if key in known:
                continue
            known.add(key)
            saved.append(
                Question(
                    text=item["text"],
                    options=item["options"],
                    correct_answer=item["correct_answer"],
                    explanation=item["explanation"],
                    difficulty=difficulty,
                    subject_id=topic.subject_id,
                    topic_id=topic.id,
                )
            )
        db.add_all(saved)
        db.commit()
        for q in saved:
            db.refresh(q)
        questions.extend(saved)
        logger.info("Generated %d questions for %s", len(saved), topic.name)

    if len(questions) < total_questions:
        logger.warning("Only generated %d out of %d requested questions", len(questions), total_questions)
    random.shuffle(questions)
    return questions[:total_questions]


def calculate_test_score(questions: Sequence[Question], user_answers: Sequence[Optional[int]]) -> Dict[str, Any]:
    correct = 0
    question_results: List[Dict[str, Any]] = []
    per_subject: Dict[str, Dict[str, int]] = {}
    for question, answer in zip(questions, user_answers):
        is_correct = answer is not None and answer == question.correct_answer
        if is_correct:
            correct += 1
        name = question.subject.name if question.subject is not None else "Unknown"
        bucket = per_subject.setdefault(name, {"correct": 0, "total": 0})
        bucket["total"] += 1
        if is_correct:
            bucket["correct"] += 1
        question_results.append(
            {"question_id": question.id, "user_answer": answer, "is_correct": is_correct, "time_spent": 0}
        )
    subject_scores = {name: b["correct"] / b["total"] * 100 for name, b in per_subject.items()}
    score = round(correct / len(questions) * 100, 2) if questions else 0.0
    return {
        "correct_answers": correct,
        "score": score,
        "question_results": question_results,
        "subject_scores": subject_scores,
    }


def get_question_analytics(db: Session, question_id: str) -> Dict[str, Any]:
    attempts = list(db.scalars(select(TestQuestion).where(TestQuestion.question_id == question_id)))
    total = len(attempts)
    correct = sum(1 for a in attempts if a.is_correct)
    success_rate = correct / total * 100 if total else 0.0
    avg_time = sum(a.time_spent for a in attempts) / total if total else 0.0
    return {
        "total_attempts": total,
        "correct_attempts": correct,
        "success_rate": round(success_rate, 2),
        "avg_time_spent": round(avg_time),
    }


def get_topic_performance(db: Session, user_id: str, topic_id: str) -> Dict[str, Any]:
    rows = db.execute(
        select(TestQuestion.is_correct, TestQuestion.test_result_id)
        .join(Question, Question.id == TestQuestion.question_id)
        .join(TestResult, TestResult.id == TestQuestion.test_result_id)
        .where(TestResult.user_id == user_id, Question.topic_id == topic_id)
    ).all()
    total = len(rows)
    correct = sum(1 for is_correct, _ in rows if is_correct)
    performance = correct / total * 100 if total else 0.0
    return {
        "total_questions": total,
        "correct_answers": correct,
        "performance": round(performance, 2),
        "tests_attempted": len({result_id for _, result_id in rows}),
    }


def get_user_stats(db: Session, user_id: str) -> Dict[str, Any]:
    count, avg_score, max_score = db.execute(
        select(func.count(TestResult.id), func.avg(TestResult.score), func.max(TestResult.score))
        .where(TestResult.user_id == user_id)
    ).one()
    results = list(
        db.scalars(select(TestResult).where(TestResult.user_id == user_id).order_by(TestResult.completed_at.desc()))
    )
    subject_ids = {sid for r in results for sid in r.subjects}
    names = {}
    if subject_ids:
        names = dict(db.execute(select(Subject.id, Subject.name).where(Subject.id.in_(subject_ids))).all())

    by_subject: Dict[str, List[float]] = {}
    for r in results:
        for sid in r.subjects:
            by_subject.setdefault(names.get(sid, sid), []).append(r.score)

    return {
        "overall_stats": {
            "total_tests": count or 0,
            "average_score": round(avg_score or 0.0, 2),
            "highest_score": max_score or 0.0,
        },
        "recent_tests": [
            {
                "id": r.id,
                "test_name": r.test_name,
                "score": r.score,
                "completed_at": r.completed_at,
                "subjects": [names.get(sid, sid) for sid in r.subjects],
            }
            for r in results[:RECENT_TESTS]
        ],
        "subject_performance": {
            name: {"count": len(scores), "average": round(sum(scores) / len(scores), 2)}
            for name, scores in by_subject.items()
        },
    }


def initialize_subjects(db: Session) -> List[Subject]:
    if db.scalar(select(func.count(Subject.id))):
        raise AlreadyInitialized("Subjects already initialized")
    subjects = [
        Subject(name=name, description=f"{name} - Nigerian Secondary School Curriculum")
        for name in NIGERIAN_SUBJECTS
    ]
    db.add_all(subjects)
    db.commit()
    for subject in subjects:
        db.refresh(subject)
    return subjects
