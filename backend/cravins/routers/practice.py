from __future__ import annotations
import logging
import math
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query
from fastapi.responses import Response
from pydantic import BaseModel, Field
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, selectinload

from ..access import has_access
from ..constants import (
	MAX_QUESTIONS_PER_TEST,
	MAX_SUBJECTS_PER_TEST,
	MAX_TEST_DURATION_MINUTES,
	MIN_QUESTIONS_PER_TEST,
	MIN_SUBJECTS_PER_TEST,
	MIN_TEST_DURATION_MINUTES,
	MINUTES_PER_QUESTION,
	MSG_NOT_FOUND,
	OPTIONS_PER_QUESTION,
)
from ..db import get_db
from ..errors import LLMError, NoTopicsAvailable
from ..models import Question, Subject, Test, TestQuestion, TestResult, Topic, User, get_payment_settings
from ..pagination import page_info
from ..question_service import active_topic_count, calculate_test_score, generate_test_questions, get_user_stats
from ..report import build_result_pdf
from ..settings import settings
from ..tasks import LLMFactory, generate_topics_in_background, get_llm_factory, is_generating
from .auth import get_current_user, get_optional_user, require_paid_access

router = APIRouter(prefix="/practice", tags=["practice"])
logger = logging.getLogger(__name__)

Difficulty = Literal["EASY", "MEDIUM", "HARD"]


class TopicsRequest(BaseModel):
	subject_ids: List[str] = Field(min_length=1)
	page: int = Field(default=1, ge=1)
	limit: int = Field(default=14, ge=1, le=50)


class GenerateTopicsRequest(BaseModel):
	subject_id: str


class StartTestRequest(BaseModel):
	subjects: List[str] = Field(min_length=MIN_SUBJECTS_PER_TEST, max_length=MAX_SUBJECTS_PER_TEST)
	topics: List[str] = Field(default_factory=list)
	difficulty: Difficulty
	total_questions: int = Field(ge=MIN_QUESTIONS_PER_TEST, le=MAX_QUESTIONS_PER_TEST)
	duration: Optional[int] = Field(default=None, ge=1, le=MAX_TEST_DURATION_MINUTES)
	use_random_topics: bool = False


class AnswerIn(BaseModel):
	question_id: str
	user_answer: Optional[int] = Field(default=None, ge=0, le=OPTIONS_PER_QUESTION - 1)
	time_spent: int = Field(default=0, ge=0)


class SubmitTestRequest(BaseModel):
	test_id: str
	answers: List[AnswerIn]
	time_spent: int = Field(default=0, ge=0)


def _question_review(question: Question, user_answer: Optional[int], is_correct: bool) -> Dict[str, Any]:
	return {
		"id": question.id,
		"text": question.text,
		"options": question.options,
		"correct_answer": question.correct_answer,
		"explanation": question.explanation,
		"user_answer": user_answer,
		"is_correct": is_correct,
		"subject": question.subject.name if question.subject else None,
		"topic": question.topic.name if question.topic else None,
	}


@router.get("/subjects")
async def list_subjects(user: Optional[User] = Depends(get_optional_user), db: Session = Depends(get_db)):
	topic_counts = dict(
		db.execute(
			select(Topic.subject_id, func.count(Topic.id)).where(Topic.is_active.is_(True)).group_by(Topic.subject_id)
		).all()
	)
	question_counts = dict(
		db.execute(
			select(Question.subject_id, func.count(Question.id)).where(Question.is_active.is_(True)).group_by(Question.subject_id)
		).all()
	)
	subjects = db.scalars(select(Subject).where(Subject.is_active.is_(True)).order_by(Subject.name)).all()
	return [
		{
			"id": s.id,
			"name": s.name,
			"description": s.description,
			"topic_count": topic_counts.get(s.id, 0),
			"question_count": question_counts.get(s.id, 0),
		}
		for s in subjects
	]


@router.post("/topics")
async def list_topics(
	req: TopicsRequest,
	background_tasks: BackgroundTasks,
	user: User = Depends(get_current_user),
	db: Session = Depends(get_db),
	llm_factory: LLMFactory = Depends(get_llm_factory),
):
	topics_by_subject: Dict[str, Any] = {}
	for subject_id in req.subject_ids:
		subject = db.get(Subject, subject_id)
		if subject is None:
			continue
		total = active_topic_count(db, subject_id)
		topics = db.scalars(
			select(Topic)
			.where(Topic.subject_id == subject_id, Topic.is_active.is_(True))
			.order_by(Topic.created_at.desc())
			.offset((req.page - 1) * req.limit)
			.limit(req.limit)
		).all()
		generating = is_generating(subject.id)
		if not generating and total == 0 and req.page == 1:
			background_tasks.add_task(generate_topics_in_background, subject.id, settings.topic_batch_size, llm_factory)
			generating = True
		topics_by_subject[subject_id] = {
			"subject_name": subject.name,
			"topics": [{"id": t.id, "name": t.name, "created_at": t.created_at} for t in topics],
			"generating": generating,
			"pagination": {
				"current_page": req.page,
				"total_pages": math.ceil(total / req.limit),
				"total_topics": total,
				"has_more": total > req.page * req.limit,
			},
		}
	return topics_by_subject


@router.post("/topics/generate")
async def generate_more_topics(
	req: GenerateTopicsRequest,
	background_tasks: BackgroundTasks,
	user: User = Depends(get_current_user),
	db: Session = Depends(get_db),
	llm_factory: LLMFactory = Depends(get_llm_factory),
):
	subject = db.get(Subject, req.subject_id)
	if subject is None:
		raise HTTPException(status_code=404, detail="Subject not found")
	cap = settings.max_topics_per_subject
	current = active_topic_count(db, subject.id)
	if current >= cap:
		raise HTTPException(
			status_code=400,
			detail=f"Nigerian curriculum complete - maximum {cap} topics reached for this subject",
		)
	remaining = cap - current
	to_generate = min(settings.topic_batch_size, remaining)
	background_tasks.add_task(generate_topics_in_background, subject.id, to_generate, llm_factory)
	return {
		"message": f"Generating {to_generate} new topics based on Nigerian curriculum",
		"current_count": current,
		"generating": to_generate,
		"max_count": cap,
		"remaining": remaining,
	}


@router.post("/start")
async def start_test(
	req: StartTestRequest,
	user: User = Depends(get_current_user),
	db: Session = Depends(get_db),
	llm_factory: LLMFactory = Depends(get_llm_factory),
):
	free_limit = get_payment_settings(db).free_question_limit
	full_access = has_access(user)
	n_questions = req.total_questions
	if not full_access and n_questions > free_limit:
		n_questions = free_limit

	subject_ids = list(dict.fromkeys(req.subjects))
	subjects = db.scalars(select(Subject).where(Subject.id.in_(subject_ids), Subject.is_active.is_(True))).all()
	if len(subjects) != len(subject_ids):
		raise HTTPException(status_code=400, detail="One or more subjects not found")
	topic_ids = [] if req.use_random_topics else list(dict.fromkeys(req.topics))

	try:
		client = llm_factory()
	except LLMError as exc:
		raise HTTPException(status_code=503, detail=str(exc))
	try:
		questions = await generate_test_questions(db, client, subject_ids, topic_ids, req.difficulty, n_questions)
	except NoTopicsAvailable as exc:
		raise HTTPException(status_code=400, detail=str(exc))
	finally:
		await client.aclose()
	if not questions:
		raise HTTPException(status_code=400, detail="No questions available for selected criteria")

	duration = req.duration or max(math.ceil(n_questions * MINUTES_PER_QUESTION), MIN_TEST_DURATION_MINUTES)
	by_id = {s.id: s for s in subjects}
	subject_names = [by_id[sid].name for sid in subject_ids]
	test = Test(
		user_id=user.id,
		name=f"{', '.join(subject_names)} - {req.difficulty} - {datetime.utcnow():%Y-%m-%d}",
		subjects=subject_ids,
		topics=topic_ids,
		question_ids=[q.id for q in questions],
		difficulty=req.difficulty,
		total_questions=len(questions),
		duration=duration,
	)
	db.add(test)
	db.commit()
	db.refresh(test)
	logger.info("User %s started test %s with %d questions", user.id, test.id, len(questions))

	return {
		"id": test.id,
		"name": test.name,
		"duration": duration,
		"subjects": subject_names,
		"topics": topic_ids,
		"difficulty": test.difficulty,
		"total_questions": test.total_questions,
		"started_at": test.created_at,
		"has_full_access": full_access,
		"free_limit": None if full_access else free_limit,
		"is_limited": not full_access and req.total_questions > free_limit,
		"questions": [
			{
				"id": q.id,
				"text": q.text,
				"options": q.options,
				"subject": q.subject.name if q.subject else "Unknown",
				"topic": q.topic.name if q.topic else "Unknown",
			}
			for q in questions
		],
	}


@router.post("/submit")
async def submit_test(req: SubmitTestRequest, user: User = Depends(require_paid_access), db: Session = Depends(get_db)):
	test = db.get(Test, req.test_id)
	if test is None or test.user_id != user.id:
		raise HTTPException(status_code=404, detail="Test session not found")
	submitted = db.scalar(select(TestResult.id).where(TestResult.test_id == test.id))
	if submitted is not None:
		raise HTTPException(status_code=409, detail={"message": "Test already submitted", "result_id": submitted})

	answers = {a.question_id: a for a in req.answers}
	# Score against the questions this test served, unanswered ones count as wrong
	served = db.scalars(select(Question).where(Question.id.in_(test.question_ids))).all()
	order = {qid: i for i, qid in enumerate(test.question_ids)}
	questions = sorted(served, key=lambda q: order[q.id])
	user_answers = [answers[q.id].user_answer if q.id in answers else None for q in questions]
	scored = calculate_test_score(questions, user_answers)

	result = TestResult(
		user_id=user.id,
		test_id=test.id,
		test_name=test.name,
		subjects=test.subjects,
		topics=test.topics,
		difficulty=test.difficulty,
		total_questions=test.total_questions,
		correct_answers=scored["correct_answers"],
		score=scored["score"],
		time_spent=req.time_spent,
		subject_scores=scored["subject_scores"],
		is_complete=True,
		completed_at=datetime.utcnow(),
	)
	for position, item in enumerate(scored["question_results"]):
		answer = answers.get(item["question_id"])
		result.questions.append(
			TestQuestion(
				question_id=item["question_id"],
				user_answer=item["user_answer"],
				is_correct=item["is_correct"],
				position=position,
				time_spent=answer.time_spent if answer else 0,
			)
		)
	db.add(result)
	try:
		db.commit()
	except IntegrityError:
		db.rollback()
		raise HTTPException(status_code=409, detail={"message": "Test already submitted"})
	db.refresh(result)
	logger.info("User %s submitted test %s: %.2f%%", user.id, test.id, result.score)

	return {
		"test_result": {
			"id": result.id,
			"score": result.score,
			"correct_answers": result.correct_answers,
			"total_questions": result.total_questions,
			"time_spent": result.time_spent,
			"subject_scores": result.subject_scores,
			"completed_at": result.completed_at,
			"can_download_pdf": True,
		},
		"questions": [
			_question_review(q, ans, r["is_correct"])
			for q, ans, r in zip(questions, user_answers, scored["question_results"])
		],
	}


@router.get("/history")
async def test_history(
	page: int = Query(default=1, ge=1),
	limit: int = Query(default=10, ge=1, le=50),
	user: User = Depends(get_current_user),
	db: Session = Depends(get_db),
):
	where = (TestResult.user_id == user.id, TestResult.is_complete.is_(True))
	total = db.scalar(select(func.count(TestResult.id)).where(*where)) or 0
	results = db.scalars(
		select(TestResult)
		.where(*where)
		.order_by(TestResult.completed_at.desc())
		.offset((page - 1) * limit)
		.limit(limit)
	).all()
	return {
		"data": [
			{
				"id": r.id,
				"test_name": r.test_name,
				"difficulty": r.difficulty,
				"score": r.score,
				"correct_answers": r.correct_answers,
				"total_questions": r.total_questions,
				"time_spent": r.time_spent,
				"subject_scores": r.subject_scores,
				"completed_at": r.completed_at,
			}
			for r in results
		],
		"pagination": page_info(page, limit, total),
		"can_download_pdf": has_access(user),
	}


@router.get("/stats")
async def user_stats(user: User = Depends(get_current_user), db: Session = Depends(get_db)):
	return get_user_stats(db, user.id)


def _load_result(db: Session, result_id: str, user: User) -> TestResult:
	result = db.scalars(
		select(TestResult)
		.options(selectinload(TestResult.questions).selectinload(TestQuestion.question))
		.where(TestResult.id == result_id, TestResult.user_id == user.id)
	).first()
	if result is None:
		raise HTTPException(status_code=404, detail=MSG_NOT_FOUND)
	return result


@router.get("/result/{result_id}")
async def test_result(result_id: str, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
	result = _load_result(db, result_id, user)
	return {
		"id": result.id,
		"test_name": result.test_name,
		"difficulty": result.difficulty,
		"score": result.score,
		"correct_answers": result.correct_answers,
		"total_questions": result.total_questions,
		"time_spent": result.time_spent,
		"subject_scores": result.subject_scores,
		"completed_at": result.completed_at,
		"questions": [_question_review(tq.question, tq.user_answer, tq.is_correct) for tq in result.questions],
	}


@router.get("/download/{result_id}")
async def download_result_pdf(result_id: str, user: User = Depends(require_paid_access), db: Session = Depends(get_db)):
	result = _load_result(db, result_id, user)
	pdf = build_result_pdf(result, user)
	return Response(
		content=pdf,
		media_type="application/pdf",
		headers={"Content-Disposition": f'attachment; filename="test-result-{result.id}.pdf"'},
	)
