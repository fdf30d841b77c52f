from __future__ import annotations
from io import BytesIO
from typing import List
from xml.sax.saxutils import escape

from reportlab.lib import colors
from reportlab.lib.pagesizes import A4
from reportlab.lib.styles import getSampleStyleSheet
from reportlab.platypus import Paragraph, SimpleDocTemplate, Spacer, Table, TableStyle

from .models import TestResult, User

OPTION_LABELS = "ABCD"


def performance_band(score: float) -> str:
	if score >= 80:
		return "Excellent"
	if score >= 60:
		return "Good"
	if score >= 40:
		return "Fair"
	return "Needs improvement"


def _label(index) -> str:
	if index is None or not 0 <= index < len(OPTION_LABELS):
		return "Not answered"
	return OPTION_LABELS[index]


def build_result_pdf(result: TestResult, user: User) -> bytes:
	"""Render a test result, with per-question review, as PDF bytes."""
	buffer = BytesIO()
	doc = SimpleDocTemplate(buffer, pagesize=A4, title=f"Cravins result {result.id}")
	styles = getSampleStyleSheet()
	story: List = []

	story.append(Paragraph("CRAVINS CBT TEST RESULTS", styles["Title"]))
	story.append(Spacer(1, 12))

	story.append(Paragraph("Student Information", styles["Heading2"]))
	story.append(Paragraph(escape(f"Name: {user.first_name} {user.last_name}"), styles["Normal"]))
	story.append(Paragraph(escape(f"Email: {user.email}"), styles["Normal"]))
	story.append(Paragraph(f"Completed: {result.completed_at:%Y-%m-%d %H:%M} UTC", styles["Normal"]))
	story.append(Spacer(1, 12))

	minutes, seconds = divmod(result.time_spent or 0, 60)
	summary = [
		["Test", result.test_name],
		["Difficulty", result.difficulty],
		["Total questions", str(result.total_questions)],
		["Correct answers", str(result.correct_answers)],
		["Score", f"{result.score:.1f}%"],
		["Time spent", f"{minutes} min {seconds} s"],
		["Performance", performance_band(result.score)],
	]
	table = Table(summary, colWidths=[130, 330])
	table.setStyle(TableStyle([
		("FONTNAME", (0, 0), (0, -1), "Helvetica-Bold"),
		("BACKGROUND", (0, 0), (0, -1), colors.lightgrey),
		("GRID", (0, 0), (-1, -1), 0.5, colors.grey),
		("VALIGN", (0, 0), (-1, -1), "TOP"),
	]))
	story.append(Paragraph("Test Summary", styles["Heading2"]))
	story.append(table)
	story.append(Spacer(1, 12))

	if result.subject_scores:
		story.append(Paragraph("Subject-wise Performance", styles["Heading2"]))
		rows = [["Subject", "Score"]] + [
			[name, f"{score:.1f}%"] for name, score in sorted(result.subject_scores.items())
		]
		subject_table = Table(rows, colWidths=[330, 130])
		subject_table.setStyle(TableStyle([
			("BACKGROUND", (0, 0), (-1, 0), colors.grey),
			("TEXTCOLOR", (0, 0), (-1, 0), colors.whitesmoke),
			("FONTNAME", (0, 0), (-1, 0), "Helvetica-Bold"),
			("GRID", (0, 0), (-1, -1), 0.5, colors.grey),
		]))
		story.append(subject_table)
		story.append(Spacer(1, 12))

	story.append(Paragraph("Question Review", styles["Heading2"]))
	for number, tq in enumerate(result.questions, start=1):
		q = tq.question
		story.append(Paragraph(escape(f"{number}. {q.text}"), styles["Heading4"]))
		for i, option in enumerate(q.options):
			story.append(Paragraph(escape(f"{OPTION_LABELS[i]}. {option}"), styles["Normal"]))
		verdict = "Correct" if tq.is_correct else "Incorrect"
		story.append(Paragraph(
			escape(f"Your answer: {_label(tq.user_answer)} ({verdict}). Correct answer: {_label(q.correct_answer)}."),
			styles["Italic"],
		))
		story.append(Paragraph(escape(f"Explanation: {q.explanation}"), styles["Normal"]))
		story.append(Spacer(1, 8))

	doc.build(story)
	return buffer.getvalue()
