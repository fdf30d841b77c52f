from __future__ import annotations
from typing import Any, Dict, Iterable, List, Sequence

from .constants import OPTIONS_PER_QUESTION
from .errors import LLMError
from .gemini_client import ChatTurn, GeminiClient, extract_json


TUTOR_PERSONA = (
    "You are Cravins Bot, a friendly and knowledgeable AI tutor specializing in Nigerian secondary school subjects.\n"
    "Help students learn by providing clear explanations, examples, and guidance.\n"
    "Be encouraging and adapt your teaching style to the student's needs.\n"
    "Focus on subjects like Mathematics, English, Physics, Chemistry, Biology, Commerce, Economics, etc.\n"
    "Follow Nigerian curriculum standards (WAEC, NECO, JAMB)."
)

MAX_EXISTING_QUESTIONS_IN_PROMPT = 10
EXISTING_QUESTION_SNIPPET = 100


def build_topics_prompt(subject: str, count: int, existing: Sequence[str]) -> str:
    avoid = ""
    if existing:
        avoid = "Existing topics to avoid duplicating:\n" + ", ".join(existing) + "\n"
    return (
        f"Generate {count} UNIQUE curriculum-based topics for {subject} based on the NIGERIAN SENIOR SECONDARY SCHOOL curriculum (SS1, SS2, SS3).\n"
        f"{avoid}"
        "Requirements:\n"
        "- Follow ONLY the Nigerian WAEC, NECO and JAMB syllabus; no topics from other countries' curricula.\n"
        "- Topics must be distinct from the existing topics listed above.\n"
        "- Cover different areas of the syllabus; be specific and clear.\n"
        f"Return ONLY a JSON array of {count} topic name strings, e.g. [\"Indices\", \"Logarithms\"]. No other text."
    )


def build_questions_prompt(
    subject: str,
    topic: str,
    difficulty: str,
    count: int,
    existing_texts: Sequence[str],
) -> str:
    avoid = ""
    if existing_texts:
        lines = [
            f"{i}. {text[:EXISTING_QUESTION_SNIPPET]}..."
            for i, text in enumerate(existing_texts[:MAX_EXISTING_QUESTIONS_IN_PROMPT], start=1)
        ]
        avoid = "Avoid creating questions similar to these existing ones:\n" + "\n".join(lines) + "\n"
    return (
        f"Generate {count} UNIQUE multiple choice questions for {subject} covering this topic: {topic}.\n"
        f"Difficulty: {difficulty}.\n"
        f"{avoid}"
        "Requirements:\n"
        "- Each question must differ from the existing questions and from each other.\n"
        "- Vary the format (calculation, concept, application, analysis).\n"
        "- Follow Nigerian senior secondary school curriculum standards.\n"
        "Each question is a JSON object with keys: text (string), options (array of exactly 4 distinct strings), "
        "correctAnswer (integer 0-3), explanation (string).\n"
        f"Return ONLY a valid JSON array of {count} questions. No additional text."
    )


def parse_topics(raw: str, existing: Iterable[str]) -> List[str]:
    data = extract_json(raw)
    if not isinstance(data, list):
        raise LLMError("Invalid topics format from LLM")
    seen = {name.strip().lower() for name in existing}
    topics: List[str] = []
    for item in data:
        if not isinstance(item, str):
            continue
        name = item.strip()
        key = name.lower()
        if not name or key in seen:
            continue
        seen.add(key)
        topics.append(name)
    return topics


def _valid_question(item: Any) -> bool:
    if not isinstance(item, dict):
        return False
    text = item.get("text")
    options = item.get("options")
    answer = item.get("correctAnswer")
    explanation = item.get("explanation")
    return (
        isinstance(text, str) and bool(text.strip())
        and isinstance(options, list) and len(options) == OPTIONS_PER_QUESTION
        and all(isinstance(o, (str, int, float)) and str(o).strip() for o in options)
        # bool is an int subclass; reject it explicitly
        and isinstance(answer, int) and not isinstance(answer, bool)
        and 0 <= answer < OPTIONS_PER_QUESTION
        and isinstance(explanation, str) and bool(explanation.strip())
    )


def parse_questions(raw: str) -> List[Dict[str, Any]]:
    data = extract_json(raw)
    if not isinstance(data, list) or not data:
        raise LLMError("Invalid questions format from LLM")
    return [
        {
            "text": item["text"].strip(),
            "options": [str(o).strip() for o in item["options"]],
            "correct_answer": item["correctAnswer"],
            "explanation": item["explanation"].strip(),
        }
        for item in data
        if _valid_question(item)
    ]


async def generate_topics(client: GeminiClient, subject: str, count: int, existing: Sequence[str]) -> List[str]:
    raw = await client.generate(build_topics_prompt(subject, count, existing))
    return parse_topics(raw, existing)


async def generate_questions(
    client: GeminiClient,
    subject: str,
    topic: str,
    difficulty: str,
    count: int,
    existing_texts: Sequence[str] = (),
) -> List[Dict[str, Any]]:
    raw = await client.generate(build_questions_prompt(subject, topic, difficulty, count, existing_texts))
    return parse_questions(raw)


async def chat_with_bot(client: GeminiClient, message: str, history: Sequence[Dict[str, str]]) -> str:
    turns: List[ChatTurn] = [("user", TUTOR_PERSONA)]
    for entry in history:
        role = "model" if entry["role"].lower() == "assistant" else "user"
        turns.append((role, entry["content"]))
    turns.append(("user", message))
    return await client.chat(turns)
