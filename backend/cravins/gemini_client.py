from __future__ import annotations
import json
import logging
import re
from typing import Any, Dict, List, Optional, Sequence, Tuple

import httpx

from .errors import LLMError
from .settings import settings

logger = logging.getLogger(__name__)

# (role, text) where role is "user" or "model"
ChatTurn = Tuple[str, str]


class GeminiClient:
	def __init__(self, api_key: Optional[str] = None, *, base_url: Optional[str] = None, model: Optional[str] = None) -> None:
		self.api_key = api_key or settings.gemini_api_key
		if not self.api_key:
			raise LLMError("GEMINI_API_KEY is not configured")
		self.model = model or settings.gemini_model
		if settings.gemini_provider == "vertex":
			region = settings.vertex_region
			project = settings.vertex_project or "placeholder-project"
			self.base_url = base_url or (
				f"https://{region}-aiplatform.googleapis.com/v1/projects/{project}/locations/{region}/publishers/google/models/{self.model}:generateContent"
			)
			self._auth_in_query = False
		else:
			self.base_url = base_url or f"https://generativelanguage.googleapis.com/v1beta/models/{self.model}:generateContent"
			self._auth_in_query = True
		self._client = httpx.AsyncClient(timeout=settings.gemini_timeout_seconds)
		self._fallback_client: Optional[httpx.AsyncClient] = None
		self._openrouter_api_key = settings.openrouter_api_key
		if self._openrouter_api_key:
			self._fallback_client = httpx.AsyncClient(timeout=settings.gemini_timeout_seconds)

	async def generate(self, prompt: str) -> str:
		return await self.chat([("user", prompt)])

	async def chat(self, turns: Sequence[ChatTurn]) -> str:
		contents = [{"role": role, "parts": [{"text": text}]} for role, text in turns]
		try:
			return await self._post_contents(contents)
		except LLMError as primary_error:
			if self._fallback_client is None:
				raise
			logger.warning("Gemini call failed (%s); retrying via OpenRouter", primary_error)
			return await self._fallback_chat(turns, primary_error)

	async def _post_contents(self, contents: List[Dict[str, Any]]) -> str:
		params: Dict[str, Any] = {}
		headers: Dict[str, str] = {}
		if self._auth_in_query:
			params["key"] = self.api_key
		else:
			headers["x-goog-api-key"] = self.api_key
		try:
			r = await self._client.post(self.base_url, params=params, headers=headers, json={"contents": contents})
			r.raise_for_status()
		except httpx.HTTPStatusError as http_err:
			raise LLMError(f"Gemini returned HTTP {http_err.response.status_code}") from http_err
		except httpx.RequestError as net_err:
			raise LLMError(f"Gemini request failed: {net_err}") from net_err
		try:
			data = r.json()
			return data["candidates"][0]["content"]["parts"][0]["text"]
		except (ValueError, KeyError, IndexError, TypeError) as shape_err:
			raise LLMError(f"Unexpected Gemini response: {r.text[:200]}") from shape_err

	async def _fallback_chat(self, turns: Sequence[ChatTurn], primary_error: Exception) -> str:
		headers = {
			"Authorization": f"Bearer {self._openrouter_api_key}",
			"Content-Type": "application/json",
			"HTTP-Referer": settings.openrouter_referer,
			"X-Title": settings.openrouter_title,
		}
		payload: Dict[str, Any] = {
			"model": settings.openrouter_model,
			"messages": [
				{"role": "assistant" if role == "model" else "user", "content": text}
				for role, text in turns
			],
		}
		try:
			r = await self._fallback_client.post(settings.openrouter_base_url, headers=headers, json=payload)
			r.raise_for_status()
			return r.json()["choices"][0]["message"]["content"]
		except (httpx.HTTPError, ValueError, KeyError, IndexError, TypeError) as fallback_err:
			raise LLMError(
				f"Gemini primary call failed ({primary_error}); fallback via OpenRouter also failed"
			) from fallback_err

	async def aclose(self) -> None:
		await self._client.aclose()
		if self._fallback_client is not None:
			await self._fallback_client.aclose()


def extract_json(text: str) -> Any:
	"""Parse a JSON value out of model output.

	Accepts bare JSON, a ```json fenced block, or the outermost array/object
	span embedded in prose.
	"""
	try:
		return json.loads(text)
	except ValueError:
		pass
	code_block = re.search(r"```(?:json)?\s*([\s\S]*?)\s*```", text)
	if code_block:
		try:
			return json.loads(code_block.group(1))
		except ValueError:
			pass
	spans = []
	for open_ch, close_ch in (("[", "]"), ("{", "}")):
		first = text.find(open_ch)
		last = text.rfind(close_ch)
		if first != -1 and last > first:
			spans.append((first, last))
	# Outermost value starts earliest
	for first, last in sorted(spans):
		try:
			return json.loads(text[first : last + 1])
		except ValueError:
			continue
	raise LLMError("LLM did not return valid JSON.")
