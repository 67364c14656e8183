from __future__ import annotations
import httpx
import logging
from typing import Any, Callable, Dict, List, Optional
from .documents import LoadedDocument
from .settings import settings

logger = logging.getLogger(__name__)

GENERATION_CONFIG: Dict[str, Any] = {
	"temperature": 0.9,
	"topP": 0.95,
	"topK": 64,
	"maxOutputTokens": 16384,
	"responseMimeType": "text/plain",
}

DOCUMENT_READING_NOTE = (
	"\n\nHƯỚNG DẪN XỬ LÝ TÀI LIỆU QUAN TRỌNG:\n"
	"- Hãy đọc và xử lý TOÀN BỘ tài liệu, từ đầu đến cuối, không bỏ sót phần nào.\n"
	"- Khi trả lời, hãy trích dẫn các phần cụ thể của tài liệu nếu có liên quan.\n"
	"- Đảm bảo phản hồi đầy đủ và chi tiết."
)


class GeminiError(RuntimeError):
	pass


class GeminiClient:
	def __init__(self, api_key: Optional[str] = None, *, base_url: Optional[str] = None, model: Optional[str] = None) -> None:
		self.api_key = api_key or settings.gemini_api_key
		if not self.api_key:
			raise ValueError("GEMINI_API_KEY is not configured")
		self.model = model or settings.gemini_model
		self.provider = settings.gemini_provider
		if self.provider == "vertex":
			region = settings.vertex_region
			project = settings.vertex_project or "placeholder-project"
			# Vertex AI Generative REST endpoint (API key via header)
			self.base_url = base_url or (
				f"https://{region}-aiplatform.googleapis.com/v1/projects/{project}/locations/{region}/publishers/google/models/{self.model}:generateContent"
			)
			self._auth_in_query = False
		else:
			# Google AI Studio (Generative Language API)
			self.base_url = base_url or f"https://generativelanguage.googleapis.com/v1beta/models/{self.model}:generateContent"
			self._auth_in_query = True
		self._client = httpx.AsyncClient(timeout=settings.gemini_timeout_seconds)
		self._fallback_client: Optional[httpx.AsyncClient] = None
		self._fallback_enabled = bool(settings.openrouter_api_key)
		self._openrouter_api_key = settings.openrouter_api_key
		self._openrouter_model = settings.openrouter_model
		self._openrouter_base_url = settings.openrouter_base_url
		self._openrouter_headers = {
			"Authorization": f"Bearer {self._openrouter_api_key}" if self._openrouter_api_key else "",
			"Content-Type": "application/json",
			"HTTP-Referer": settings.openrouter_referer,
			"X-Title": settings.openrouter_title,
		}
		if self._fallback_enabled:
			self._fallback_client = httpx.AsyncClient(timeout=settings.gemini_timeout_seconds)

	async def generate(self, prompt: str, *, system_prompt: Optional[str] = None) -> str:
		payload = self._build_payload([{"text": prompt}], system_prompt=system_prompt)
		return await self._post_payload(payload, fallback_prompt=prompt, system_prompt=system_prompt)

	async def generate_with_document(
		self,
		prompt: str,
		document: Optional[LoadedDocument],
		*,
		system_prompt: Optional[str] = None,
	) -> str:
		if document is None:
			return await self.generate(prompt, system_prompt=system_prompt)
		parts: List[Dict[str, Any]] = [{"text": prompt + DOCUMENT_READING_NOTE}, document.inline_part()]
		return await self.generate_multimodal(parts, system_prompt=system_prompt)

	async def generate_multimodal(
		self,
		parts: List[Dict[str, Any]],
		*,
		role: str = "user",
		system_prompt: Optional[str] = None,
	) -> str:
		payload = self._build_payload(parts, role=role, system_prompt=system_prompt)
		# The fallback provider cannot read inline documents
		return await self._post_payload(payload, fallback_prompt=None, allow_fallback=False)

	def _build_payload(self, parts: List[Dict[str, Any]], *, role: str = "user", system_prompt: Optional[str] = None) -> Dict[str, Any]:
		payload: Dict[str, Any] = {
			"contents": [{"role": role, "parts": parts}],
			"generationConfig": dict(GENERATION_CONFIG),
		}
		if system_prompt:
			payload["systemInstruction"] = {"parts": [{"text": system_prompt}]}
		return payload

	async def _post_payload(
		self,
		payload: Dict[str, Any],
		*,
		fallback_prompt: Optional[str],
		system_prompt: Optional[str] = None,
		allow_fallback: bool = True,
	) -> str:
		params: Dict[str, Any] = {}
		headers: Dict[str, str] = {}
		if self._auth_in_query:
			params["key"] = self.api_key
		else:
			headers["x-goog-api-key"] = self.api_key
		last_error: Optional[Exception] = None
		try:
			r = await self._client.post(self.base_url, params=params, headers=headers, json=payload)
			r.raise_for_status()
		except httpx.HTTPStatusError as http_err:
			last_error = GeminiError(f"Gemini returned HTTP {http_err.response.status_code}")
		except httpx.RequestError as net_err:
			last_error = GeminiError(f"Gemini request failed: {net_err}")
		if last_error is None:
			try:
				return self._extract_text(r.json())
			except GeminiError as err:
				last_error = err
			except (KeyError, IndexError, TypeError, ValueError):
				last_error = GeminiError(f"Unexpected Gemini response: {r.text[:500]}")
		logger.warning("Gemini call to %s failed: %s", self.model, last_error)
		if not allow_fallback or not self._fallback_enabled or fallback_prompt is None:
			raise last_error
		if system_prompt:
			fallback_prompt = f"{system_prompt}\n\n{fallback_prompt}"
		return await self._fallback_generate(fallback_prompt, last_error)

	@staticmethod
	def _extract_text(data: Dict[str, Any]) -> str:
		feedback = data.get("promptFeedback") or {}
		if feedback.get("blockReason"):
			raise GeminiError("Nội dung vi phạm chính sách an toàn và không thể xử lý.")
		candidate = data["candidates"][0]
		if candidate.get("finishReason") == "SAFETY":
			raise GeminiError("Nội dung vi phạm chính sách an toàn và không thể xử lý.")
		parts = candidate["content"]["parts"]
		return "".join(p.get("text", "") for p in parts)

	async def aclose(self) -> None:
		await self._client.aclose()
		if self._fallback_client is not None:
			await self._fallback_client.aclose()

	async def _fallback_generate(self, prompt: str, primary_error: Optional[Exception]) -> str:
		if not self._fallback_client or not self._openrouter_api_key:
			raise primary_error or GeminiError("Fallback requested but OpenRouter is not configured")
		headers = {k: v for k, v in self._openrouter_headers.items() if v}
		payload: Dict[str, Any] = {
			"model": self._openrouter_model,
			"messages": [{"role": "user", "content": prompt}],
		}
		try:
			r = await self._fallback_client.post(
				self._openrouter_base_url,
				headers=headers,
				json=payload,
			)
			r.raise_for_status()
			data = r.json()
			return data["choices"][0]["message"]["content"]
		except Exception as fallback_err:
			raise GeminiError(
				f"Gemini primary call failed ({primary_error}); fallback via OpenRouter also failed"
			) from fallback_err


GeminiFactory = Callable[..., GeminiClient]


def get_gemini_factory() -> GeminiFactory:
	"""Dependency returning the client constructor; tests swap in a fake."""
	return GeminiClient
