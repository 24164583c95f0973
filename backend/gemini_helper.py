import asyncio
import logging
from typing import List, Optional, Protocol

import httpx

logger = logging.getLogger(__name__)


class ChatGenerationError(Exception):
    pass


class ChatClient(Protocol):
    async def generate(self, prompt: str, system_message: str, retries: int = 2) -> str:
        ...


class GeminiChatClient:
    def __init__(
        self,
        api_keys: List[str],
        model: str = "gemini-2.0-flash",
        timeout_seconds: float = 30.0,
        temperature: float = 0.7,
        max_output_tokens: int = 1024,
    ):
        if not api_keys:
            raise ValueError("At least one Gemini API key is required")
        self.api_keys = api_keys
        self.model = model
        self.timeout_seconds = timeout_seconds
        self.temperature = temperature
        self.max_output_tokens = max_output_tokens
        self.base_url = "https://generativelanguage.googleapis.com/v1beta"

    def _request_body(self, prompt: str, system_message: str) -> dict:
        return {
            "system_instruction": {"parts": [{"text": system_message}]},
            "contents": [{"role": "user", "parts": [{"text": prompt}]}],
            "generationConfig": {
                "temperature": self.temperature,
                "topK": 40,
                "topP": 0.95,
                "maxOutputTokens": self.max_output_tokens,
            },
        }

    @staticmethod
    def _extract_text(data: dict) -> str:
        candidates = data.get("candidates") or [{}]
        parts = candidates[0].get("content", {}).get("parts", [])
        text = "\n".join(part.get("text", "") for part in parts if isinstance(part, dict)).strip()
        if not text:
            raise ValueError("Gemini response contained no text")
        return text

    async def generate(self, prompt: str, system_message: str, retries: int = 2) -> str:
        last_error: Optional[str] = None
        total_attempts = max(retries, 1) * len(self.api_keys)
        for attempt in range(1, total_attempts + 1):
            api_key = self.api_keys[(attempt - 1) % len(self.api_keys)]
            try:
                async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
                    response = await client.post(
                        f"{self.base_url}/models/{self.model}:generateContent",
                        params={"key": api_key},
                        headers={"Content-Type": "application/json"},
                        json=self._request_body(prompt, system_message),
                    )
                    response.raise_for_status()
                    return self._extract_text(response.json())
            except httpx.HTTPStatusError as e:
                status = e.response.status_code if e.response is not None else "unknown"
                body = e.response.text[:300] if e.response is not None else str(e)
                last_error = f"HTTP {status}: {body}"
                logger.warning(
                    "Gemini chat status error attempt %s/%s: %s",
                    attempt,
                    total_attempts,
                    last_error,
                )
            except Exception as e:
                last_error = str(e)
                logger.warning(
                    "Gemini chat error attempt %s/%s: %s",
                    attempt,
                    total_attempts,
                    last_error,
                )
            if attempt < total_attempts:
                await asyncio.sleep(0.5 * attempt)

        raise ChatGenerationError(f"Chat generation failed after {total_attempts} attempts: {last_error}")


def build_chat_client(
    gemini_api_key: Optional[str],
    gemini_api_keys: Optional[List[str]] = None,
    model: str = "gemini-2.0-flash",
    timeout_seconds: float = 30.0,
) -> Optional[GeminiChatClient]:
    keys: List[str] = []
    if gemini_api_keys:
        keys.extend([k for k in gemini_api_keys if k])
    if gemini_api_key and gemini_api_key not in keys:
        keys.append(gemini_api_key)
    if not keys:
        return None
    return GeminiChatClient(api_keys=keys, model=model, timeout_seconds=timeout_seconds)
