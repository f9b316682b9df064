import asyncio
import logging
from abc import ABC, abstractmethod
from typing import AsyncIterator, List, Optional
from google import genai
from google.genai import types

from voice_interview.core.config import settings
from voice_interview.models.session import ChatMessage

logger = logging.getLogger(__name__)

class BaseLLMClient(ABC):
    @abstractmethod
    def stream_reply(self, system_prompt: str, history: List[ChatMessage]) -> AsyncIterator[str]:
        """Yield reply text chunks for the next interviewer turn"""
        pass

    @abstractmethod
    async def generate_json(self, prompt: str, system_instruction: str, max_output_tokens: int = 400) -> str:
        """Return the raw JSON text of a single completion"""
        pass

class GeminiClient(BaseLLMClient):
    def __init__(self, model: Optional[str] = None, temperature: float = 0.7, timeout_seconds: Optional[float] = None):
        self.model = model or settings.GEMINI_MODEL
        self.temperature = temperature
        self.timeout_seconds = timeout_seconds or settings.LLM_TIMEOUT_SECONDS
        self.client = genai.Client(api_key=settings.GEMINI_API_KEY)

    @staticmethod
    def _to_contents(history: List[ChatMessage]) -> List[types.Content]:
        contents = []
        for message in history:
            if message.role == "system":
                continue
            role = "model" if message.role == "assistant" else "user"
            contents.append(types.Content(role=role, parts=[types.Part(text=message.content)]))
        return contents

    async def stream_reply(self, system_prompt: str, history: List[ChatMessage]) -> AsyncIterator[str]:
        stream = await asyncio.wait_for(
            self.client.aio.models.generate_content_stream(
                model=self.model,
                contents=self._to_contents(history),
                config=types.GenerateContentConfig(
                    system_instruction=system_prompt,
                    temperature=self.temperature,
                    max_output_tokens=250,
                ),
            ),
            timeout=self.timeout_seconds,
        )

        iterator = stream.__aiter__()
        while True:
            try:
                chunk = await asyncio.wait_for(iterator.__anext__(), timeout=self.timeout_seconds)
            except StopAsyncIteration:
                break
            if chunk.text:
                yield chunk.text

    async def generate_json(self, prompt: str, system_instruction: str, max_output_tokens: int = 400) -> str:
        response = await asyncio.wait_for(
            self.client.aio.models.generate_content(
                model=self.model,
                contents=prompt,
                config=types.GenerateContentConfig(
                    system_instruction=system_instruction,
                    temperature=self.temperature,
                    max_output_tokens=max_output_tokens,
                    response_mime_type="application/json",
                ),
            ),
            timeout=self.timeout_seconds,
        )
        return (response.text or "").strip()
