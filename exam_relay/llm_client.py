import logging
from typing import Any, Dict, List, Optional

from openai import AsyncOpenAI, OpenAIError

from .errors import UpstreamError

logger = logging.getLogger(__name__)

Message = Dict[str, Any]

UPSTREAM_FAILED = "The language model request failed. Please try again later."
UPSTREAM_EMPTY = "The language model returned an empty response."


def text_message(role: str, content: str) -> Message:
    return {"role": role, "content": content}


def image_part(image: str) -> Dict[str, Any]:
    """Vision content part; bare base64 is wrapped as a JPEG data URL."""
    url = image if image.startswith(("data:", "http://", "https://")) else f"data:image/jpeg;base64,{image}"
    return {"type": "image_url", "image_url": {"url": url}}


def vision_message(instruction: str, images: List[str]) -> Message:
    content = [{"type": "text", "text": instruction}]
    content.extend(image_part(img) for img in images)
    return {"role": "user", "content": content}


class ChatModel:
    """
    Thin async wrapper over the chat-completions endpoint.

    One request per call, no retries. Upstream failures are logged with their
    detail and re-raised as UpstreamError with a generic message.
    """

    def __init__(self, settings, client: Optional[AsyncOpenAI] = None):
        self.settings = settings
        self.model = settings.openai_model
        self._client = client

    @property
    def client(self) -> AsyncOpenAI:
        if self._client is None:
            self._client = AsyncOpenAI(
                api_key=self.settings.require_openai_key(),
                base_url=self.settings.openai_base_url,
                timeout=self.settings.openai_timeout,
                max_retries=0,
            )
        return self._client

    async def complete(self, messages: List[Message], max_tokens: int = 4000, temperature: float = 0.7) -> str:
        try:
            response = await self.client.chat.completions.create(
                model=self.model,
                messages=messages,
                temperature=temperature,
                max_completion_tokens=max_tokens,
                stream=False,
            )
        except OpenAIError as e:
            logger.error("Chat completion failed (%s): %s", type(e).__name__, e)
            raise UpstreamError(UPSTREAM_FAILED) from e

        if not response.choices:
            logger.error("Chat completion returned no choices")
            raise UpstreamError(UPSTREAM_EMPTY)

        content = response.choices[0].message.content
        if not content or not content.strip():
            logger.error("Chat completion returned empty content (finish_reason=%s)",
                         response.choices[0].finish_reason)
            raise UpstreamError(UPSTREAM_EMPTY)
        return content.strip()
