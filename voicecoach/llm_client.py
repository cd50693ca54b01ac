"""
Chat-completion client (OpenAI-compatible API).

Every call is bounded by ``llm_timeout``. Transport errors, timeouts,
non-2xx responses and empty completions all come back as ``None`` so each
caller can decide whether a missing completion is fatal:
- live conversation turn: fatal (the user has been heard)
- continuation opener: replaced by a canned opener
- end-of-session summary: fatal, session stays open
"""

import httpx
import logging
from typing import Optional, Dict, List
from .config import get_settings

logger = logging.getLogger(__name__)


class ChatCompletionClient:
    def __init__(self):
        self.settings = get_settings()
        self.api_key = self.settings.openai_api_key
        self.model = self.settings.openai_model
        self.timeout = float(self.settings.llm_timeout)
        self.base_url = self.settings.openai_base_url.rstrip("/")

    async def complete(
        self,
        messages: List[Dict[str, str]],
        temperature: float = 0.2,
        top_p: Optional[float] = None,
        max_tokens: Optional[int] = None
    ) -> Optional[str]:
        """
        Send role-tagged messages and return the stripped completion text.

        Returns:
            Completion text, or None if the call fails, times out or is empty
        """
        payload = {
            "model": self.model,
            "messages": messages,
            "temperature": temperature,
        }
        if top_p is not None:
            payload["top_p"] = top_p
        if max_tokens is not None:
            payload["max_tokens"] = max_tokens
        return await self._call_llm(payload)

    async def _call_llm(self, payload: Dict) -> Optional[str]:
        try:
            headers = {
                "Authorization": f"Bearer {self.api_key}",
                "Content-Type": "application/json"
            }

            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(
                    f"{self.base_url}/chat/completions",
                    headers=headers,
                    json=payload
                )

                if not response.is_success:
                    logger.error(f"Chat completion error: {response.status_code} - {response.text[:500]}")
                    return None

                data = response.json()
                content = (data.get("choices") or [{}])[0].get("message", {}).get("content") or ""
                content = content.strip()
                if not content:
                    logger.error("Chat completion returned empty content")
                    return None
                return content

        except httpx.TimeoutException:
            logger.warning(f"LLM call timed out after {self.timeout}s")
            return None
        except Exception as e:
            logger.error(f"LLM call failed: {e}")
            return None


# Module-level instance
_client: Optional[ChatCompletionClient] = None


def get_llm_client() -> ChatCompletionClient:
    """Get or create the global LLM client"""
    global _client
    if _client is None:
        _client = ChatCompletionClient()
    return _client
