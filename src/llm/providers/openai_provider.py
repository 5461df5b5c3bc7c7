from __future__ import annotations
import os
from typing import Any, Dict, Optional

import httpx

from .base import HttpChatProvider


class OpenAIProvider(HttpChatProvider):
    """OpenAI-compatible chat completions in ``json_object`` response mode."""

    endpoint = "/chat/completions"

    def __init__(self, timeout_s: float = 30.0, transport: Optional[httpx.BaseTransport] = None):
        super().__init__(
            base_url=os.getenv("OPENAI_BASE_URL", "https://api.openai.com/v1").strip(),
            model=os.getenv("OPENAI_MODEL", "gpt-4o-mini").strip(),
            timeout_s=timeout_s,
            transport=transport,
        )
        self.api_key = os.getenv("OPENAI_API_KEY", "").strip()
        if not self.api_key:
            raise RuntimeError("OPENAI_API_KEY is missing")

    def headers(self) -> Dict[str, str]:
        return {**super().headers(), "Authorization": f"Bearer {self.api_key}"}

    def build_payload(self, system: str, user: str) -> Dict[str, Any]:
        return {
            "model": self.model,
            "messages": [
                {"role": "system", "content": system},
                {"role": "user", "content": user},
            ],
            "response_format": {"type": "json_object"},
            "temperature": self.temperature,
        }

    def read_content(self, data: Dict[str, Any]) -> str:
        return data["choices"][0]["message"]["content"]
