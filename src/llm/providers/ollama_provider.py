from __future__ import annotations
import os
from typing import Any, Dict, Optional

import httpx

from .base import HttpChatProvider


class OllamaProvider(HttpChatProvider):
    endpoint = "/api/chat"

    def __init__(self, timeout_s: float = 60.0, transport: Optional[httpx.BaseTransport] = None):
        super().__init__(
            base_url=os.getenv("OLLAMA_BASE_URL", "http://localhost:11434").strip(),
            model=os.getenv("OLLAMA_MODEL", "llama3.1").strip(),
            timeout_s=timeout_s,
            transport=transport,
        )

    def build_payload(self, system: str, user: str) -> Dict[str, Any]:
        # non-streaming so the whole reply arrives as one JSON document
        return {
            "model": self.model,
            "stream": False,
            "format": "json",
            "messages": [
                {"role": "system", "content": system},
                {"role": "user", "content": user},
            ],
            "options": {"temperature": self.temperature},
        }

    def read_content(self, data: Dict[str, Any]) -> str:
        return data["message"]["content"]
