from __future__ import annotations
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

import httpx


class LLMProvider(ABC):
    model: str = "unknown"

    @abstractmethod
    def generate(self, *, system: str, user: str) -> str:
        """
        Must return the model output as TEXT (LLMClient extracts and validates the JSON).
        """
        raise NotImplementedError


class HttpChatProvider(LLMProvider):
    """
    A provider reached over an HTTP chat endpoint that is asked for JSON mode.
    Subclasses supply the endpoint, the request body and where the reply text lives.
    Transport errors propagate as httpx exceptions for LLMClient to classify.
    """

    temperature = 0.2

    def __init__(self, base_url: str, model: str, timeout_s: float,
                 transport: Optional[httpx.BaseTransport] = None):
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.timeout_s = timeout_s
        self.transport = transport

    @property
    @abstractmethod
    def endpoint(self) -> str: ...

    def headers(self) -> Dict[str, str]:
        return {"Content-Type": "application/json"}

    @abstractmethod
    def build_payload(self, system: str, user: str) -> Dict[str, Any]: ...

    @abstractmethod
    def read_content(self, data: Dict[str, Any]) -> str: ...

    def generate(self, *, system: str, user: str) -> str:
        with httpx.Client(timeout=self.timeout_s, transport=self.transport) as client:
            r = client.post(f"{self.base_url}{self.endpoint}", headers=self.headers(),
                            json=self.build_payload(system, user))
            r.raise_for_status()
            data = r.json()
        return self.read_content(data)
