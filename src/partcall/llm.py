import json
import logging

import httpx

from partcall.circuit_breaker import MODEL_CALL_ERRORS, CircuitOpenError, llm_breaker
from partcall.classification import guard_voicemail
from partcall.prompts import CLASSIFY_PROMPT, EXTRACTION_PROMPT, VALID_INTENTS, format_parts_list
from partcall.session import Part
from partcall.states import Intent

logger = logging.getLogger(__name__)

OPENAI_BASE_URL = "https://api.openai.com/v1"


class LLMError(Exception):
    """The model call failed or returned something unusable."""


class LLMClient:
    """Chat-completions client for turn classification and quote extraction.

    Every call has a hard timeout and raises LLMError on any failure, so
    the caller can fall back to the rule-based path. After 3 consecutive
    failures the circuit opens and calls fail immediately for 30s.
    """

    def __init__(
        self,
        api_key: str,
        model: str = "gpt-4o-mini",
        base_url: str = OPENAI_BASE_URL,
        timeout: float = 1.5,
        client: httpx.AsyncClient | None = None,
    ):
        self.model = model
        self.timeout = timeout
        self._circuit = llm_breaker()
        if client is not None:
            self._client = client
        else:
            self._client = httpx.AsyncClient(
                base_url=base_url.rstrip("/"),
                headers={
                    "Authorization": f"Bearer {api_key}",
                    "Content-Type": "application/json",
                },
                timeout=self.timeout,
            )

    async def close(self):
        await self._client.aclose()

    async def _post_chat(self, system: str, user: str, timeout: float | None) -> dict:
        resp = await self._client.post(
            "/chat/completions",
            json={
                "model": self.model,
                "temperature": 0,
                "response_format": {"type": "json_object"},
                "messages": [
                    {"role": "system", "content": system},
                    {"role": "user", "content": user},
                ],
            },
            timeout=timeout if timeout is not None else self.timeout,
        )
        resp.raise_for_status()
        content = resp.json()["choices"][0]["message"]["content"]
        data = json.loads(content)
        if not isinstance(data, dict):
            raise ValueError("response is not a JSON object")
        return data

    async def _chat_json(self, system: str, user: str, timeout: float | None) -> dict:
        try:
            return await self._circuit.call(self._post_chat, system, user, timeout)
        except CircuitOpenError as e:
            raise LLMError(str(e)) from e
        except MODEL_CALL_ERRORS as e:
            raise LLMError(f"{type(e).__name__}: {e}") from e

    async def classify(
        self,
        utterance: str,
        node: str,
        context: str = "",
        timeout: float | None = None,
    ) -> Intent:
        user = f"{context}\n\nCurrent step: {node}\nSupplier said: \"{utterance}\""
        data = await self._chat_json(CLASSIFY_PROMPT, user, timeout)
        label = str(data.get("intent", "")).strip().lower()
        if label not in VALID_INTENTS:
            raise LLMError(f"unknown intent label: {label!r}")
        return guard_voicemail(Intent(label), utterance)

    async def extract_quotes(
        self,
        utterance: str,
        parts: list[Part],
        current: Part | None = None,
        timeout: float | None = None,
    ) -> list[dict]:
        """Raw quote dicts as returned by the model; validated by extraction.py."""
        system = f"{EXTRACTION_PROMPT}\n\n{format_parts_list(parts, current)}"
        data = await self._chat_json(system, f"Supplier said: \"{utterance}\"", timeout)
        quotes = data.get("quotes")
        if not isinstance(quotes, list):
            raise LLMError("response missing quotes list")
        return [q for q in quotes if isinstance(q, dict)]
