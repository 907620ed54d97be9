from __future__ import annotations

import asyncio
import json
import time
from typing import Any, Callable

import requests
from loguru import logger

from .settings import Settings, settings as default_settings


class OpenAIResponseError(RuntimeError):
    """Transport succeeded but the model produced no usable text."""


def _text_from_output_text(payload: dict) -> str | None:
    value = payload.get("output_text")
    if isinstance(value, str) and value.strip():
        return value
    return None


def _text_from_output_items(payload: dict) -> str | None:
    output = payload.get("output")
    if not isinstance(output, list):
        return None

    parts: list[str] = []
    for item in output:
        if not isinstance(item, dict) or not isinstance(item.get("content"), list):
            continue
        for row in item["content"]:
            if not isinstance(row, dict):
                continue
            text = row.get("text")
            if isinstance(text, str) and text.strip():
                parts.append(text)
            if isinstance(text, dict) and isinstance(text.get("value"), str) and text["value"].strip():
                parts.append(text["value"])
            if isinstance(row.get("output_text"), str) and row["output_text"].strip():
                parts.append(row["output_text"])
            if row.get("type") == "output_json" and isinstance(row.get("json"), dict):
                parts.append(json.dumps(row["json"]))

    return "\n".join(parts) if parts else None


def _text_from_chat_choices(payload: dict) -> str | None:
    choices = payload.get("choices")
    if not choices or not isinstance(choices, list):
        return None
    content = (choices[0] or {}).get("message", {}).get("content", "")
    if isinstance(content, str) and content.strip():
        return content
    return None


# Response shapes seen from the Responses API (and chat-completions compatible proxies).
TEXT_EXTRACTORS: list[Callable[[dict], str | None]] = [
    _text_from_output_text,
    _text_from_output_items,
    _text_from_chat_choices,
]


def extract_output_text(payload: Any) -> str | None:
    if not isinstance(payload, dict):
        return None
    for extractor in TEXT_EXTRACTORS:
        text = extractor(payload)
        if text:
            return text
    return None


def detect_missing_output_reason(payload: Any) -> str:
    if not isinstance(payload, dict):
        return "unknown_response_shape"
    status = payload.get("status") if isinstance(payload.get("status"), str) else "unknown"
    details = payload.get("incomplete_details")
    reason = details.get("reason") if isinstance(details, dict) else None
    return f"{status}:{reason}" if isinstance(reason, str) and reason else status


class OpenAIClient:
    def __init__(self, config: Settings | None = None) -> None:
        self.config = config or default_settings
        self.base_url = self.config.openai_base_url.rstrip("/")
        self.timeout_seconds = self.config.openai_validation_timeout_seconds

    def is_configured(self) -> bool:
        return bool(self.config.openai_api_key.strip())

    def _headers(self) -> dict:
        return {
            "Authorization": f"Bearer {self.config.openai_api_key.strip()}",
            "Content-Type": "application/json",
        }

    def _create_response(
        self,
        model: str,
        system_prompt: str,
        user_payload: str,
        max_output_tokens: int,
        timeout: float,
    ) -> str:
        payload = {
            "model": model,
            "input": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_payload},
            ],
            "reasoning": {"effort": "minimal"},
            "text": {"verbosity": "low"},
            "max_output_tokens": int(max_output_tokens),
        }

        start = time.perf_counter()
        response = requests.post(
            f"{self.base_url}/responses",
            headers=self._headers(),
            json=payload,
            timeout=timeout,
        )
        if not response.ok:
            raise OpenAIResponseError(
                f"OpenAI responses request failed ({response.status_code}): {response.text[:512]}"
            )
        latency = time.perf_counter() - start

        raw = response.json() or {}
        text = extract_output_text(raw)
        if not text:
            raise OpenAIResponseError(
                f"OpenAI response did not include assistant text ({detect_missing_output_reason(raw)})"
            )
        logger.debug("OpenAI {} answered in {:.2f}s ({} tokens budget)", model, latency, max_output_tokens)
        return text

    async def complete(
        self,
        model: str,
        system_prompt: str,
        user_payload: str,
        max_output_tokens: int,
        timeout: float | None = None,
    ) -> str:
        if not self.is_configured():
            raise RuntimeError("OpenAI API key is not configured")
        return await asyncio.to_thread(
            self._create_response,
            model,
            system_prompt,
            user_payload,
            max_output_tokens,
            timeout or self.timeout_seconds,
        )
