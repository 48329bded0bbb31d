from __future__ import annotations

import json
import logging
import os
from typing import Any

import httpx

from careplan_core.errors import UpstreamFailure

logger = logging.getLogger(__name__)


def _base_url(env_key: str, default: str) -> str:
    return os.getenv(env_key, default).rstrip("/")


def _provider_error_message(response: httpx.Response) -> str:
    message = response.text.strip()
    try:
        payload = response.json()
    except ValueError:
        payload = None
    if isinstance(payload, dict):
        err = payload.get("error")
        if isinstance(err, dict):
            msg = err.get("message")
            if isinstance(msg, str) and msg.strip():
                return msg.strip()
        msg = payload.get("message")
        if isinstance(msg, str) and msg.strip():
            return msg.strip()
    return message or f"HTTP {response.status_code}"


def extract_json_object(raw_text: str) -> dict[str, Any] | None:
    text = (raw_text or "").strip()
    if not text:
        return None
    try:
        payload = json.loads(text)
        if isinstance(payload, dict):
            return payload
    except json.JSONDecodeError:
        pass

    for start_idx in [idx for idx, char in enumerate(text) if char == "{"]:
        depth = 0
        for end_idx in range(start_idx, len(text)):
            char = text[end_idx]
            if char == "{":
                depth += 1
            elif char == "}":
                depth -= 1
            if depth == 0:
                candidate = text[start_idx : end_idx + 1]
                try:
                    payload = json.loads(candidate)
                    if isinstance(payload, dict):
                        return payload
                except json.JSONDecodeError:
                    break
    return None


def _coerce_completion_text(response_json: dict[str, Any]) -> str:
    choices = response_json.get("choices")
    if not isinstance(choices, list) or not choices:
        return ""
    message = choices[0].get("message", {})
    content = message.get("content")
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts: list[str] = []
        for item in content:
            if isinstance(item, dict):
                text_value = item.get("text")
                if isinstance(text_value, str):
                    parts.append(text_value)
        return "\n".join(parts)
    return ""


def _coerce_anthropic_text(response_json: dict[str, Any]) -> str:
    content = response_json.get("content")
    if not isinstance(content, list):
        return ""
    parts: list[str] = []
    for item in content:
        if not isinstance(item, dict) or item.get("type") != "text":
            continue
        text_value = item.get("text")
        if isinstance(text_value, str) and text_value.strip():
            parts.append(text_value.strip())
    return "\n".join(parts).strip()


def chat_provider_candidates() -> list[dict[str, Any]]:
    provider_preference = (os.getenv("CAREPLAN_CHAT_PROVIDER") or "auto").strip().lower()
    candidates: list[dict[str, Any]] = []

    anthropic_api_key = (os.getenv("ANTHROPIC_API_KEY") or "").strip()
    if anthropic_api_key:
        candidates.append(
            {
                "provider": "anthropic",
                "base_url": _base_url("ANTHROPIC_API_BASE_URL", "https://api.anthropic.com/v1"),
                "api_key": anthropic_api_key,
                "model": (os.getenv("ANTHROPIC_MODEL") or "claude-3-5-sonnet-latest").strip(),
            }
        )

    openrouter_api_key = (os.getenv("OPENROUTER_API_KEY") or "").strip()
    if openrouter_api_key:
        candidates.append(
            {
                "provider": "openrouter",
                "base_url": _base_url("OPENROUTER_BASE_URL", "https://openrouter.ai/api/v1"),
                "api_key": openrouter_api_key,
                "model": (os.getenv("OPENROUTER_MODEL") or "openai/gpt-4o-mini").strip(),
            }
        )

    openai_api_key = (os.getenv("OPENAI_API_KEY") or "").strip()
    if openai_api_key:
        candidates.append(
            {
                "provider": "openai",
                "base_url": _base_url("OPENAI_API_BASE_URL", "https://api.openai.com/v1"),
                "api_key": openai_api_key,
                "model": (os.getenv("CAREPLAN_CHAT_MODEL") or "gpt-4o-mini").strip(),
            }
        )

    if provider_preference in {"", "auto"}:
        return candidates

    aliases = {"claude": "anthropic", "anthropic": "anthropic", "openrouter": "openrouter", "openai": "openai"}
    canonical = aliases.get(provider_preference)
    if not canonical:
        return candidates
    preferred = [candidate for candidate in candidates if candidate["provider"] == canonical]
    others = [candidate for candidate in candidates if candidate["provider"] != canonical]
    return preferred + others


def _openai_compatible_chat(
    *,
    provider: dict[str, Any],
    messages: list[dict[str, str]],
    temperature: float,
    timeout_seconds: float,
) -> str | None:
    payload = {"model": provider["model"], "temperature": temperature, "messages": messages}
    headers = {
        "Authorization": f"Bearer {provider['api_key']}",
        "Content-Type": "application/json",
    }
    with httpx.Client(timeout=httpx.Timeout(timeout_seconds, connect=8.0)) as client:
        response = client.post(f"{provider['base_url']}/chat/completions", headers=headers, json=payload)
    if response.status_code >= 400:
        raise RuntimeError(_provider_error_message(response))
    text = _coerce_completion_text(response.json()).strip()
    return text or None


def _anthropic_chat(
    *,
    provider: dict[str, Any],
    system_prompt: str,
    messages: list[dict[str, str]],
    temperature: float,
    timeout_seconds: float,
) -> str | None:
    payload = {
        "model": provider["model"],
        "max_tokens": 700,
        "temperature": temperature,
        "system": system_prompt,
        "messages": messages,
    }
    headers = {
        "x-api-key": str(provider["api_key"]),
        "anthropic-version": os.getenv("ANTHROPIC_API_VERSION", "2023-06-01"),
        "Content-Type": "application/json",
    }
    with httpx.Client(timeout=httpx.Timeout(timeout_seconds, connect=8.0)) as client:
        response = client.post(f"{provider['base_url']}/messages", headers=headers, json=payload)
    if response.status_code >= 400:
        raise RuntimeError(_provider_error_message(response))
    text = _coerce_anthropic_text(response.json())
    return text or None


def complete(
    *,
    system_prompt: str,
    messages: list[dict[str, str]],
    temperature: float = 0.7,
) -> str | None:
    """Run one completion against the first provider that answers.

    Returns None when no provider is configured; raises UpstreamFailure when
    providers are configured but none of them produced text.
    """
    providers = chat_provider_candidates()
    if not providers:
        return None
    turns = [
        {"role": turn["role"], "content": turn["content"][:2000]}
        for turn in messages
        if turn.get("role") in {"user", "assistant"} and (turn.get("content") or "").strip()
    ]
    if not turns or turns[0]["role"] != "user":
        turns.insert(0, {"role": "user", "content": "Continue."})
    timeout_seconds = float(os.getenv("CAREPLAN_CHAT_TIMEOUT_SECONDS", "25"))
    for provider in providers:
        provider_name = str(provider.get("provider") or "unknown")
        try:
            if provider_name == "anthropic":
                text = _anthropic_chat(
                    provider=provider,
                    system_prompt=system_prompt,
                    messages=turns,
                    temperature=temperature,
                    timeout_seconds=timeout_seconds,
                )
            else:
                text = _openai_compatible_chat(
                    provider=provider,
                    messages=[{"role": "system", "content": system_prompt}, *turns],
                    temperature=temperature,
                    timeout_seconds=timeout_seconds,
                )
        except (httpx.HTTPError, RuntimeError, ValueError) as exc:
            logger.warning("llm call failed (%s): %s", provider_name, exc)
            continue
        if text:
            logger.debug("llm provider used (%s)", provider_name)
            return text
        logger.warning("llm provider empty response (%s)", provider_name)
    raise UpstreamFailure("Conversational provider unavailable")
