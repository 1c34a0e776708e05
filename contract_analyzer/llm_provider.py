from __future__ import annotations

import json
import socket
from dataclasses import dataclass
from typing import Any, Callable
from urllib import error, request

OPENAI_RESPONSES_URL = "https://api.openai.com/v1/responses"
GEMINI_GENERATE_URL = "https://generativelanguage.googleapis.com/v1beta/models/{model}:generateContent"
ANTHROPIC_MESSAGES_URL = "https://api.anthropic.com/v1/messages"
ANTHROPIC_VERSION = "2023-06-01"
DEFAULT_TIMEOUT_SECONDS = 300.0


@dataclass(frozen=True)
class LlmJsonResult:
    status: str
    raw_response: str | None
    warnings: list[str]


def _post_json(
    url: str,
    payload: dict[str, Any],
    headers: dict[str, str],
    timeout: float = DEFAULT_TIMEOUT_SECONDS,
) -> dict[str, Any]:
    body = json.dumps(payload).encode("utf-8")
    req = request.Request(url, data=body, headers=headers, method="POST")
    with request.urlopen(req, timeout=timeout) as response:
        response_body = response.read().decode("utf-8")
    return json.loads(response_body)


def _join_text(parts: Any, *keys: str) -> str | None:
    """Join the non-blank string values found under ``keys`` in a list of content parts."""

    if not isinstance(parts, list):
        return None

    collected: list[str] = []
    for part in parts:
        if not isinstance(part, dict):
            continue
        for key in keys:
            value = part.get(key)
            if isinstance(value, str) and value.strip():
                collected.append(value.strip())
                break

    return "\n".join(collected) if collected else None


def _extract_openai_text(response_payload: dict[str, Any]) -> str | None:
    output_text = response_payload.get("output_text")
    if isinstance(output_text, str) and output_text.strip():
        return output_text.strip()

    output = response_payload.get("output")
    if not isinstance(output, list):
        return None

    chunks = [
        _join_text(item.get("content"), "text", "value")
        for item in output
        if isinstance(item, dict)
    ]
    joined = "\n".join(chunk for chunk in chunks if chunk)
    return joined or None


def _extract_gemini_text(response_payload: dict[str, Any]) -> str | None:
    candidates = response_payload.get("candidates") or []
    if not candidates or not isinstance(candidates[0], dict):
        return None
    return _join_text((candidates[0].get("content") or {}).get("parts"), "text")


def _extract_anthropic_text(response_payload: dict[str, Any]) -> str | None:
    content = response_payload.get("content")
    if not isinstance(content, list):
        return None
    text_blocks = [part for part in content if isinstance(part, dict) and part.get("type", "text") == "text"]
    return _join_text(text_blocks, "text")


def _http_error_excerpt(exc: error.HTTPError) -> str:
    try:
        response_body = exc.read().decode("utf-8", errors="replace").strip()
    except Exception:  # noqa: BLE001
        return ""
    if not response_body:
        return ""

    try:
        parsed = json.loads(response_body)
    except json.JSONDecodeError:
        return response_body[:200]

    error_payload = parsed.get("error") if isinstance(parsed, dict) else None
    message = error_payload.get("message") if isinstance(error_payload, dict) else None
    return message.strip() if isinstance(message, str) else ""


def _is_timeout(exc: BaseException) -> bool:
    if isinstance(exc, (TimeoutError, socket.timeout)):
        return True
    reason = getattr(exc, "reason", None)
    return isinstance(reason, (TimeoutError, socket.timeout))


def _request_failure(provider_name: str, exc: Exception, timeout: float) -> LlmJsonResult:
    if isinstance(exc, error.HTTPError):
        excerpt = _http_error_excerpt(exc)
        warning = f"{provider_name} request failed with HTTP {exc.code}"
        warning = f"{warning}: {excerpt}" if excerpt else f"{warning}."
        return LlmJsonResult(status="error", raw_response=None, warnings=[warning])

    if _is_timeout(exc):
        warning = f"{provider_name} request timed out after {timeout:g} seconds."
        return LlmJsonResult(status="timeout", raw_response=None, warnings=[warning])

    return LlmJsonResult(
        status="error",
        raw_response=None,
        warnings=[f"{provider_name} request failed before receiving a response."],
    )


def _generate(
    provider_name: str,
    url: str,
    payload: dict[str, Any],
    headers: dict[str, str],
    extract: Callable[[dict[str, Any]], str | None],
    timeout: float,
) -> LlmJsonResult:
    try:
        response_payload = _post_json(
            url,
            payload,
            {"Content-Type": "application/json", **headers},
            timeout=timeout,
        )
    except Exception as exc:  # noqa: BLE001
        return _request_failure(provider_name, exc, timeout)

    extracted_text = extract(response_payload)
    if extracted_text:
        return LlmJsonResult(status="success", raw_response=extracted_text, warnings=[])

    return LlmJsonResult(
        status="error",
        raw_response=json.dumps(response_payload),
        warnings=[f"{provider_name} response did not contain extractable text content."],
    )


def generate_text_with_openai(
    api_key: str,
    model: str,
    prompt: str,
    max_output_tokens: int = 2000,
    temperature: float = 0.1,
    timeout: float = DEFAULT_TIMEOUT_SECONDS,
) -> LlmJsonResult:
    return _generate(
        "OpenAI",
        OPENAI_RESPONSES_URL,
        {
            "model": model,
            "input": prompt,
            "max_output_tokens": max_output_tokens,
            "temperature": temperature,
        },
        {"Authorization": f"Bearer {api_key}"},
        _extract_openai_text,
        timeout,
    )


def generate_text_with_gemini(
    api_key: str,
    model: str,
    prompt: str,
    max_output_tokens: int = 2000,
    temperature: float = 0.1,
    timeout: float = DEFAULT_TIMEOUT_SECONDS,
) -> LlmJsonResult:
    return _generate(
        "Gemini",
        f"{GEMINI_GENERATE_URL.format(model=model)}?key={api_key}",
        {
            "contents": [{"parts": [{"text": prompt}]}],
            "generationConfig": {
                "maxOutputTokens": max_output_tokens,
                "temperature": temperature,
            },
        },
        {},
        _extract_gemini_text,
        timeout,
    )


def generate_text_with_anthropic(
    api_key: str,
    model: str,
    prompt: str,
    max_output_tokens: int = 2000,
    temperature: float = 0.1,
    timeout: float = DEFAULT_TIMEOUT_SECONDS,
) -> LlmJsonResult:
    """Claude Messages API call; text blocks are joined with newlines."""

    return _generate(
        "Anthropic",
        ANTHROPIC_MESSAGES_URL,
        {
            "model": model,
            "max_tokens": max_output_tokens,
            "temperature": temperature,
            "messages": [{"role": "user", "content": prompt}],
        },
        {"x-api-key": api_key, "anthropic-version": ANTHROPIC_VERSION},
        _extract_anthropic_text,
        timeout,
    )
