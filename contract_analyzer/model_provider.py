from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Callable, Protocol

from contract_analyzer import llm_provider
from contract_analyzer.analysis_config import DEFAULT_MODELS
from contract_analyzer.errors import ModelError
from contract_analyzer.llm_provider import LlmJsonResult

PROVIDER_ALIASES = {
    "chatgpt": "openai",
    "claude": "anthropic",
    "none": "disabled",
    "": "disabled",
}


class LanguageModel(Protocol):
    name: str

    def invoke(self, prompt: str, max_tokens: int, temperature: float, timeout: float) -> str:
        ...


@dataclass
class DisabledLanguageModel:
    """Stand-in used when no provider is configured; every call fails."""

    name: str = "disabled"

    def invoke(self, prompt: str, max_tokens: int, temperature: float, timeout: float) -> str:
        raise ModelError("disabled", "No language model provider is configured.")


@dataclass
class HttpLanguageModel:
    name: str
    model: str
    api_key: str
    generate: Callable[..., LlmJsonResult]

    def invoke(self, prompt: str, max_tokens: int, temperature: float, timeout: float) -> str:
        result = self.generate(
            api_key=self.api_key,
            model=self.model,
            prompt=prompt,
            max_output_tokens=max_tokens,
            temperature=temperature,
            timeout=timeout,
        )
        if result.status == "success" and (result.raw_response or "").strip():
            return result.raw_response

        kind = "timeout" if result.status == "timeout" else "transport"
        if result.status == "success":
            kind = "empty"
        message = "; ".join(result.warnings) or f"{self.name} returned no text."
        raise ModelError(kind, message, {"provider": self.name, "model": self.model})


_GENERATORS = {
    "openai": "generate_text_with_openai",
    "gemini": "generate_text_with_gemini",
    "anthropic": "generate_text_with_anthropic",
}


def list_language_models() -> list[str]:
    return ["disabled", *sorted(_GENERATORS)]


def get_language_model(
    provider_name: str | None = None,
    *,
    api_key: str | None = None,
    model: str | None = None,
) -> LanguageModel:
    selected = (provider_name if provider_name is not None else os.getenv("CONTRACT_LLM_PROVIDER", "disabled"))
    selected = selected.strip().lower()
    selected = PROVIDER_ALIASES.get(selected, selected)

    if selected == "disabled":
        return DisabledLanguageModel()

    if selected not in _GENERATORS:
        raise ValueError(
            f"Unknown language model provider '{selected}'. "
            f"Available providers: {', '.join(list_language_models())}."
        )

    resolved_key = (api_key or "").strip()
    if not resolved_key:
        raise ValueError(f"No API key configured for provider '{selected}'.")

    return HttpLanguageModel(
        name=selected,
        model=model or DEFAULT_MODELS[selected],
        api_key=resolved_key,
        generate=getattr(llm_provider, _GENERATORS[selected]),
    )
