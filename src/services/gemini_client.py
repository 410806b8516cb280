from __future__ import annotations

import json
from pathlib import Path

import httpx
from google import genai
from google.genai import types
from google.genai.errors import APIError

from src.app.domain.errors import GenerationConfigurationError, GenerationError, RateLimitedError


class GeminiConfigurationError(GenerationConfigurationError):
    pass


class GeminiPromptError(GenerationConfigurationError):
    pass


def _is_rate_limited_error(exc: Exception) -> bool:
    status_code = getattr(exc, "code", None) or getattr(exc, "status_code", None)
    if status_code == 429:
        return True
    return "RESOURCE_EXHAUSTED" in str(exc)


class GeminiClient:
    def __init__(
        self,
        api_key: str,
        model_name: str = "gemini-2.5-flash",
        temperature: float = 0.7,
        client: genai.Client | None = None,
    ) -> None:
        self.api_key = api_key
        self.model_name = model_name
        self.temperature = temperature
        self._client = client or self._configure_api()

    def _configure_api(self) -> genai.Client:
        if not self.api_key:
            raise GeminiConfigurationError("Missing Google API key.")
        return genai.Client(api_key=self.api_key)

    def _load_system_prompt(self, file_path: Path) -> str:
        try:
            return file_path.read_text(encoding="utf-8")
        except FileNotFoundError as not_found_error:
            raise GeminiPromptError(f"Prompt file not found: {file_path}") from not_found_error
        except OSError as io_error:
            raise GeminiPromptError(f"Unable to read prompt file: {io_error}") from io_error

    def _serialize_prompt(self, user_prompt: str | dict[str, str | int | float | list | dict]) -> str:
        if isinstance(user_prompt, str):
            return user_prompt
        try:
            return json.dumps(user_prompt, indent=2, ensure_ascii=False)
        except TypeError:
            return str(user_prompt)

    def generate_content(
        self,
        user_prompt: str | dict[str, str | int | float | list | dict],
        system_prompt_path: Path,
    ) -> str:
        system_instruction = self._load_system_prompt(system_prompt_path)
        payload = self._serialize_prompt(user_prompt)

        try:
            response = self._client.models.generate_content(
                model=self.model_name,
                contents=payload,
                config=types.GenerateContentConfig(
                    system_instruction=system_instruction,
                    temperature=self.temperature,
                    response_mime_type="application/json",
                ),
            )
        except APIError as err:
            if _is_rate_limited_error(err):
                raise RateLimitedError("Gemini API rate limit reached") from err
            raise GenerationError(f"AI generation failed: {err}") from err
        except httpx.HTTPError as err:
            raise GenerationError(f"AI generation failed: {err}") from err

        return response.text or ""
