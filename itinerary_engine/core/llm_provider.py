from __future__ import annotations

import asyncio
import os
from typing import Any

import aisuite as ai  # type: ignore
import google.generativeai as genai  # type: ignore

from itinerary_engine.core.errors import ConfigurationError, MalformedOutputError
from itinerary_engine.core.schemas import GenerationOptions

SYSTEM_PROMPT = "You are a travel itinerary planner. Always answer with a single JSON object."


class LLMProvider:
    """Text-generation backend: aisuite by default, google-generativeai for google-genai: models."""

    def __init__(self, model: str) -> None:
        self.model = model
        self._client = None
        self._genai_model: Any | None = None

        # Route to google-generativeai if model starts with google-genai:
        if self.model.startswith("google-genai:"):
            api_key = os.getenv("GOOGLE_API_KEY")
            if not api_key:
                raise ConfigurationError("GOOGLE_API_KEY is not set")
            genai.configure(api_key=api_key)
            model_id = self.model.split(":", 1)[1]
            self._genai_model = genai.GenerativeModel(model_id)
        else:
            try:
                self._client = ai.Client()
            except Exception as exc:  # fail fast if aisuite cannot initialize
                raise ConfigurationError("Failed to initialize aisuite client") from exc

    def complete_sync(self, prompt: str, options: GenerationOptions) -> str:
        """Single blocking completion call returning the raw text."""
        if self._genai_model is not None:
            config: dict[str, Any] = {
                "temperature": options.temperature,
                "max_output_tokens": options.max_tokens,
            }
            if options.response_format == "json":
                config["response_mime_type"] = "application/json"
            response = self._genai_model.generate_content(
                prompt,
                generation_config=config,
                request_options={"timeout": options.timeout},
            )
            text = response.text or ""
        else:
            kwargs: dict[str, Any] = {
                "model": self.model,
                "messages": [
                    {"role": "system", "content": SYSTEM_PROMPT},
                    {"role": "user", "content": prompt},
                ],
                "temperature": options.temperature,
                "max_tokens": options.max_tokens,
            }
            # Only OpenAI-compatible providers accept a JSON response format
            if options.response_format == "json" and self.model.startswith("openai:"):
                kwargs["response_format"] = {"type": "json_object"}
            resp = self._client.chat.completions.create(**kwargs)
            text = resp.choices[0].message.content or ""

        if not text.strip():
            raise MalformedOutputError("Backend returned an empty response")
        return text

    async def complete(self, prompt: str, options: GenerationOptions) -> str:
        """Async completion. Runs the sync client in a thread so calls can race in parallel."""
        return await asyncio.to_thread(self.complete_sync, prompt, options)
