"""Thin wrapper around the Anthropic Messages API for image prompts.

Handles JSON answers (markdown fences stripped), per-call timeouts and the
mapping of SDK errors onto the pipeline error taxonomy.
"""

from __future__ import annotations

import json
import logging
import os
import re
from typing import Any, Optional, Sequence, Type

from utils.errors import AdapterFailure, RateLimited
from utils.image_utils import guess_media_type, to_base64
from utils.retry import RetryPolicy

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "claude-haiku-4-5-20251001"


def strip_json_fences(text: str) -> str:
    raw_text = text.strip()
    if raw_text.startswith("```"):
        raw_text = re.sub(r"^```(?:json)?\s*", "", raw_text)
        raw_text = re.sub(r"\s*```$", "", raw_text)
    return raw_text.strip()


def image_block(data: bytes) -> dict:
    return {
        "type": "image",
        "source": {
            "type": "base64",
            "media_type": guess_media_type(data),
            "data": to_base64(data),
        },
    }


class VisionLLM:
    """Send one prompt plus images and return the decoded JSON answer."""

    def __init__(
        self,
        model: Optional[str] = None,
        client: Any = None,
        max_tokens: int = 1024,
        retry_policy: Optional[RetryPolicy] = None,
    ):
        self.model = model or os.environ.get("LLM_MODEL", DEFAULT_MODEL)
        self.max_tokens = max_tokens
        self.retry_policy = retry_policy or RetryPolicy()
        self._client = client

    def _get_client(self):
        if self._client is None:
            import anthropic

            # Retries are driven by our own RetryPolicy.
            self._client = anthropic.Anthropic(max_retries=0)
        return self._client

    def ask_json(
        self,
        prompt: str,
        images: Sequence[bytes],
        timeout: float,
        failure_cls: Type[AdapterFailure],
    ) -> Any:
        """Return the parsed JSON payload or raise ``failure_cls``."""
        try:
            return self.retry_policy.call(
                self._ask_once, prompt, images, timeout, failure_cls
            )
        except RateLimited as exc:
            raise failure_cls(
                "Limite de requetes Anthropic atteinte, reessayez dans quelques minutes",
                cause=exc,
            ) from exc

    def _ask_once(
        self,
        prompt: str,
        images: Sequence[bytes],
        timeout: float,
        failure_cls: Type[AdapterFailure],
    ) -> Any:
        import anthropic

        client = self._get_client()
        content = [image_block(data) for data in images]
        content.append({"type": "text", "text": prompt})

        try:
            response = client.messages.create(
                model=self.model,
                max_tokens=self.max_tokens,
                messages=[{"role": "user", "content": content}],
                timeout=timeout,
            )
        except anthropic.RateLimitError as exc:
            raise RateLimited("Anthropic rate limit", cause=exc) from exc
        except anthropic.AuthenticationError as exc:
            raise failure_cls("Cle API Anthropic invalide ou manquante", cause=exc) from exc
        except anthropic.APITimeoutError as exc:
            raise failure_cls(f"Delai depasse apres {timeout:.0f}s", cause=exc) from exc
        except anthropic.APIConnectionError as exc:
            raise failure_cls(
                "Impossible de contacter l'API Anthropic (verifiez la connexion reseau)",
                cause=exc,
            ) from exc
        except anthropic.APIStatusError as exc:
            raise failure_cls(
                f"Erreur API Anthropic (code {getattr(exc, 'status_code', '?')})",
                cause=exc,
            ) from exc

        try:
            raw_text = response.content[0].text
        except (AttributeError, IndexError, TypeError) as exc:
            raise failure_cls("Reponse LLM vide", cause=exc) from exc
        if not raw_text or not raw_text.strip():
            raise failure_cls("Reponse LLM vide")

        try:
            return json.loads(strip_json_fences(raw_text))
        except json.JSONDecodeError as exc:
            logger.warning("Unparsable LLM answer: %.200s", raw_text)
            raise failure_cls("Reponse LLM illisible (JSON invalide)", cause=exc) from exc
