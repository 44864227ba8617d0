"""
Reasoning collaborator.

Stages never talk to a model directly: they call understand(images,
instructions, schema) on an injected ReasoningCollaborator and get back a
validated schema instance or a CollaboratorError. Model output is treated
as untrusted text: JSON is pulled out of prose or fences and validated, and repeated
malformation fails the call rather than guessing.
"""

import asyncio
import json
import re
import time
from abc import ABC, abstractmethod
from typing import Any, Optional, Type, TypeVar

import httpx
import structlog
from pydantic import BaseModel, ValidationError

from register_audit.errors import CollaboratorError
from register_audit.observability import metrics
from register_audit.pipeline.renderer import PageImage

logger = structlog.get_logger(__name__)

SchemaT = TypeVar("SchemaT", bound=BaseModel)

_FENCE_PATTERN = re.compile(r"```(?:json)?\s*(.*?)```", re.DOTALL | re.IGNORECASE)


def parse_json_response(text: str) -> dict[str, Any]:
    """
    Pull a JSON object out of model text.
    Tries the raw text, then fenced code blocks, then the outermost braces.
    """
    if not text or not text.strip():
        raise ValueError("Empty response")

    candidates = [text.strip()]
    candidates += [m.strip() for m in _FENCE_PATTERN.findall(text)]
    start, end = text.find("{"), text.rfind("}")
    if start != -1 and end > start:
        candidates.append(text[start:end + 1])

    for candidate in candidates:
        try:
            parsed = json.loads(candidate)
        except json.JSONDecodeError:
            continue
        if isinstance(parsed, dict):
            return parsed
    raise ValueError("No JSON object found in response")


class ReasoningCollaborator(ABC):
    """Document-understanding call: page images + instructions in, schema-shaped data out."""

    name: str = "collaborator"

    @abstractmethod
    async def understand(
        self,
        images: list[PageImage],
        instructions: str,
        schema: Type[SchemaT],
        context: Optional[dict[str, Any]] = None,
    ) -> SchemaT:
        ...

    async def close(self) -> None:
        return None


class OpenAICompatibleCollaborator(ReasoningCollaborator):
    """
    Chat-completions client for any OpenAI-compatible endpoint.
    Transport failures are retried with exponential backoff; 4xx other than
    429 fail immediately. Malformed JSON is re-requested up to max_retries.
    """

    def __init__(
        self,
        api_key: Optional[str],
        base_url: str,
        model: str,
        timeout: int = 120,
        max_retries: int = 2,
        retry_delay: float = 2.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_key = api_key
        self.base_url = base_url
        self.model = model
        self.name = model
        self.timeout = timeout
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self._client = httpx.AsyncClient(timeout=timeout, transport=transport)

    def _build_payload(
        self,
        images: list[PageImage],
        instructions: str,
        schema: Type[BaseModel],
        context: Optional[dict[str, Any]],
    ) -> dict[str, Any]:
        content: list[dict[str, Any]] = [
            {"type": "image_url", "image_url": {"url": page.to_data_uri(), "detail": "high"}}
            for page in images
        ]
        prompt = (
            "Respond with a single JSON object matching this JSON schema:\n"
            f"{json.dumps(schema.model_json_schema(), ensure_ascii=False)}"
        )
        if context:
            prompt += "\n\nContext from earlier stages:\n" + json.dumps(context, ensure_ascii=False, default=str)
        content.append({"type": "text", "text": prompt})

        return {
            "model": self.model,
            "temperature": 0,
            "response_format": {"type": "json_object"},
            "messages": [
                {"role": "system", "content": instructions},
                {"role": "user", "content": content},
            ],
        }

    async def _wait_before_retry(self, attempt: int) -> None:
        await asyncio.sleep(self.retry_delay * (2 ** attempt))

    async def _post(self, payload: dict[str, Any]) -> dict[str, Any]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        attempts = self.max_retries + 1
        for attempt in range(attempts):
            try:
                response = await self._client.post(self.base_url, headers=headers, json=payload)
                response.raise_for_status()
                return response.json()
            except httpx.HTTPStatusError as e:
                status_code = e.response.status_code
                logger.warning(
                    "collaborator_http_error",
                    model=self.model,
                    status_code=status_code,
                    attempt=attempt + 1,
                    body=e.response.text[:500],
                )
                # Client errors are not retried unless rate limited
                if 400 <= status_code < 500 and status_code != 429:
                    raise CollaboratorError(f"Collaborator rejected request: HTTP {status_code}") from e
                if attempt == attempts - 1:
                    raise CollaboratorError(f"Collaborator HTTP {status_code} after {attempts} attempts") from e
                metrics.collaborator_retries_total.labels(model=self.model, reason="http").inc()
            except (httpx.TimeoutException, httpx.TransportError) as e:
                logger.warning("collaborator_transport_error", model=self.model, attempt=attempt + 1, error=str(e))
                if attempt == attempts - 1:
                    raise CollaboratorError(f"Collaborator unreachable after {attempts} attempts: {e}") from e
                metrics.collaborator_retries_total.labels(model=self.model, reason="transport").inc()
            except ValueError as e:
                # Non-JSON HTTP body
                raise CollaboratorError(f"Collaborator returned a non-JSON body: {e}") from e
            await self._wait_before_retry(attempt)

        raise CollaboratorError(f"Collaborator call failed after {attempts} attempts")

    @staticmethod
    def _message_text(body: dict[str, Any]) -> str:
        try:
            return body["choices"][0]["message"]["content"] or ""
        except (KeyError, IndexError, TypeError) as e:
            raise CollaboratorError("Collaborator response has no message content") from e

    async def understand(
        self,
        images: list[PageImage],
        instructions: str,
        schema: Type[SchemaT],
        context: Optional[dict[str, Any]] = None,
    ) -> SchemaT:
        payload = self._build_payload(images, instructions, schema, context)
        last_error: Optional[Exception] = None

        for attempt in range(self.max_retries + 1):
            started = time.monotonic()
            body = await self._post(payload)
            metrics.collaborator_latency_seconds.labels(model=self.model).observe(time.monotonic() - started)

            text = self._message_text(body)
            try:
                return schema.model_validate(parse_json_response(text))
            except (ValueError, ValidationError) as e:
                last_error = e
                logger.warning(
                    "collaborator_malformed_output",
                    model=self.model,
                    schema=schema.__name__,
                    attempt=attempt + 1,
                    error=str(e)[:300],
                )
                metrics.collaborator_retries_total.labels(model=self.model, reason="malformed").inc()

        raise CollaboratorError(
            f"{schema.__name__} output from {self.model} was malformed after {self.max_retries + 1} attempts: {last_error}"
        )

    async def close(self) -> None:
        await self._client.aclose()


class FallbackCollaborator(ReasoningCollaborator):
    """Try the primary configuration, then once more on the secondary."""

    def __init__(self, primary: ReasoningCollaborator, secondary: ReasoningCollaborator):
        self.primary = primary
        self.secondary = secondary
        self.name = f"{primary.name}->{secondary.name}"

    async def understand(
        self,
        images: list[PageImage],
        instructions: str,
        schema: Type[SchemaT],
        context: Optional[dict[str, Any]] = None,
    ) -> SchemaT:
        try:
            return await self.primary.understand(images, instructions, schema, context)
        except CollaboratorError as e:
            logger.warning(
                "collaborator_fallback",
                primary=self.primary.name,
                secondary=self.secondary.name,
                schema=schema.__name__,
                error=e.message,
            )
            return await self.secondary.understand(images, instructions, schema, context)

    async def close(self) -> None:
        await self.primary.close()
        await self.secondary.close()
