"""
Inference provider — sends structured context to a model and returns
either a text result or a tool-call request.

``GeminiInferenceProvider`` is the production implementation (google-genai,
async client).  Anything with a matching ``generate`` coroutine can stand
in for it, e.g. scripted providers in tests.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, Protocol

from google import genai
from google.genai import types

from fiscalflow.core.config import settings
from fiscalflow.core.logging import get_logger
from fiscalflow.core.tracing import trace_inference
from fiscalflow.events.models import ToolCall
from fiscalflow.integrations.retry_handler import backoff_delay, should_retry
from fiscalflow.pipeline.errors import InferenceProviderError

logger = get_logger(__name__)


@dataclass
class ToolExchange:
    """One completed tool round trip, replayed to the model on resume."""

    name: str
    args: dict[str, Any] = field(default_factory=dict)
    result: dict[str, Any] = field(default_factory=dict)


@dataclass
class InferenceRequest:
    prompt: str
    system_instruction: str | None = None
    tools: list[dict[str, Any]] = field(default_factory=list)
    tool_exchanges: list[ToolExchange] = field(default_factory=list)
    job_id: str | None = None
    stage_name: str | None = None


@dataclass
class InferenceResponse:
    """Either ``text`` (final answer) or ``tool_call`` (suspend and run a tool)."""

    text: str = ""
    tool_call: ToolCall | None = None

    @property
    def wants_tool(self) -> bool:
        return self.tool_call is not None


class InferenceProvider(Protocol):
    async def generate(self, request: InferenceRequest) -> InferenceResponse:
        ...


class GeminiInferenceProvider:
    """
    Google Gemini through the google-genai async client.

    Transient failures (429, 5xx, timeouts) are retried with exponential
    backoff; whatever is left is raised as InferenceProviderError.
    """

    def __init__(
        self,
        client: genai.Client | None = None,
        model: str | None = None,
        max_retries: int | None = None,
        base_delay: float | None = None,
    ) -> None:
        self.client = client or genai.Client(api_key=settings.GOOGLE_API_KEY)
        self.model = model or settings.GEMINI_MODEL
        self.max_retries = max_retries if max_retries is not None else settings.GEMINI_MAX_RETRIES
        self.base_delay = base_delay if base_delay is not None else settings.GEMINI_RETRY_BASE_DELAY_SECONDS

    def _contents(self, request: InferenceRequest) -> list[types.Content]:
        contents = [types.Content(role="user", parts=[types.Part.from_text(text=request.prompt)])]
        for exchange in request.tool_exchanges:
            contents.append(types.Content(
                role="model",
                parts=[types.Part.from_function_call(name=exchange.name, args=exchange.args)],
            ))
            contents.append(types.Content(
                role="user",
                parts=[types.Part.from_function_response(name=exchange.name, response=exchange.result)],
            ))
        return contents

    def _config(self, request: InferenceRequest) -> types.GenerateContentConfig:
        tools = None
        if request.tools:
            tools = [types.Tool(function_declarations=[
                types.FunctionDeclaration(**declaration) for declaration in request.tools
            ])]
        return types.GenerateContentConfig(
            system_instruction=request.system_instruction,
            temperature=settings.LLM_TEMPERATURE,
            max_output_tokens=settings.LLM_MAX_TOKENS,
            tools=tools,
        )

    @trace_inference(name="gemini_generate", tags=["gemini"])
    async def generate(self, request: InferenceRequest) -> InferenceResponse:
        contents = self._contents(request)
        config = self._config(request)
        log = logger.bind(job_id=request.job_id, stage=request.stage_name, model=self.model)

        attempt = 0
        while True:
            try:
                log.info("Calling Gemini", attempt=attempt + 1, tool_exchanges=len(request.tool_exchanges))
                response = await self.client.aio.models.generate_content(
                    model=self.model,
                    contents=contents,
                    config=config,
                )
                break
            except Exception as exc:
                if not should_retry(exc, attempt, self.max_retries):
                    log.error("Gemini call failed", attempts=attempt + 1, error=str(exc))
                    raise InferenceProviderError(
                        f"Inference provider call failed: {exc}",
                        attempts=attempt + 1,
                        job_id=request.job_id,
                        stage_name=request.stage_name,
                    ) from exc
                delay = backoff_delay(attempt, self.base_delay)
                log.warning("Gemini call failed, retrying", attempt=attempt + 1, delay=delay, error=str(exc))
                await asyncio.sleep(delay)
                attempt += 1

        if response.function_calls:
            call = response.function_calls[0]
            log.info("Gemini requested a tool", tool=call.name)
            return InferenceResponse(tool_call=ToolCall(name=call.name, args=dict(call.args or {})))

        text = (response.text or "").strip()
        log.info("Gemini response received", response_length=len(text))
        return InferenceResponse(text=text)
