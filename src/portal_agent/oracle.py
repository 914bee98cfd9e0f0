"""Vision oracle: structured LLM calls over page snapshots.

Each oracle call has its own strict response model. A response that does
not validate raises ``OracleContractError`` instead of being probed for
optional fields; transport problems raise ``TransportFailure``.
"""

from __future__ import annotations

import asyncio
import base64
import json
import logging
from typing import Any, Literal, Protocol, TypeVar

import aiohttp
from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from portal_agent.config.settings import Settings
from portal_agent.errors import OracleContractError, TransportFailure
from portal_agent.models import TaskInterpretation

TModel = TypeVar("TModel", bound=BaseModel)
logger = logging.getLogger(__name__)

ALLOWED_ACTIONS: tuple[str, ...] = ("click", "fill", "select", "wait", "done")


class StrictModel(BaseModel):
    model_config = ConfigDict(extra="forbid")


class Coordinates(StrictModel):
    x: float = Field(ge=0)
    y: float = Field(ge=0)


class ActionProposal(StrictModel):
    """Next action suggested for the current page."""

    action: Literal["click", "fill", "select", "wait", "done"]
    selector: str | None = None
    coordinates: Coordinates | None = None
    value: str | None = None
    confidence: float = Field(ge=0.0, le=1.0)
    reasoning: str = ""

    @model_validator(mode="after")
    def _check_targets(self) -> ActionProposal:
        if self.action == "click" and not (self.selector or self.coordinates):
            raise ValueError("click requires a selector or coordinates")
        if self.action in {"fill", "select"} and (not self.selector or self.value is None):
            raise ValueError(f"{self.action} requires a selector and a value")
        return self


class CompletionVerdict(StrictModel):
    complete: bool
    confidence: float = Field(ge=0.0, le=1.0)
    evidence: str = ""


class LoginAnalysis(StrictModel):
    username_selector: str = Field(min_length=1)
    password_selector: str = Field(min_length=1)
    submit_selector: str = Field(min_length=1)
    confidence: float = Field(ge=0.0, le=1.0)


class LLMAdapter(Protocol):
    """Interface for structured multimodal completions."""

    async def generate_structured(
        self,
        *,
        system_prompt: str,
        user_prompt: str,
        response_model: type[TModel],
        timeout_s: float,
        image_png: bytes | None = None,
    ) -> TModel: ...


class OpenAIChatCompletionsAdapter:
    """OpenAI chat completions over aiohttp, with optional image input."""

    def __init__(
        self,
        *,
        api_key: str,
        model: str = "gpt-4o-mini",
        base_url: str = "https://api.openai.com/v1",
        max_retries: int = 1,
        backoff_s: float = 0.5,
    ) -> None:
        self.api_key = api_key
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.max_retries = max(0, max_retries)
        self.backoff_s = max(0.0, backoff_s)

    async def generate_structured(
        self,
        *,
        system_prompt: str,
        user_prompt: str,
        response_model: type[TModel],
        timeout_s: float,
        image_png: bytes | None = None,
    ) -> TModel:
        user_content: list[dict[str, Any]] = [{"type": "text", "text": user_prompt}]
        if image_png is not None:
            encoded = base64.b64encode(image_png).decode("ascii")
            user_content.append(
                {"type": "image_url", "image_url": {"url": f"data:image/png;base64,{encoded}"}}
            )
        payload = {
            "model": self.model,
            "temperature": 0,
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_content},
            ],
            "response_format": {
                "type": "json_schema",
                "json_schema": {
                    "name": response_model.__name__.lower(),
                    "strict": False,
                    "schema": response_model.model_json_schema(),
                },
            },
        }
        response_json = await self._request_with_retry(payload, timeout_s=timeout_s)
        content = self._extract_content(response_json)
        try:
            return response_model.model_validate(json.loads(content))
        except (json.JSONDecodeError, ValidationError) as exc:
            raise OracleContractError(
                f"{response_model.__name__} response did not match its contract: {exc}"
            ) from exc

    async def _request_with_retry(
        self, payload: dict[str, Any], *, timeout_s: float
    ) -> dict[str, Any]:
        last_error: Exception | None = None
        for attempt in range(self.max_retries + 1):
            try:
                return await self._request(payload, timeout_s=timeout_s)
            except TransportFailure as exc:
                last_error = exc
                logger.warning(
                    "OpenAI request failed attempt=%d/%d model=%s reason=%s",
                    attempt + 1,
                    self.max_retries + 1,
                    self.model,
                    exc,
                )
                if attempt < self.max_retries and self.backoff_s > 0:
                    await asyncio.sleep(self.backoff_s)
        if last_error is None:
            raise TransportFailure("LLM request failed with unknown error")
        raise last_error

    async def _request(self, payload: dict[str, Any], *, timeout_s: float) -> dict[str, Any]:
        url = f"{self.base_url}/chat/completions"
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }
        try:
            async with aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=timeout_s)
            ) as session:
                async with session.post(url, json=payload, headers=headers) as response:
                    body = await response.text()
                    if response.status >= 400:
                        raise TransportFailure(
                            f"OpenAI API request failed with status {response.status}: {body[:400]}"
                        )
        except (aiohttp.ClientError, TimeoutError) as exc:
            raise TransportFailure(f"OpenAI API request failed: {exc}") from exc
        try:
            return json.loads(body)
        except json.JSONDecodeError as exc:
            raise TransportFailure("OpenAI API returned non-JSON response") from exc

    @staticmethod
    def _extract_content(response_json: dict[str, Any]) -> str:
        choices = response_json.get("choices", [])
        if not choices:
            raise OracleContractError("OpenAI response did not contain choices")

        message = choices[0].get("message", {})
        content = message.get("content", "")
        if isinstance(content, str) and content.strip():
            return content
        if isinstance(content, list):
            merged = "".join(
                item["text"]
                for item in content
                if isinstance(item, dict) and isinstance(item.get("text"), str)
            ).strip()
            if merged:
                return merged
        raise OracleContractError("OpenAI response content could not be parsed as text")


class VisionOracle:
    """The four questions strategies and the authenticator may ask."""

    def __init__(self, *, llm_adapter: LLMAdapter, timeout_s: float = 30.0) -> None:
        self.llm_adapter = llm_adapter
        self.timeout_s = timeout_s

    async def propose_action(
        self,
        snapshot: bytes,
        *,
        instruction: str,
        history: list[str] | None = None,
        allowed_actions: tuple[str, ...] = ALLOWED_ACTIONS,
    ) -> ActionProposal:
        system_prompt = (
            "You operate a web page one action at a time. Return JSON only. "
            f"Allowed actions: {', '.join(allowed_actions)}. "
            "Prefer a CSS selector; use coordinates only when no selector is identifiable. "
            "Answer 'done' when the instruction is already satisfied."
        )
        user_prompt = (
            f"Instruction:\n{instruction}\n\n"
            f"Actions already taken:\n{json.dumps(history or [], ensure_ascii=True)}\n\n"
            "Propose the single next action."
        )
        proposal = await self.llm_adapter.generate_structured(
            system_prompt=system_prompt,
            user_prompt=user_prompt,
            response_model=ActionProposal,
            timeout_s=self.timeout_s,
            image_png=snapshot,
        )
        if proposal.action not in allowed_actions:
            raise OracleContractError(f"Action {proposal.action!r} is not allowed here")
        return proposal

    async def verify_completion(
        self, snapshot: bytes, *, success_criteria: tuple[str, ...], description: str
    ) -> CompletionVerdict:
        criteria = "\n".join(f"- {item}" for item in success_criteria) or "- task is complete"
        return await self.llm_adapter.generate_structured(
            system_prompt=(
                "You verify whether a web task has been completed. Return JSON only. "
                "Judge strictly from the screenshot."
            ),
            user_prompt=f"Task:\n{description}\n\nSuccess criteria:\n{criteria}",
            response_model=CompletionVerdict,
            timeout_s=self.timeout_s,
            image_png=snapshot,
        )

    async def analyze_login(self, snapshot: bytes) -> LoginAnalysis:
        return await self.llm_adapter.generate_structured(
            system_prompt=(
                "You locate login form controls. Return JSON only with CSS selectors "
                "for the username field, password field and submit button."
            ),
            user_prompt="Identify the login form controls on this page.",
            response_model=LoginAnalysis,
            timeout_s=self.timeout_s,
            image_png=snapshot,
        )

    async def interpret_task(self, instruction: str, *, url: str) -> TaskInterpretation:
        return await self.llm_adapter.generate_structured(
            system_prompt=(
                "You turn a natural-language web task into a structured interpretation. "
                "Return JSON only. Use task_type 'natural-language'. Keep estimated_steps small "
                "and list concrete success criteria."
            ),
            user_prompt=f"Portal URL: {url}\n\nInstruction:\n{instruction}",
            response_model=TaskInterpretation,
            timeout_s=self.timeout_s,
        )


def build_oracle_from_settings(settings: Settings) -> VisionOracle | None:
    if settings.llm_provider.lower() != "openai":
        return None
    api_key = settings.resolved_openai_api_key()
    if not api_key:
        return None
    adapter = OpenAIChatCompletionsAdapter(
        api_key=api_key,
        model=settings.llm_model,
        base_url=settings.llm_base_url,
        max_retries=settings.llm_max_retries,
        backoff_s=settings.llm_backoff_s,
    )
    return VisionOracle(llm_adapter=adapter, timeout_s=settings.llm_timeout_s)
