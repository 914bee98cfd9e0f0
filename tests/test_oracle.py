from __future__ import annotations

import json
from typing import Any

import pytest
from pydantic import BaseModel, ValidationError

from portal_agent.config.settings import Settings
from portal_agent.errors import OracleContractError, TransportFailure
from portal_agent.models import TaskInterpretation, TaskType
from portal_agent.oracle import (
    ActionProposal,
    CompletionVerdict,
    LoginAnalysis,
    OpenAIChatCompletionsAdapter,
    VisionOracle,
    build_oracle_from_settings,
)


class FakeLLMAdapter:
    def __init__(self, responses: dict[str, dict[str, Any]]) -> None:
        self.responses = responses
        self.requests: list[dict[str, Any]] = []

    async def generate_structured(
        self,
        *,
        system_prompt: str,
        user_prompt: str,
        response_model: type[BaseModel],
        timeout_s: float,
        image_png: bytes | None = None,
    ) -> BaseModel:
        self.requests.append(
            {
                "model": response_model.__name__,
                "user_prompt": user_prompt,
                "image": image_png,
                "timeout_s": timeout_s,
            }
        )
        return response_model.model_validate(self.responses[response_model.__name__])


async def test_propose_action_sends_snapshot_and_history() -> None:
    adapter = FakeLLMAdapter(
        {"ActionProposal": {"action": "click", "selector": "#export", "confidence": 0.8}}
    )
    oracle = VisionOracle(llm_adapter=adapter, timeout_s=12.0)

    proposal = await oracle.propose_action(
        b"png", instruction="Export invoices", history=["click #billing"]
    )

    assert proposal.selector == "#export"
    request = adapter.requests[0]
    assert request["image"] == b"png"
    assert request["timeout_s"] == 12.0
    assert "click #billing" in request["user_prompt"]


async def test_propose_action_rejects_disallowed_action() -> None:
    adapter = FakeLLMAdapter(
        {
            "ActionProposal": {
                "action": "select",
                "selector": "#range",
                "value": "30d",
                "confidence": 0.5,
            }
        }
    )
    oracle = VisionOracle(llm_adapter=adapter)

    with pytest.raises(OracleContractError, match="not allowed"):
        await oracle.propose_action(b"png", instruction="x", allowed_actions=("click", "done"))


async def test_verify_and_login_and_interpret() -> None:
    adapter = FakeLLMAdapter(
        {
            "CompletionVerdict": {"complete": True, "confidence": 0.9, "evidence": "toast"},
            "LoginAnalysis": {
                "username_selector": "#u",
                "password_selector": "#p",
                "submit_selector": "#s",
                "confidence": 0.7,
            },
            "TaskInterpretation": {
                "task_type": "natural-language",
                "description": "Export invoices",
                "success_criteria": ["file saved"],
                "estimated_steps": 3,
            },
        }
    )
    oracle = VisionOracle(llm_adapter=adapter)

    verdict = await oracle.verify_completion(
        b"png", success_criteria=("file saved",), description="Export invoices"
    )
    login = await oracle.analyze_login(b"png")
    interpretation = await oracle.interpret_task(
        "Export invoices", url="https://portal.example.com"
    )

    assert verdict.complete is True
    assert login.submit_selector == "#s"
    assert interpretation.task_type is TaskType.NATURAL_LANGUAGE
    assert adapter.requests[2]["image"] is None


@pytest.mark.parametrize(
    "payload",
    [
        {"action": "click", "confidence": 0.5},
        {"action": "fill", "selector": "#q", "confidence": 0.5},
        {"action": "scroll", "selector": "#q", "confidence": 0.5},
        {"action": "done", "confidence": 1.5},
        {"action": "done", "confidence": 0.5, "extra": "field"},
    ],
)
def test_action_proposal_contract(payload: dict[str, Any]) -> None:
    with pytest.raises(ValidationError):
        ActionProposal.model_validate(payload)


def test_strict_response_models_reject_missing_fields() -> None:
    with pytest.raises(ValidationError):
        CompletionVerdict.model_validate({"complete": True})
    with pytest.raises(ValidationError):
        LoginAnalysis.model_validate(
            {
                "username_selector": "#u",
                "password_selector": "",
                "submit_selector": "#s",
                "confidence": 0.5,
            }
        )


async def test_adapter_maps_invalid_payload_to_contract_error(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    adapter = OpenAIChatCompletionsAdapter(api_key="sk-test", max_retries=0)

    async def fake_request(payload: dict[str, Any], *, timeout_s: float) -> dict[str, Any]:
        assert payload["response_format"]["json_schema"]["name"] == "completionverdict"
        return {"choices": [{"message": {"content": json.dumps({"complete": "maybe"})}}]}

    monkeypatch.setattr(adapter, "_request", fake_request)

    with pytest.raises(OracleContractError, match="CompletionVerdict"):
        await adapter.generate_structured(
            system_prompt="s",
            user_prompt="u",
            response_model=CompletionVerdict,
            timeout_s=1.0,
        )


async def test_adapter_retries_transport_failures(monkeypatch: pytest.MonkeyPatch) -> None:
    adapter = OpenAIChatCompletionsAdapter(api_key="sk-test", max_retries=1, backoff_s=0)
    calls = {"count": 0}

    async def flaky_request(payload: dict[str, Any], *, timeout_s: float) -> dict[str, Any]:
        calls["count"] += 1
        if calls["count"] == 1:
            raise TransportFailure("status 503")
        content = [{"type": "text", "text": '{"complete": false, "confidence": 0.2}'}]
        return {"choices": [{"message": {"content": content}}]}

    monkeypatch.setattr(adapter, "_request", flaky_request)

    verdict = await adapter.generate_structured(
        system_prompt="s",
        user_prompt="u",
        response_model=CompletionVerdict,
        timeout_s=1.0,
        image_png=b"png",
    )

    assert verdict.complete is False
    assert calls["count"] == 2


async def test_adapter_gives_up_after_retries(monkeypatch: pytest.MonkeyPatch) -> None:
    adapter = OpenAIChatCompletionsAdapter(api_key="sk-test", max_retries=2, backoff_s=0)

    async def down(payload: dict[str, Any], *, timeout_s: float) -> dict[str, Any]:
        raise TransportFailure("connection refused")

    monkeypatch.setattr(adapter, "_request", down)

    with pytest.raises(TransportFailure, match="connection refused"):
        await adapter.generate_structured(
            system_prompt="s", user_prompt="u", response_model=TaskInterpretation, timeout_s=1.0
        )


def test_adapter_rejects_empty_choices() -> None:
    with pytest.raises(OracleContractError, match="choices"):
        OpenAIChatCompletionsAdapter._extract_content({"choices": []})


def test_build_oracle_requires_api_key(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)

    assert build_oracle_from_settings(Settings(_env_file=None, openai_api_key="")) is None
    oracle = build_oracle_from_settings(
        Settings(_env_file=None, openai_api_key="sk-test", llm_timeout_s=7.5)
    )
    assert isinstance(oracle, VisionOracle)
    assert oracle.timeout_s == 7.5
    other_provider = Settings(_env_file=None, openai_api_key="sk-test", llm_provider="none")
    assert build_oracle_from_settings(other_provider) is None
