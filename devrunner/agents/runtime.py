"""
DevRunner Agent Runtime

Adapter between an agent contract and a language model backend.

The runtime owns the failure taxonomy of a model call:
- the model stopped on its own token limit -> AgentResponseTruncatedError
- no JSON object in the response -> AgentResponseInvalidJsonError
- JSON only parses after closing dangling brackets -> AgentResponseTruncatedError
- JSON that does not match the output schema -> AgentContractInvalidError
"""

import json
import math
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple, Type

import httpx
from pydantic import ValidationError as PydanticValidationError

from devrunner.agents.schemas import AgentOutput
from devrunner.errors import (
    AgentContractInvalidError,
    AgentModelRequestError,
    AgentResponseInvalidJsonError,
    AgentResponseTruncatedError,
)
from devrunner.logging import get_logger

logger = get_logger(__name__)

ANTHROPIC_VERSION = "2023-06-01"
MODEL_BACKEND_NAME = "model"
REASON_LIMIT = 220

# Sonnet-class pricing, USD per 1k tokens.
INPUT_COST_PER_1K = 0.003
OUTPUT_COST_PER_1K = 0.015

_FENCED_JSON = re.compile(r"```(?:json)?[ \t]*\n(.*?)\n?```", re.DOTALL)


@dataclass
class ModelResponse:
    """Raw completion from a model backend."""
    text: str
    stop_reason: Optional[str] = None
    input_tokens: Optional[int] = None
    output_tokens: Optional[int] = None


@dataclass
class AgentResult:
    """What an agent returns to the harness."""
    output: Dict[str, Any]
    token_usage: Optional[int] = None
    cost: Optional[float] = None


class ModelBackend(ABC):
    """A single-turn completion endpoint."""

    @abstractmethod
    def complete(self, system_prompt: str, user_prompt: str) -> ModelResponse:
        ...


class AnthropicBackend(ModelBackend):
    """
    Messages API over httpx.

    Transport errors and non-2xx responses are raised as
    AgentModelRequestError; the runtime re-tags them with the agent name.
    """

    def __init__(
        self,
        *,
        api_key: str,
        model: str,
        max_tokens: int = 16000,
        api_url: str = "https://api.anthropic.com/v1/messages",
        timeout: float = 300.0,
        client: Optional[httpx.Client] = None,
    ) -> None:
        self.api_key = api_key
        self.model = model
        self.max_tokens = max_tokens
        self.api_url = api_url
        self.timeout = timeout
        self._client = client

    def complete(self, system_prompt: str, user_prompt: str) -> ModelResponse:
        payload = {
            "model": self.model,
            "max_tokens": self.max_tokens,
            "system": system_prompt,
            "messages": [{"role": "user", "content": user_prompt}],
        }
        headers = {
            "x-api-key": self.api_key,
            "anthropic-version": ANTHROPIC_VERSION,
            "content-type": "application/json",
        }
        try:
            if self._client is not None:
                resp = self._client.post(self.api_url, headers=headers, json=payload, timeout=self.timeout)
            else:
                with httpx.Client(timeout=self.timeout) as client:
                    resp = client.post(self.api_url, headers=headers, json=payload)
            resp.raise_for_status()
            data = resp.json()
        except httpx.HTTPStatusError as exc:
            raise AgentModelRequestError(
                MODEL_BACKEND_NAME,
                f"status {exc.response.status_code}",
                status_code=exc.response.status_code,
            ) from exc
        except (httpx.HTTPError, ValueError) as exc:
            raise AgentModelRequestError(MODEL_BACKEND_NAME, str(exc)) from exc

        text = ""
        for block in data.get("content") or []:
            if isinstance(block, dict) and block.get("type") == "text":
                text = block.get("text") or ""
                break
        usage = data.get("usage") or {}
        return ModelResponse(
            text=text,
            stop_reason=data.get("stop_reason"),
            input_tokens=usage.get("input_tokens"),
            output_tokens=usage.get("output_tokens"),
        )


def estimate_token_usage(text: str) -> int:
    return max(1, math.ceil(len(text) / 4))


def estimate_usd_cost(input_tokens: Optional[int], output_tokens: Optional[int]) -> Optional[float]:
    if input_tokens is None or output_tokens is None:
        return None
    cost = (input_tokens / 1000) * INPUT_COST_PER_1K + (output_tokens / 1000) * OUTPUT_COST_PER_1K
    return round(cost, 6)


def _truncate(text: str, limit: int = REASON_LIMIT) -> str:
    normalized = " ".join(text.split())
    if len(normalized) <= limit:
        return normalized
    return f"{normalized[:limit]}..."


def _close_dangling(fragment: str) -> Optional[str]:
    """Close an unterminated string and any open brackets. None when nothing is open."""
    stack = []
    in_string = False
    escaped = False
    for char in fragment:
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue
        if char == '"':
            in_string = True
        elif char in "{[":
            stack.append("}" if char == "{" else "]")
        elif char in "}]":
            if not stack:
                return None
            stack.pop()

    if not stack and not in_string:
        return None

    repaired = fragment
    if in_string:
        if escaped:
            repaired = repaired[:-1]
        repaired += '"'
    repaired = repaired.rstrip()
    while repaired.endswith((",", ":")):
        repaired = repaired[:-1].rstrip()
    return repaired + "".join(reversed(stack))


def extract_json(text: str) -> Tuple[Optional[Any], bool]:
    """
    Find the JSON object in a model response.

    Returns (data, repaired). repaired is True when the object only parsed
    after closing dangling brackets, which means the output was cut short.
    """
    if not text:
        return None, False

    fenced = _FENCED_JSON.search(text)
    if fenced:
        body = fenced.group(1).strip()
    else:
        body = text
        if "```" in body:
            body = body.split("```json", 1)[-1].split("```", 1)[0]

    start = body.find("{")
    if start < 0:
        return None, False
    end = body.rfind("}")
    if end > start:
        try:
            return json.loads(body[start:end + 1]), False
        except ValueError:
            pass

    repaired = _close_dangling(body[start:])
    if repaired is None:
        return None, False
    try:
        return json.loads(repaired), True
    except ValueError:
        return None, False


class AgentRuntime:
    """Runs one agent call against a backend and validates the contract."""

    def __init__(self, backend: ModelBackend) -> None:
        self.backend = backend

    def run_agent(
        self,
        agent_name: str,
        system_prompt: str,
        user_prompt: str,
        schema: Type[AgentOutput],
    ) -> AgentResult:
        try:
            response = self.backend.complete(system_prompt, user_prompt)
        except AgentModelRequestError as exc:
            raise AgentModelRequestError(agent_name, exc.detail or "", status_code=exc.status_code) from exc

        if response.stop_reason == "max_tokens":
            raise AgentResponseTruncatedError(agent_name)

        data, repaired = extract_json(response.text)
        if data is None:
            raise AgentResponseInvalidJsonError(agent_name)
        if repaired:
            raise AgentResponseTruncatedError(agent_name)

        try:
            parsed = schema.model_validate(data)
        except PydanticValidationError as exc:
            issue = exc.errors()[0] if exc.errors() else {}
            loc = issue.get("loc") or ()
            path = ".".join(str(part) for part in loc) or "root"
            reason = issue.get("msg") or "invalid output"
            raise AgentContractInvalidError(agent_name, path, _truncate(reason)) from exc

        if (
            response.input_tokens is not None
            and response.output_tokens is not None
            and response.input_tokens >= 0
            and response.output_tokens >= 0
        ):
            token_usage = response.input_tokens + response.output_tokens
        else:
            token_usage = estimate_token_usage(response.text)

        logger.debug(
            "agent_runtime_completed",
            extra={"agent_name": agent_name, "token_usage": token_usage, "stop_reason": response.stop_reason},
        )
        return AgentResult(
            output=parsed.to_payload(),
            token_usage=token_usage,
            cost=estimate_usd_cost(response.input_tokens, response.output_tokens),
        )
