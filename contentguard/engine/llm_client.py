# contentguard/engine/llm_client.py
"""
Chat model adapters used by tier-three extraction (Gemini / Groq).

Each adapter exposes three call shapes, one per extraction strategy:
    call_for_entity(system, text, schema)            provider-native structured output
    call(system, text)                               plain completion, raw text back
    call_agent(system, text, schema, max_turns)      tool-call loop ending in report_findings

SDK responses are converted into a small closed set of reply variants so the
extractor never has to probe response objects:
    StructuredReply | TextReply | ToolCallReply | EmptyReply

Transport/SDK errors propagate; the extractor turns them into typed failures.

Environment Variables:
    LLM_PROVIDER: gemini | groq
    GEMINI_API_KEY / GEMINI_MODEL
    GROQ_API_KEY / GROQ_MODEL
"""

from __future__ import annotations

import json
import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Type, Union

from google import genai
from google.genai import types
from groq import Groq
from pydantic import BaseModel

from contentguard.engine.config import Settings
from contentguard.engine.cost_context import get_context
from contentguard.engine.logging_config import log_event

logger = logging.getLogger(__name__)

REPORT_TOOL_NAME = "report_findings"
REPORT_TOOL_DESCRIPTION = "Report every risky span found in the text. Call exactly once."
AGENT_NUDGE = f"Call the {REPORT_TOOL_NAME} tool now with your final findings."


# =============================================================================
# Reply variants
# =============================================================================

@dataclass(frozen=True)
class StructuredReply:
    """Provider-validated structured output (pydantic instance or plain dict)."""
    data: Any


@dataclass(frozen=True)
class TextReply:
    text: str


@dataclass(frozen=True)
class ToolCallReply:
    name: str
    arguments: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class EmptyReply:
    reason: Optional[str] = None


Reply = Union[StructuredReply, TextReply, ToolCallReply, EmptyReply]


class LlmUnavailable(RuntimeError):
    """No client could be built (missing key, provider not configured)."""


def _log_usage(provider: str, mode: str, total_tokens: Optional[int]) -> None:
    ctx = get_context()
    log_event(
        logger, "LLM_USAGE",
        provider=provider,
        mode=mode,
        traceId=ctx.trace_id if ctx else None,
        agentId=ctx.agent_id if ctx else None,
        totalTokens=total_tokens,
    )


class ChatModel:
    """Interface the extractor depends on."""

    provider: str = "unknown"

    def call_for_entity(self, system: str, text: str, schema: Type[BaseModel]) -> Reply:
        raise NotImplementedError

    def call(self, system: str, text: str) -> str:
        raise NotImplementedError

    def call_agent(self, system: str, text: str, schema: Type[BaseModel], max_turns: int = 3,
                   cancel: Optional[threading.Event] = None) -> Reply:
        raise NotImplementedError


# =============================================================================
# Gemini (google-genai)
# =============================================================================

class GeminiChatModel(ChatModel):
    provider = "gemini"

    def __init__(self, api_key: Optional[str], model: str, temperature: float = 0.0,
                 timeout_ms: int = 0):
        if not api_key:
            raise LlmUnavailable("No GEMINI_API_KEY configured")
        http_options = types.HttpOptions(timeout=timeout_ms) if timeout_ms > 0 else None
        self.client = genai.Client(api_key=api_key, http_options=http_options)
        self.model = model
        self.temperature = temperature

    @staticmethod
    def _tokens(response: Any) -> Optional[int]:
        usage = getattr(response, "usage_metadata", None)
        return getattr(usage, "total_token_count", None) if usage is not None else None

    def call_for_entity(self, system: str, text: str, schema: Type[BaseModel]) -> Reply:
        response = self.client.models.generate_content(
            model=self.model,
            contents=text,
            config={
                "system_instruction": system,
                "temperature": self.temperature,
                "response_mime_type": "application/json",
                "response_schema": schema,
            },
        )
        _log_usage(self.provider, "CHAT_ENTITY", self._tokens(response))
        if response.parsed is not None:
            return StructuredReply(response.parsed)
        if response.text:
            return TextReply(response.text)
        return EmptyReply("no parsed output")

    def call(self, system: str, text: str) -> str:
        response = self.client.models.generate_content(
            model=self.model,
            contents=text,
            config={
                "system_instruction": system,
                "temperature": self.temperature,
            },
        )
        _log_usage(self.provider, "RAW_JSON", self._tokens(response))
        return (response.text or "").strip()

    def call_agent(self, system: str, text: str, schema: Type[BaseModel], max_turns: int = 3,
                   cancel: Optional[threading.Event] = None) -> Reply:
        tool = types.Tool(function_declarations=[
            types.FunctionDeclaration(
                name=REPORT_TOOL_NAME,
                description=REPORT_TOOL_DESCRIPTION,
                parameters_json_schema=schema.model_json_schema(),
            )
        ])
        config = types.GenerateContentConfig(
            system_instruction=system,
            temperature=self.temperature,
            tools=[tool],
            automatic_function_calling=types.AutomaticFunctionCallingConfig(disable=True),
        )
        contents: List[Any] = [types.Content(role="user", parts=[types.Part.from_text(text=text)])]

        for turn in range(max_turns):
            if cancel is not None and cancel.is_set():
                return EmptyReply("cancelled")
            response = self.client.models.generate_content(
                model=self.model, contents=contents, config=config,
            )
            _log_usage(self.provider, "AGENT_TOOL", self._tokens(response))
            for call in response.function_calls or []:
                if call.name == REPORT_TOOL_NAME:
                    return ToolCallReply(call.name, dict(call.args or {}))
            if response.candidates and response.candidates[0].content is not None:
                contents.append(response.candidates[0].content)
            contents.append(types.Content(role="user", parts=[types.Part.from_text(text=AGENT_NUDGE)]))
            logger.debug(f"Gemini agent turn {turn + 1}/{max_turns} ended without tool call")
        return EmptyReply("no tool call within max turns")


# =============================================================================
# Groq (OpenAI-compatible chat completions)
# =============================================================================

class GroqChatModel(ChatModel):
    provider = "groq"

    def __init__(self, api_key: Optional[str], model: str, temperature: float = 0.0,
                 timeout_ms: int = 0):
        if not api_key:
            raise LlmUnavailable("No GROQ_API_KEY configured")
        if timeout_ms > 0:
            self.client = Groq(api_key=api_key, timeout=timeout_ms / 1000.0, max_retries=0)
        else:
            self.client = Groq(api_key=api_key)
        self.model = model
        self.temperature = temperature

    @staticmethod
    def _tokens(completion: Any) -> Optional[int]:
        usage = getattr(completion, "usage", None)
        return getattr(usage, "total_tokens", None) if usage is not None else None

    def call_for_entity(self, system: str, text: str, schema: Type[BaseModel]) -> Reply:
        schema_hint = json.dumps(schema.model_json_schema(), ensure_ascii=False)
        completion = self.client.chat.completions.create(
            model=self.model,
            messages=[
                {"role": "system", "content": f"{system}\n\nJSON schema:\n{schema_hint}"},
                {"role": "user", "content": text},
            ],
            temperature=self.temperature,
            response_format={"type": "json_object"},
        )
        _log_usage(self.provider, "CHAT_ENTITY", self._tokens(completion))
        content = completion.choices[0].message.content
        if not content or not content.strip():
            return EmptyReply("empty completion")
        try:
            return StructuredReply(json.loads(content))
        except json.JSONDecodeError:
            return TextReply(content)

    def call(self, system: str, text: str) -> str:
        completion = self.client.chat.completions.create(
            model=self.model,
            messages=[
                {"role": "system", "content": system},
                {"role": "user", "content": text},
            ],
            temperature=self.temperature,
        )
        _log_usage(self.provider, "RAW_JSON", self._tokens(completion))
        return (completion.choices[0].message.content or "").strip()

    def call_agent(self, system: str, text: str, schema: Type[BaseModel], max_turns: int = 3,
                   cancel: Optional[threading.Event] = None) -> Reply:
        tools = [{
            "type": "function",
            "function": {
                "name": REPORT_TOOL_NAME,
                "description": REPORT_TOOL_DESCRIPTION,
                "parameters": schema.model_json_schema(),
            },
        }]
        messages: List[Dict[str, Any]] = [
            {"role": "system", "content": system},
            {"role": "user", "content": text},
        ]
        for turn in range(max_turns):
            if cancel is not None and cancel.is_set():
                return EmptyReply("cancelled")
            completion = self.client.chat.completions.create(
                model=self.model,
                messages=messages,
                temperature=self.temperature,
                tools=tools,
                tool_choice="auto",
            )
            _log_usage(self.provider, "AGENT_TOOL", self._tokens(completion))
            message = completion.choices[0].message
            for tool_call in message.tool_calls or []:
                if tool_call.function.name == REPORT_TOOL_NAME:
                    try:
                        arguments = json.loads(tool_call.function.arguments or "{}")
                    except json.JSONDecodeError:
                        return TextReply(tool_call.function.arguments or "")
                    return ToolCallReply(REPORT_TOOL_NAME, arguments if isinstance(arguments, dict) else {})
            messages.append({"role": "assistant", "content": message.content or ""})
            messages.append({"role": "user", "content": AGENT_NUDGE})
            logger.debug(f"Groq agent turn {turn + 1}/{max_turns} ended without tool call")
        return EmptyReply("no tool call within max turns")


def request_timeout_ms(settings: Settings) -> int:
    """
    SDK-level request timeout: the longest L3 deadline, so a hung provider
    releases its worker instead of pinning it past the attempt timeout.
    0 (no SDK timeout) when either deadline is disabled.
    """
    if settings.attempt_timeout_ms <= 0 or settings.batch_timeout_ms <= 0:
        return 0
    return max(settings.attempt_timeout_ms, settings.batch_timeout_ms)


def build_chat_model(settings: Settings) -> Optional[ChatModel]:
    """Chat model for the configured provider, or None when it cannot be built."""
    timeout_ms = request_timeout_ms(settings)
    try:
        if settings.llm_provider == "groq":
            return GroqChatModel(settings.groq_api_key, settings.groq_model, timeout_ms=timeout_ms)
        return GeminiChatModel(settings.gemini_api_key, settings.gemini_model, timeout_ms=timeout_ms)
    except LlmUnavailable as e:
        logger.warning(f"LLM tier unavailable: {e}")
        return None
