"""
Decision proposal service clients.

The proposer is a capability: ``propose(context) -> Decision``. The engine
treats it as a black box and never lets its failures escape the cycle.

Implementations:
- OpenRouterProposer: OpenAI-compatible chat completions with function
  tools (OpenRouter by default, any compatible endpoint via base_url)
- RuleBasedProposer: deterministic stub that never trades
"""

import json
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from ai.snapshot_builder import build_system_prompt, render_prompt
from core.exceptions import ExchangeAuthError

logger = logging.getLogger(__name__)


@dataclass
class ToolInvocation:
    name: str
    arguments: Dict[str, Any]
    result: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {"name": self.name, "arguments": self.arguments, "result": self.result}


@dataclass
class Decision:
    """Free-text decision plus the tool calls made while reaching it"""
    text: str
    tool_invocations: List[ToolInvocation] = field(default_factory=list)
    error: Optional[str] = None
    latency_ms: float = 0.0

    @property
    def actions_taken(self) -> List[Dict[str, Any]]:
        return [inv.to_dict() for inv in self.tool_invocations]


class DecisionProposer(ABC):
    """Abstract decision proposal capability."""

    @abstractmethod
    def propose(self, context: Dict[str, Any]) -> Decision:
        """Return a Decision for the given context. Must not raise."""


class RuleBasedProposer(DecisionProposer):
    """Deterministic stand-in: summarizes the context and holds."""

    def propose(self, context: Dict[str, Any]) -> Decision:
        positions = context.get("positions", [])
        symbols = ", ".join(sorted(context.get("market_data", {}))) or "none"
        return Decision(
            text=f"HOLD: {len(positions)} open position(s); market data for {symbols}."
        )


class OpenRouterProposer(DecisionProposer):
    """
    Tool-calling proposer over an OpenAI-compatible chat completions API.

    Tool calls are executed through the engine's TradingToolbox and their
    results fed back to the model for up to ``max_tool_rounds`` rounds.
    """

    def __init__(
        self,
        api_key: str,
        model: str,
        toolbox,
        base_url: str = "https://openrouter.ai/api/v1",
        temperature: float = 0.4,
        max_tokens: int = 1200,
        max_tool_rounds: int = 5,
        timeout: float = 60.0,
    ) -> None:
        from openai import OpenAI

        self.model = model
        self.toolbox = toolbox
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.max_tool_rounds = max_tool_rounds
        self.client = OpenAI(api_key=api_key, base_url=base_url, timeout=timeout)

    def propose(self, context: Dict[str, Any]) -> Decision:
        start = time.perf_counter()
        invocations: List[ToolInvocation] = []
        messages: List[Dict[str, Any]] = [
            {"role": "system", "content": build_system_prompt(context["strategy"], context["guardrails"])},
            {"role": "user", "content": render_prompt(context)},
        ]

        try:
            text = ""
            for _ in range(self.max_tool_rounds):
                response = self.client.chat.completions.create(
                    model=self.model,
                    messages=messages,
                    tools=self.toolbox.specs,
                    tool_choice="auto",
                    temperature=self.temperature,
                    max_tokens=self.max_tokens,
                )
                message = response.choices[0].message
                text = message.content or text

                if not message.tool_calls:
                    break

                messages.append({
                    "role": "assistant",
                    "content": message.content or "",
                    "tool_calls": [
                        {
                            "id": call.id,
                            "type": "function",
                            "function": {"name": call.function.name, "arguments": call.function.arguments},
                        }
                        for call in message.tool_calls
                    ],
                })
                for call in message.tool_calls:
                    invocation = self._run_tool(call.function.name, call.function.arguments)
                    invocations.append(invocation)
                    messages.append({
                        "role": "tool",
                        "tool_call_id": call.id,
                        "content": json.dumps(invocation.result, default=str),
                    })
            else:
                logger.warning(f"Proposer hit max tool rounds ({self.max_tool_rounds})")

        except ExchangeAuthError:
            # Credential failures end the engine, not just this decision
            raise
        except Exception as exc:
            elapsed = (time.perf_counter() - start) * 1000
            logger.error(f"Decision proposer failed after {elapsed:.0f}ms: {exc}", exc_info=True)
            return Decision(text=f"decision service error: {exc}", tool_invocations=invocations,
                            error=str(exc), latency_ms=elapsed)

        elapsed = (time.perf_counter() - start) * 1000
        logger.info(f"Decision proposer completed in {elapsed:.0f}ms with {len(invocations)} tool call(s)")
        return Decision(text=text or "(no text)", tool_invocations=invocations, latency_ms=elapsed)

    def _run_tool(self, name: str, raw_arguments: Optional[str]) -> ToolInvocation:
        try:
            arguments = json.loads(raw_arguments or "{}")
        except json.JSONDecodeError as exc:
            return ToolInvocation(name=name, arguments={"raw": raw_arguments},
                                  result={"success": False, "error": f"malformed arguments: {exc}"})
        return ToolInvocation(name=name, arguments=arguments,
                              result=self.toolbox.dispatch(name, arguments))
