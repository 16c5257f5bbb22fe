"""
Tests for decision proposers and prompt construction.

The OpenAI client is patched; tool-call rounds are scripted with simple
namespace objects shaped like chat completion responses.
"""

import json
from types import SimpleNamespace
from unittest.mock import Mock, patch

import pytest

from ai.llm_client import Decision, OpenRouterProposer, RuleBasedProposer
from ai.snapshot_builder import build_decision_context, build_system_prompt, get_strategy, render_prompt
from core.exceptions import ExchangeAuthError
from infra.state_store import DecisionRecord, Trade
from tests.helpers import make_position

GUARDRAILS = {"max_leverage": 15, "max_positions": 5, "symbols": ["BTC", "ETH"]}


def completion(content=None, tool_calls=None):
    message = SimpleNamespace(content=content, tool_calls=tool_calls)
    return SimpleNamespace(choices=[SimpleNamespace(message=message)])


def tool_call(call_id, name, arguments):
    return SimpleNamespace(id=call_id, function=SimpleNamespace(name=name, arguments=arguments))


@pytest.fixture
def context():
    return build_decision_context(
        engine_id=1,
        iteration=4,
        market_data={"BTC": {"price": 100.0, "funding_rate": 0.0001,
                             "5m": {"ema20": 99.0, "rsi14": 55.0}, "1h": {"atr14": 2.0}}},
        account_info={"total_balance": 1000.0, "available_balance": 900.0,
                      "unrealized_pnl": 5.0, "return_percent": 0.5},
        positions=[make_position(symbol="BTC", entry=100.0, current=101.0, leverage=10)],
        trade_history=[Trade(engine_id=1, order_id="o1", symbol="BTC", side="long", type="open",
                             price=100.0, quantity=10, leverage=10)],
        recent_decisions=[DecisionRecord(engine_id=1, iteration=3, decision="HOLD")],
        strategy="aggressive",
        guardrails=GUARDRAILS,
    )


class TestSnapshotBuilder:

    def test_context_fields(self, context):
        assert context["iteration"] == 4
        assert context["strategy"] == "aggressive"
        assert context["positions"][0]["pnl_percent"] == pytest.approx(10.0)
        assert context["trade_history"][0]["type"] == "open"
        assert context["recent_decisions"][0]["decision"] == "HOLD"

    def test_unknown_strategy_falls_back(self):
        assert get_strategy("yolo").name == "balanced"

    def test_leverage_band_clamped_to_guardrail(self):
        prompt = build_system_prompt("aggressive", {**GUARDRAILS, "max_leverage": 20})
        assert "20-20x leverage" in prompt

    def test_render_prompt(self, context):
        text = render_prompt(context)
        assert "## Market" in text
        assert "BTC: price=100.0" in text
        assert "pnl=+10.00%" in text
        assert "#3" in text


class TestRuleBasedProposer:

    def test_holds(self, context):
        decision = RuleBasedProposer().propose(context)
        assert decision.text == "HOLD: 1 open position(s); market data for BTC."
        assert decision.actions_taken == []


@pytest.fixture
def openai_client():
    with patch("openai.OpenAI") as factory:
        yield factory.return_value


def make_proposer(toolbox=None, **kwargs):
    toolbox = toolbox or Mock(specs=[])
    return OpenRouterProposer(api_key="sk-test", model="deepseek/deepseek-chat",
                              toolbox=toolbox, **kwargs)


class TestOpenRouterProposer:

    def test_plain_answer(self, openai_client, context):
        openai_client.chat.completions.create.return_value = completion("HOLD: waiting")

        decision = make_proposer().propose(context)

        assert decision.text == "HOLD: waiting"
        assert decision.error is None
        kwargs = openai_client.chat.completions.create.call_args.kwargs
        assert kwargs["model"] == "deepseek/deepseek-chat"
        assert kwargs["messages"][0]["role"] == "system"

    def test_tool_round_trip(self, openai_client, context):
        toolbox = Mock(specs=[])
        toolbox.dispatch.return_value = {"success": True, "positions": []}
        openai_client.chat.completions.create.side_effect = [
            completion(None, [tool_call("c1", "get_positions", "{}")]),
            completion("No trades this round."),
        ]

        decision = make_proposer(toolbox).propose(context)

        toolbox.dispatch.assert_called_once_with("get_positions", {})
        assert decision.text == "No trades this round."
        assert decision.actions_taken == [
            {"name": "get_positions", "arguments": {}, "result": {"success": True, "positions": []}}
        ]
        second_messages = openai_client.chat.completions.create.call_args_list[1].kwargs["messages"]
        assert second_messages[-1]["role"] == "tool"
        assert json.loads(second_messages[-1]["content"]) == {"success": True, "positions": []}

    def test_malformed_tool_arguments_not_dispatched(self, openai_client, context):
        toolbox = Mock(specs=[])
        openai_client.chat.completions.create.side_effect = [
            completion(None, [tool_call("c1", "open_position", "{not json")]),
            completion("done"),
        ]

        decision = make_proposer(toolbox).propose(context)

        toolbox.dispatch.assert_not_called()
        assert decision.tool_invocations[0].result["success"] is False

    def test_stops_after_max_rounds(self, openai_client, context):
        toolbox = Mock(specs=[])
        toolbox.dispatch.return_value = {"success": True}
        openai_client.chat.completions.create.return_value = completion(
            "thinking", [tool_call("c", "get_positions", "{}")])

        decision = make_proposer(toolbox, max_tool_rounds=2).propose(context)

        assert openai_client.chat.completions.create.call_count == 2
        assert len(decision.tool_invocations) == 2
        assert decision.text == "thinking"

    def test_service_failure_becomes_error_decision(self, openai_client, context):
        openai_client.chat.completions.create.side_effect = RuntimeError("upstream 502")

        decision = make_proposer().propose(context)

        assert isinstance(decision, Decision)
        assert decision.error == "upstream 502"
        assert decision.text.startswith("decision service error")

    def test_credential_failure_in_tool_propagates(self, openai_client, context):
        toolbox = Mock(specs=[])
        toolbox.dispatch.side_effect = ExchangeAuthError("Authentication failed: INVALID_KEY", 401)
        openai_client.chat.completions.create.return_value = completion(
            None, [tool_call("c1", "get_account_balance", "{}")])

        with pytest.raises(ExchangeAuthError):
            make_proposer(toolbox).propose(context)

        assert openai_client.chat.completions.create.call_count == 1
