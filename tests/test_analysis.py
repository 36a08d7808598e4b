"""Tests for prompt building, response validation, model selection and costing."""
import json
from unittest.mock import MagicMock

import pytest

from ghintel.analysis import (AnalysisRequester, ModelProfile, parse_response, README_CHARS,
                              ENHANCED_README_CHARS, model_profiles_from_config)
from ghintel.claude.client import Completion
from ghintel.config import Config
from ghintel.errors import ModelResponseError, UpstreamRateLimited
from ghintel.storage import StorageService

MODELS = {
    "high": ModelProfile("high", "claude-opus", 15.0, 75.0, 16000, enhanced=True),
    "medium": ModelProfile("medium", "claude-sonnet", 3.0, 15.0, 8000, enhanced=True),
    "low": ModelProfile("low", "claude-haiku", 0.8, 4.0, 2000),
}

REPOSITORY = {
    "full_name": "acme/agentkit",
    "stars": 4200,
    "forks": 310,
    "open_issues": 42,
    "language": "Python",
    "topics": ["llm", "agents"],
    "description": "Agents for everyone",
    "created_at": "2024-01-01T00:00:00",
    "updated_at": "2025-05-01T00:00:00",
    "pushed_at": "2025-05-01T00:00:00",
    "default_branch": "main",
}


def valid_payload(**overrides):
    payload = {
        "scores": {"investment": 82, "innovation": 75, "team": 60, "market": 88},
        "recommendation": "buy",
        "summary": "Strong traction in agent tooling.",
        "strengths": ["community"],
        "risks": ["crowded market"],
        "questions": ["who maintains it?"],
    }
    payload.update(overrides)
    return payload


@pytest.fixture
def claude_client():
    return MagicMock()


@pytest.fixture
def requester(claude_client):
    return AnalysisRequester(claude_client, MODELS, high_threshold=70, medium_threshold=50, escalation_velocity=50)


def respond(claude_client, text, input_tokens=1200, output_tokens=400):
    claude_client.complete.return_value = Completion(text=text, input_tokens=input_tokens,
                                                     output_tokens=output_tokens, model="claude-sonnet")


def test_analyze_parses_valid_response(requester, claude_client):
    respond(claude_client, "Here you go:\n" + json.dumps(valid_payload()) + "\nThanks")

    result = requester.analyze(REPOSITORY, "# AgentKit", MODELS["medium"])

    assert result.payload.recommendation == "buy"
    assert result.payload.scores.market == 88
    assert result.model == "claude-sonnet"
    assert result.tokens_used == 1600
    assert result.cost_usd == pytest.approx((1200 * 3.0 + 400 * 15.0) / 1_000_000)
    args = claude_client.complete.call_args[0]
    assert args[1:] == ("claude-sonnet", 8000)
    assert claude_client.complete.call_args.kwargs["time_budget"] is None


def test_analyze_passes_time_budget(requester, claude_client):
    respond(claude_client, json.dumps(valid_payload()))
    requester.analyze(REPOSITORY, None, MODELS["low"], time_budget=42.0)
    assert claude_client.complete.call_args.kwargs["time_budget"] == 42.0


def test_missing_recommendation_raises_and_nothing_is_persisted(requester, claude_client):
    payload = valid_payload()
    del payload["recommendation"]
    respond(claude_client, json.dumps(payload))
    storage = StorageService("sqlite:///:memory:", load_env=False)

    with pytest.raises(ModelResponseError) as excinfo:
        result = requester.analyze(REPOSITORY, "readme", MODELS["low"])
        storage.save_analysis(1, result.to_record())

    assert "recommendation" in str(excinfo.value)
    assert excinfo.value.raw_response == json.dumps(payload)
    assert storage.get_latest_analysis(1) is None


@pytest.mark.parametrize("text", [
    "I cannot analyze this repository.",
    '{"scores": {"investment": 80,}',
    json.dumps(valid_payload(scores={"investment": 120, "innovation": 1, "team": 1, "market": 1})),
    json.dumps(valid_payload(recommendation="hold")),
    json.dumps(valid_payload(scores={"investment": 80, "innovation": 70, "team": 60})),
])
def test_unusable_responses_raise_model_response_error(requester, claude_client, text):
    respond(claude_client, text)
    with pytest.raises(ModelResponseError):
        requester.analyze(REPOSITORY, None, MODELS["low"])


def test_enhanced_fields_are_accepted():
    payload = valid_payload(
        scores={"investment": 91, "innovation": 88, "team": 70, "market": 90,
                "technical_moat": 75, "scalability": 80, "developer_adoption": 95},
        growth_prediction="Doubling in six months",
        investment_thesis="Category leader",
        competitive_analysis="Few credible rivals",
    )
    parsed = parse_response(json.dumps(payload))
    assert parsed.scores.developer_adoption == 95
    assert parsed.growth_prediction == "Doubling in six months"


def test_upstream_rate_limit_propagates(requester, claude_client):
    claude_client.complete.side_effect = UpstreamRateLimited("claude", 429, {"error": "rate_limit"})
    with pytest.raises(UpstreamRateLimited) as excinfo:
        requester.analyze(REPOSITORY, "readme", MODELS["high"])
    assert excinfo.value.status == 429


def test_cost_is_monotonic_in_output_tokens(requester):
    for model in MODELS.values():
        costs = [requester.estimate_cost(model, 1000, out) for out in range(0, 20001, 500)]
        assert costs == sorted(costs)


@pytest.mark.parametrize("composite,velocity,expected", [
    (85, 0, "high"),
    (70, 0, "high"),
    (60, 0, "medium"),
    (30, 0, "low"),
    (30, 75, "high"),
])
def test_select_model(requester, composite, velocity, expected):
    assert requester.select_model(composite, velocity).role == expected


def test_prompt_truncates_readme(requester):
    readme = "x" * (ENHANCED_README_CHARS + 50)
    basic = requester.build_prompt(REPOSITORY, readme, enhanced=False)
    enhanced = requester.build_prompt(REPOSITORY, readme, enhanced=True)

    assert "x" * README_CHARS + "..." in basic
    assert "x" * (README_CHARS + 1) not in basic
    assert "x" * ENHANCED_README_CHARS + "..." in enhanced
    assert "technical_moat" in enhanced and "technical_moat" not in basic
    assert "acme/agentkit" in basic
    assert "Topics: llm, agents" in basic


def test_profiles_from_config():
    config = Config(load_env=False)
    profiles = model_profiles_from_config(config)
    assert set(profiles) == {"high", "medium", "low"}
    assert profiles["low"].enhanced is False
    assert profiles["high"].max_tokens == config.model_max_tokens["high"]
