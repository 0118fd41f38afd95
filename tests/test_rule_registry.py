"""Tests for route rule parsing, matching and environment scaling."""

import json
import logging

import pytest
from pydantic import ValidationError

from app.schemas.rate_limit import RateLimitRule, RateLimitScope, RateLimitStrategy
from app.services.rate_limit_rules import (
    DEFAULT_ROUTE_RULES,
    TESTING_CEILING,
    RuleRegistry,
    load_rule_registry,
    parse_custom_rules,
    scale_for_environment,
)


class TestRateLimitRule:
    """Validation and matching helpers of a single rule."""

    def test_accepts_camel_case_keys(self) -> None:
        rule = RateLimitRule.model_validate(
            {"path": "/api/v1/reports", "windowMs": 5000, "max": 7, "statusCode": 503}
        )

        assert rule.window_ms == 5000
        assert rule.status_code == 503
        assert rule.method == ("ALL",)

    def test_method_normalized_to_uppercase_tuple(self) -> None:
        rule = RateLimitRule(path="/x", method=["get", " post "])

        assert rule.method == ("GET", "POST")
        assert rule.matches_method("post") is True
        assert rule.matches_method("DELETE") is False

    def test_relative_path_rejected(self) -> None:
        with pytest.raises(ValidationError):
            RateLimitRule(path="api/v1/x")

    def test_wildcard_matches_prefix_and_base(self) -> None:
        rule = RateLimitRule(path="/api/v1/public/*")

        assert rule.matches_path("/api/v1/public") is True
        assert rule.matches_path("/api/v1/public/notices/3") is True
        assert rule.matches_path("/api/v1/publicity") is False


class TestRuleRegistry:
    """Resolution order: exact before wildcard, then declaration order."""

    def test_exact_rule_beats_earlier_wildcard(self) -> None:
        wildcard = RateLimitRule(path="/api/v1/users/*", max=30)
        exact = RateLimitRule(path="/api/v1/users/me", max=5)
        registry = RuleRegistry([wildcard, exact])

        assert registry.resolve("/api/v1/users/me", "GET") is exact
        assert registry.resolve("/api/v1/users/42", "GET") is wildcard

    def test_first_declared_wildcard_wins(self) -> None:
        broad = RateLimitRule(path="/api/*", max=1)
        narrow = RateLimitRule(path="/api/v1/*", max=2)
        registry = RuleRegistry([broad, narrow])

        assert registry.resolve("/api/v1/x", "GET") is broad

    def test_method_must_match(self) -> None:
        registry = RuleRegistry([RateLimitRule(path="/api/v1/auth/login", method="POST")])

        assert registry.resolve("/api/v1/auth/login", "GET") is None

    def test_unmatched_path_passes_through(self) -> None:
        registry = RuleRegistry(DEFAULT_ROUTE_RULES)

        assert registry.resolve("/docs", "GET") is None

    def test_default_table(self) -> None:
        registry = RuleRegistry(DEFAULT_ROUTE_RULES)

        login = registry.resolve("/api/v1/auth/login", "POST")
        assert login.strategy is RateLimitStrategy.SLIDING_WINDOW
        assert login.scope is RateLimitScope.IP_USER_COMBINED

        upload = registry.resolve("/api/v1/upload", "POST")
        assert upload.strategy is RateLimitStrategy.LEAKY_BUCKET

        profile = registry.resolve("/api/v1/users/42/profile", "PUT")
        assert profile.strategy is RateLimitStrategy.TOKEN_BUCKET
        assert profile.scope is RateLimitScope.USER
        assert registry.resolve("/api/v1/users/42", "PATCH") is None

        assert len(registry) == len(DEFAULT_ROUTE_RULES)


class TestEnvironmentScaling:
    """Quotas are relaxed once, when the registry is loaded."""

    def test_development_multiplies_by_ten(self) -> None:
        scaled = scale_for_environment(DEFAULT_ROUTE_RULES, "development")

        assert [r.max for r in scaled] == [r.max * 10 for r in DEFAULT_ROUTE_RULES]

    @pytest.mark.parametrize("environment", ["testing", "test", "TESTING"])
    def test_testing_uses_ceiling(self, environment) -> None:
        scaled = scale_for_environment(DEFAULT_ROUTE_RULES, environment)

        assert {r.max for r in scaled} == {TESTING_CEILING}

    @pytest.mark.parametrize("environment", ["production", "staging"])
    def test_other_environments_unchanged(self, environment) -> None:
        scaled = scale_for_environment(DEFAULT_ROUTE_RULES, environment)

        assert [r.max for r in scaled] == [r.max for r in DEFAULT_ROUTE_RULES]

    def test_defaults_are_not_mutated(self) -> None:
        before = [r.max for r in DEFAULT_ROUTE_RULES]
        scale_for_environment(DEFAULT_ROUTE_RULES, "development")

        assert [r.max for r in DEFAULT_ROUTE_RULES] == before


class TestCustomRules:
    """``RATE_LIMIT_CONFIGS`` parsing never raises."""

    def test_valid_rules_appended_after_defaults(self) -> None:
        raw = json.dumps([
            {"path": "/api/v1/reports", "method": "GET", "strategy": "token-bucket", "max": 4, "rate": 0.5},
        ])

        registry = load_rule_registry("production", raw)

        assert len(registry) == len(DEFAULT_ROUTE_RULES) + 1
        custom = registry.rules[-1]
        assert custom.path == "/api/v1/reports"
        assert custom.rate == 0.5
        assert registry.resolve("/api/v1/reports", "GET") is custom

    def test_custom_rules_are_not_scaled(self) -> None:
        raw = json.dumps([{"path": "/api/v1/reports", "max": 4}])

        registry = load_rule_registry("development", raw)

        assert registry.rules[-1].max == 4

    def test_single_object_accepted(self) -> None:
        assert len(parse_custom_rules('{"path": "/x", "max": 2}')) == 1

    def test_malformed_json_logged_and_ignored(self, caplog) -> None:
        with caplog.at_level(logging.ERROR):
            rules = parse_custom_rules("[{not json")

        assert rules == []
        assert "rate_limit.custom_rules_invalid_json" in caplog.text

    def test_invalid_entries_skipped_individually(self, caplog) -> None:
        raw = json.dumps([
            {"path": "no-slash"},
            {"path": "/ok", "max": 0},
            {"path": "/ok", "strategy": "unknown"},
            {"path": "/fine", "max": 3},
        ])

        with caplog.at_level(logging.ERROR):
            rules = parse_custom_rules(raw)

        assert [r.path for r in rules] == ["/fine"]
        assert caplog.text.count("rate_limit.custom_rule_skipped") == 3

    @pytest.mark.parametrize("raw", [None, "", "   ", "42"])
    def test_empty_or_wrong_shape_yields_nothing(self, raw) -> None:
        assert parse_custom_rules(raw) == []

    def test_bad_configs_keep_default_rules(self) -> None:
        registry = load_rule_registry("production", "not json at all")

        assert len(registry) == len(DEFAULT_ROUTE_RULES)
