"""Tests for the branch resolver."""
import pytest
from datetime import datetime, timezone

from models.schemas import Branch, ConditionConfig
from utils.conditions import (
    default_branch, match_branch_keywords, match_global_keywords,
    needs_intent, resolve_branch,
)

NOON = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)


def yes_no_config(**kwargs) -> ConditionConfig:
    return ConditionConfig(
        branches=[
            Branch(id="a", value="yes", keywords=["sim"]),
            Branch(id="b", value="no", keywords=["não"]),
        ],
        **kwargs,
    )


class TestBranchKeywords:
    def test_keyword_substring_selects_branch(self):
        assert resolve_branch(yes_no_config(), "sim, pode ser", {}, NOON) == "a"

    def test_no_match_falls_back_to_last_branch(self):
        assert resolve_branch(yes_no_config(), "talvez", {}, NOON) == "b"

    def test_case_insensitive(self):
        assert resolve_branch(yes_no_config(), "SIM!", {}, NOON) == "a"

    def test_first_declared_branch_wins_when_both_match(self):
        assert resolve_branch(yes_no_config(), "sim e não", {}, NOON) == "a"

    def test_empty_keyword_is_ignored(self):
        branches = [Branch(id="x", keywords=[""]), Branch(id="y")]
        assert match_branch_keywords(branches, "qualquer coisa") is None

    def test_empty_message(self):
        assert resolve_branch(yes_no_config(), "", {}, NOON) == "b"


class TestGlobalKeywords:
    def test_maps_to_yes_branch(self):
        config = ConditionConfig(
            keywords=["quero"],
            branches=[Branch(id="n", value="no"), Branch(id="y", value="yes")],
        )
        assert match_global_keywords(config, "eu quero sim").id == "y"

    def test_maps_to_first_branch_without_yes(self):
        config = ConditionConfig(keywords=["quero"], branches=[Branch(id="p"), Branch(id="q")])
        assert resolve_branch(config, "quero", {}, NOON) == "p"

    def test_branch_keywords_take_precedence(self):
        config = ConditionConfig(
            keywords=["quero"],
            branches=[Branch(id="y", value="yes"), Branch(id="later", keywords=["depois"])],
        )
        assert resolve_branch(config, "quero depois", {}, NOON) == "later"


class TestIntentMode:
    def test_verdict_true_selects_first(self):
        config = yes_no_config(condition_type="intent", intent="comprar")
        assert resolve_branch(config, "tenho interesse", {}, NOON, intent_matched=True) == "a"

    def test_verdict_false_selects_second(self):
        config = yes_no_config(condition_type="intent", intent="comprar")
        assert resolve_branch(config, "tenho interesse", {}, NOON, intent_matched=False) == "b"

    def test_keywords_win_over_classifier(self):
        config = yes_no_config(condition_type="intent", intent="comprar")
        assert not needs_intent(config, "não obrigado")
        assert resolve_branch(config, "não obrigado", {}, NOON, intent_matched=True) == "b"

    def test_needs_intent_only_in_intent_mode(self):
        assert needs_intent(yes_no_config(condition_type="intent"), "talvez")
        assert not needs_intent(yes_no_config(condition_type="keyword"), "talvez")


class TestTimeMode:
    @pytest.fixture
    def config(self):
        return ConditionConfig(
            condition_type="time",
            time_range={"start": "09:00", "end": "18:00"},
            branches=[Branch(id="open"), Branch(id="closed")],
        )

    @pytest.mark.parametrize("hour,expected", [
        (9, "open"), (12, "open"), (17, "open"), (18, "closed"), (8, "closed"), (23, "closed"),
    ])
    def test_half_open_window(self, config, hour, expected):
        now = datetime(2026, 3, 10, hour, 30, tzinfo=timezone.utc)
        assert resolve_branch(config, "", {}, now) == expected

    def test_unparseable_range_uses_defaults(self):
        config = ConditionConfig(
            condition_type="time",
            time_range={"start": "cedo", "end": "tarde"},
            branches=[Branch(id="open"), Branch(id="closed")],
        )
        assert config.time_range.start_hour == 9
        assert config.time_range.end_hour == 18


class TestVariableMode:
    @pytest.fixture
    def config(self):
        return ConditionConfig(
            condition_type="variable",
            variable_name="interesse",
            branches=[Branch(id="buy", value="comprar"), Branch(id="rent", value="alugar"),
                      Branch(id="other")],
        )

    def test_substring_of_variable_value(self, config):
        assert resolve_branch(config, "", {"interesse": "Quero ALUGAR um ap"}, NOON) == "rent"

    def test_unset_variable_falls_back_to_last(self, config):
        assert resolve_branch(config, "", {}, NOON) == "other"

    def test_non_string_value(self, config):
        config.branches[0].value = "3"
        assert resolve_branch(config, "", {"interesse": 3}, NOON) == "buy"


class TestDefaults:
    def test_no_branches_resolves_to_none(self):
        assert resolve_branch(ConditionConfig(), "sim", {}, NOON) is None
        assert default_branch([]) is None

    def test_reads_message(self):
        assert ConditionConfig(condition_type="keyword").reads_message
        assert ConditionConfig(condition_type="intent").reads_message
        assert not ConditionConfig(condition_type="time").reads_message
        assert ConditionConfig(
            condition_type="variable", branches=[Branch(id="x", keywords=["oi"])],
        ).reads_message
