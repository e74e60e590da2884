"""Tests for branch naming rules and work-item categorization."""

import pytest

from workspace_orchestrator.core.branches import (
    branch_name_for,
    normalize_branch_name,
    prefix_for_type,
    validate_branch_name,
)
from workspace_orchestrator.core.categories import Category, categorize, to_smart_category


class TestNormalize:
    def test_lowercases_and_hyphenates(self):
        assert normalize_branch_name("Feat Add_Login!!") == "feat-add-login"

    def test_collapses_and_strips_hyphens(self):
        assert normalize_branch_name("--feat---x--") == "feat-x"


MESSY_NAMES = [
    "  Fix Login Bug!! ",
    "feat__dark__mode",
    "Ünïcode Brânch",
    "--docs--",
    "feat-" + "x" * 60,
    "a b c d e f g",
    "MAIN",
    "",
]


class TestNamingProperties:
    @pytest.mark.parametrize("name", MESSY_NAMES)
    def test_validation_is_deterministic(self, name):
        assert validate_branch_name(name) == validate_branch_name(name)

    @pytest.mark.parametrize("name", MESSY_NAMES)
    def test_normalization_is_idempotent(self, name):
        normalized = normalize_branch_name(name)
        assert validate_branch_name(normalized).normalized_name == normalized
        assert normalize_branch_name(normalized) == normalized

    def test_messy_title(self):
        result = validate_branch_name("  Fix Login Bug!! ")
        assert result.normalized_name == "fix-login-bug"
        assert result.valid


class TestValidate:
    def test_valid_name(self):
        result = validate_branch_name("feat-add-login")
        assert result.valid
        assert result.prefix == "feat"
        assert result.errors == []
        assert result.suggestions == []

    def test_main_is_valid(self):
        result = validate_branch_name("main")
        assert result.valid
        assert result.prefix == "main"

    def test_category_prefix_is_valid(self):
        assert validate_branch_name("database-orders-index").valid

    def test_empty_name(self):
        result = validate_branch_name("  !! ")
        assert not result.valid
        assert result.errors == ["Branch name cannot be empty"]

    def test_missing_prefix_suggests_feat(self):
        result = validate_branch_name("add-login")
        assert not result.valid
        assert result.prefix is None
        assert "start with one of" in result.errors[0]
        assert result.suggestions == ["feat-add-login"]

    def test_missing_prefix_infers_fix(self):
        result = validate_branch_name("broken login page")
        assert result.normalized_name == "broken-login-page"
        assert result.suggestions[0] == "fix-broken-login-page"
        assert "feat-broken-login-page" in result.suggestions

    def test_too_many_segments(self):
        result = validate_branch_name("feat-a-b-c-d-e")
        assert not result.valid
        assert "at most 5 hyphen-separated parts (got 6)" in result.errors[0]
        assert result.suggestions == ["feat-a-b-c-d"]

    def test_too_long(self):
        result = validate_branch_name("feat-" + "x" * 50)
        assert not result.valid
        assert any("at most 50 characters (got 55)" in e for e in result.errors)

    def test_suggestions_are_valid(self):
        for name in ("add-login", "feat-a-b-c-d-e", "broken login page", "feat-" + "word-" * 12):
            for suggestion in validate_branch_name(name).suggestions:
                assert validate_branch_name(suggestion).valid, suggestion


class TestBranchNameFor:
    def test_infers_prefix_and_drops_duplicate_word(self):
        assert branch_name_for("Fix login crash on Safari") == "fix-login-crash-on-safari"

    def test_prefix_and_suffix(self):
        name = branch_name_for("Add dark mode", prefix="frontend", suffix="ab12cd")
        assert name == "frontend-add-dark-mode-ab12cd"

    def test_suffix_hyphens_are_removed(self):
        name = branch_name_for("Add dark mode", prefix="feat", suffix="ab-12")
        assert name.endswith("-ab12")

    def test_empty_title(self):
        assert branch_name_for("!!!") == "feat-work"

    def test_unknown_prefix(self):
        with pytest.raises(ValueError):
            branch_name_for("Anything", prefix="bogus")

    @pytest.mark.parametrize(
        "title",
        [
            "Implement the new onboarding flow for enterprise customers with SSO",
            "Update README",
            "a" * 120,
            "Improve test coverage for the parser",
        ],
    )
    def test_always_valid(self, title):
        assert validate_branch_name(branch_name_for(title, suffix="abc123")).valid

    def test_prefix_for_type(self):
        assert prefix_for_type("bug") == "fix"
        assert prefix_for_type("story") == "feat"
        assert prefix_for_type("task") == "chore"
        assert prefix_for_type("unknown") == "feat"


class TestCategorize:
    def test_picks_best_match(self):
        category = categorize("Add database migration for orders")
        assert category.id == "database"

    def test_falls_back_to_first(self):
        category = categorize("Zzz")
        assert category.id == "frontend"

    def test_empty_category_list(self):
        assert categorize("Anything", categories=[]) is None

    def test_custom_categories(self):
        custom = [
            Category(id="docs", name="Docs"),
            Category(id="api", name="API", keywords=["webhook"]),
        ]
        assert categorize("Retry failed webhook deliveries", categories=custom).id == "api"

    def test_to_smart_category(self):
        smart = to_smart_category(categorize("Add database migration for orders"))
        assert smart.id == "database"
        assert smart.team == "data"
        assert smart.categorized_at
