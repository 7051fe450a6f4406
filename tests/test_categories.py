"""Tests for categories module functionality."""

import unittest

import pytest

from timely.categories import (
    BUILTIN_RULES,
    USER_RULE_PRIORITY,
    CategoryStore,
    classify,
    matches_pattern,
    validate_builtin_rules,
)
from timely.errors import ConfigError, RuleNotFoundError, TimelyError
from timely.models import CategoryRule, RuleField, Snapshot
from timely.storage import EventStore


class TestMatchesPattern(unittest.TestCase):
    """Test cases for matches_pattern."""

    def test_exact_match_is_case_insensitive(self):
        self.assertTrue(matches_pattern("Terminal", "terminal"))
        self.assertTrue(matches_pattern("TERMINAL", "Terminal"))

    def test_exact_match_requires_whole_value(self):
        self.assertFalse(matches_pattern("Terminal Pro", "Terminal"))

    def test_star_glob(self):
        self.assertTrue(matches_pattern("www.youtube.com", "*youtube.com"))
        self.assertTrue(matches_pattern("youtube.com", "*youtube.com"))
        self.assertFalse(matches_pattern("youtube.com.evil", "*youtube.com"))

    def test_question_mark_glob(self):
        self.assertTrue(matches_pattern("app1", "app?"))
        self.assertFalse(matches_pattern("app12", "app?"))

    def test_glob_is_case_insensitive(self):
        self.assertTrue(matches_pattern("PyCharm Professional", "pycharm*"))

    def test_brackets_without_wildcard_are_literal(self):
        self.assertTrue(matches_pattern("[draft]", "[draft]"))
        self.assertFalse(matches_pattern("d", "[draft]"))

    def test_unbalanced_bracket_glob_does_not_raise(self):
        self.assertFalse(matches_pattern("anything", "[*"))


def _rule(rule_id, category_id, field, pattern, priority=100):
    return CategoryRule(
        id=rule_id, category_id=category_id, field=field, pattern=pattern, priority=priority
    )


class TestClassify(unittest.TestCase):
    """Test cases for the pure classify function."""

    def test_returns_first_match(self):
        rules = [
            _rule(1, 10, RuleField.APP, "Code"),
            _rule(2, 20, RuleField.APP, "Code"),
        ]
        self.assertEqual(classify(Snapshot("Code", "x"), rules), 10)

    def test_unmatched_snapshot_returns_none(self):
        rules = [_rule(1, 10, RuleField.APP, "Code")]
        self.assertIsNone(classify(Snapshot("Finder", "Downloads"), rules))

    def test_url_domain_rule_skipped_without_domain(self):
        rules = [_rule(1, 10, RuleField.URL_DOMAIN, "*")]
        self.assertIsNone(classify(Snapshot("Finder", "Downloads"), rules))

    def test_title_rule(self):
        rules = [_rule(1, 30, RuleField.TITLE, "*standup*")]
        snapshot = Snapshot("zoom.us", "Daily Standup Meeting")
        self.assertEqual(classify(snapshot, rules), 30)


class TestValidateBuiltinRules(unittest.TestCase):
    def test_shipped_table_is_unique(self):
        validate_builtin_rules(BUILTIN_RULES)

    def test_duplicate_field_pattern_rejected(self):
        rules = [
            ("work/coding", "app", "Code", 100),
            ("work/terminal", "app", "Code", 100),
        ]
        with self.assertRaises(ConfigError):
            validate_builtin_rules(rules)

    def test_same_pattern_on_different_fields_allowed(self):
        rules = [
            ("work/coding", "app", "github.com", 100),
            ("reference/docs", "url_domain", "github.com", 100),
        ]
        validate_builtin_rules(rules)


def _category_of(conn, snapshot):
    store = CategoryStore(conn)
    category_id = classify(snapshot, store.list_rules())
    if category_id is None:
        return None
    return store.get_category_by_id(category_id).name


@pytest.mark.parametrize(
    "snapshot,expected",
    [
        (Snapshot("Code", "main.py"), "work/coding"),
        (Snapshot("code", "main.py"), "work/coding"),
        (Snapshot("Terminal", "zsh"), "work/terminal"),
        (Snapshot("Claude Code", "session"), "work/ai-tools"),
        (Snapshot("Codex CLI", "session"), "work/ai-tools"),
        (Snapshot("Aider", "session"), "work/ai-tools"),
        (Snapshot("Safari", "PR", "https://github.com/x", "github.com"), "reference/docs"),
        (
            Snapshot("Chrome", "Video", "https://www.youtube.com/watch", "www.youtube.com"),
            "entertainment/video",
        ),
    ],
)
def test_builtin_rules_classify(conn, snapshot, expected):
    assert _category_of(conn, snapshot) == expected


def test_builtin_scores(conn):
    store = CategoryStore(conn)
    assert store.get_category_by_name("work/coding").productivity_score == 2.0
    assert store.get_category_by_name("entertainment/video").productivity_score == -2.0
    assert store.get_category_by_name("uncategorized").productivity_score == 0.0


def test_child_category_links_parent(conn):
    store = CategoryStore(conn)
    work = store.get_category_by_name("work")
    assert store.get_category_by_name("work/coding").parent_id == work.id


def test_user_rule_beats_builtin(conn):
    store = CategoryStore(conn)
    store.add_user_rule("github.com", "entertainment/social", RuleField.URL_DOMAIN)

    snapshot = Snapshot("Safari", "Feed", "https://github.com", "github.com")
    assert _category_of(conn, snapshot) == "entertainment/social"


def test_rules_listed_by_priority_then_id(conn):
    store = CategoryStore(conn)
    _, rule_id, _ = store.add_user_rule("Obsidian", "work/writing")

    rules = store.list_rules()
    assert rules[0].id == rule_id
    assert rules[0].priority == USER_RULE_PRIORITY
    keys = [(-rule.priority, rule.id) for rule in rules]
    assert keys == sorted(keys)


def test_seed_is_idempotent(conn):
    store = CategoryStore(conn)
    before = len(store.list_rules())
    store.seed_builtin_categories()
    store.seed_builtin_categories()
    assert len(store.list_rules()) == before
    assert before == len(BUILTIN_RULES)


def test_seed_purges_stale_builtins_and_keeps_user_rules(conn):
    store = CategoryStore(conn)
    store.add_user_rule("Obsidian", "work/writing")

    trimmed = [rule for rule in BUILTIN_RULES if rule[2] != "Terminal"]
    store.seed_builtin_categories(rules=trimmed)

    patterns = {(rule.pattern, rule.is_builtin) for rule in store.list_rules()}
    assert ("Terminal", True) not in patterns
    assert ("Obsidian", False) in patterns


def test_ensure_category_creates_with_parent(conn):
    store = CategoryStore(conn)
    category = store.ensure_category("work/writing")
    assert category.parent_id == store.get_category_by_name("work").id
    assert store.ensure_category("work/writing").id == category.id


def test_retroactive_rule_updates_matching_events(conn, device, t0):
    events = EventStore(conn)
    first = events.insert(device.id, t0, 10.0, "Obsidian", "notes")
    other = events.insert(device.id, t0, 10.0, "Finder", "Downloads")

    category, _, updated = CategoryStore(conn).add_user_rule(
        "obsidian", "work/writing", retroactive=True
    )

    assert updated == 1
    assert events.get(first).category_id == category.id
    assert events.get(other).category_id is None


def test_delete_rule_falls_back_to_builtin(conn, device, t0):
    store = CategoryStore(conn)
    events = EventStore(conn)
    event_id = events.insert(device.id, t0, 5.0, "Terminal", "zsh")

    _, rule_id, _ = store.add_user_rule("Terminal", "entertainment", retroactive=True)
    assert events.get(event_id).category_name == "entertainment"

    assert store.delete_rule(rule_id) == 1
    assert events.get(event_id).category_name == "work/terminal"
    assert store.get_rule(rule_id) is None


def test_delete_rule_falls_back_to_uncategorized(conn, device, t0):
    store = CategoryStore(conn)
    events = EventStore(conn)
    event_id = events.insert(device.id, t0, 5.0, "Obsidian", "notes")

    _, rule_id, _ = store.add_user_rule("Obsidian", "work/writing", retroactive=True)
    store.delete_rule(rule_id)

    assert events.get(event_id).category_name == "uncategorized"


def test_delete_rule_leaves_events_claimed_by_other_rules(conn, device, t0):
    store = CategoryStore(conn)
    events = EventStore(conn)
    docs = store.get_category_by_name("reference/docs")
    event_id = events.insert(
        device.id, t0, 5.0, "Safari", "Pull requests",
        url="https://github.com/pulls", url_domain="github.com", category_id=docs.id,
    )

    _, rule_id, _ = store.add_user_rule("Safari", "entertainment")

    assert store.delete_rule(rule_id) == 0
    assert events.get(event_id).category_name == "reference/docs"


def test_delete_rule_reclassifies_with_remaining_rules(conn, device, t0):
    store = CategoryStore(conn)
    events = EventStore(conn)
    event_id = events.insert(
        device.id, t0, 5.0, "Safari", "Pull requests",
        url="https://github.com/pulls", url_domain="github.com",
    )

    _, rule_id, _ = store.add_user_rule("Safari", "entertainment", retroactive=True)
    assert events.get(event_id).category_name == "entertainment"

    assert store.delete_rule(rule_id) == 1
    assert events.get(event_id).category_name == "reference/docs"


def test_delete_unknown_rule(conn):
    with pytest.raises(RuleNotFoundError):
        CategoryStore(conn).delete_rule(99999)


def test_builtin_rule_cannot_be_deleted(conn):
    store = CategoryStore(conn)
    builtin = next(rule for rule in store.list_rules() if rule.is_builtin)
    with pytest.raises(TimelyError):
        store.delete_rule(builtin.id)
    assert store.get_rule(builtin.id) is not None
