#!/usr/bin/env python3
"""
Rule-based categorization of activity snapshots.

Rules are matched against one of three snapshot fields (app, title,
url_domain). Patterns are compared case-insensitively: a pattern containing
``*`` or ``?`` is a glob, anything else must match exactly. Rules are tried in
descending priority (ties by ascending id) and the first match wins.
"""

import fnmatch
import logging
import re
import sqlite3
from typing import Iterable, List, Optional, Sequence, Tuple

from .db import storage_errors, transaction
from .errors import CategoryNotFoundError, ConfigError, RuleNotFoundError, TimelyError
from .models import Category, CategoryRule, RuleField, Snapshot

logger = logging.getLogger(__name__)

UNCATEGORIZED = "uncategorized"
USER_RULE_PRIORITY = 200
BUILTIN_RULE_PRIORITY = 100

# (name, parent name, productivity score); parents come before children.
BUILTIN_CATEGORIES: Sequence[Tuple[str, Optional[str], float]] = (
    (UNCATEGORIZED, None, 0.0),
    ("afk", None, 0.0),
    ("work", None, 1.0),
    ("work/coding", "work", 2.0),
    ("work/terminal", "work", 2.0),
    ("work/ai-tools", "work", 2.0),
    ("work/design", "work", 1.5),
    ("work/communication", "work", 0.5),
    ("work/meetings", "work", 0.5),
    ("reference", None, 1.0),
    ("reference/docs", "reference", 1.5),
    ("reference/search", "reference", 0.5),
    ("entertainment", None, -1.0),
    ("entertainment/video", "entertainment", -2.0),
    ("entertainment/social", "entertainment", -2.0),
    ("entertainment/games", "entertainment", -2.0),
)

# (category name, field, pattern, priority)
BUILTIN_RULES: Sequence[Tuple[str, str, str, int]] = (
    # Editors and IDEs
    ("work/coding", "app", "Code", BUILTIN_RULE_PRIORITY),
    ("work/coding", "app", "Visual Studio Code", BUILTIN_RULE_PRIORITY),
    ("work/coding", "app", "Cursor", BUILTIN_RULE_PRIORITY),
    ("work/coding", "app", "Xcode", BUILTIN_RULE_PRIORITY),
    ("work/coding", "app", "Zed", BUILTIN_RULE_PRIORITY),
    ("work/coding", "app", "Sublime Text", BUILTIN_RULE_PRIORITY),
    ("work/coding", "app", "IntelliJ*", BUILTIN_RULE_PRIORITY),
    ("work/coding", "app", "PyCharm*", BUILTIN_RULE_PRIORITY),
    ("work/coding", "app", "Android Studio", BUILTIN_RULE_PRIORITY),
    # Terminals
    ("work/terminal", "app", "Terminal", BUILTIN_RULE_PRIORITY),
    ("work/terminal", "app", "iTerm2", BUILTIN_RULE_PRIORITY),
    ("work/terminal", "app", "Alacritty", BUILTIN_RULE_PRIORITY),
    ("work/terminal", "app", "kitty", BUILTIN_RULE_PRIORITY),
    ("work/terminal", "app", "WezTerm", BUILTIN_RULE_PRIORITY),
    ("work/terminal", "app", "Ghostty", BUILTIN_RULE_PRIORITY),
    # AI coding tools
    ("work/ai-tools", "app", "Claude Code", BUILTIN_RULE_PRIORITY + 10),
    ("work/ai-tools", "app", "Codex CLI", BUILTIN_RULE_PRIORITY + 10),
    ("work/ai-tools", "app", "Aider", BUILTIN_RULE_PRIORITY + 10),
    ("work/ai-tools", "app", "ChatGPT", BUILTIN_RULE_PRIORITY),
    ("work/ai-tools", "url_domain", "claude.ai", BUILTIN_RULE_PRIORITY),
    ("work/ai-tools", "url_domain", "chatgpt.com", BUILTIN_RULE_PRIORITY),
    # Design
    ("work/design", "app", "Figma", BUILTIN_RULE_PRIORITY),
    ("work/design", "url_domain", "*figma.com", BUILTIN_RULE_PRIORITY),
    # Communication
    ("work/communication", "app", "Slack", BUILTIN_RULE_PRIORITY),
    ("work/communication", "app", "Mail", BUILTIN_RULE_PRIORITY),
    ("work/communication", "app", "Microsoft Teams", BUILTIN_RULE_PRIORITY),
    ("work/communication", "url_domain", "mail.google.com", BUILTIN_RULE_PRIORITY),
    ("work/meetings", "app", "zoom.us", BUILTIN_RULE_PRIORITY),
    ("work/meetings", "url_domain", "meet.google.com", BUILTIN_RULE_PRIORITY),
    # Reference
    ("reference/docs", "url_domain", "github.com", BUILTIN_RULE_PRIORITY),
    ("reference/docs", "url_domain", "stackoverflow.com", BUILTIN_RULE_PRIORITY),
    ("reference/docs", "url_domain", "docs.*", BUILTIN_RULE_PRIORITY),
    ("reference/docs", "url_domain", "doc.rust-lang.org", BUILTIN_RULE_PRIORITY),
    ("reference/docs", "url_domain", "developer.mozilla.org", BUILTIN_RULE_PRIORITY),
    ("reference/search", "url_domain", "www.google.com", BUILTIN_RULE_PRIORITY),
    ("reference/search", "url_domain", "duckduckgo.com", BUILTIN_RULE_PRIORITY),
    # Entertainment
    ("entertainment/video", "url_domain", "*youtube.com", BUILTIN_RULE_PRIORITY),
    ("entertainment/video", "url_domain", "*netflix.com", BUILTIN_RULE_PRIORITY),
    ("entertainment/video", "url_domain", "*twitch.tv", BUILTIN_RULE_PRIORITY),
    ("entertainment/social", "url_domain", "*reddit.com", BUILTIN_RULE_PRIORITY),
    ("entertainment/social", "url_domain", "x.com", BUILTIN_RULE_PRIORITY),
    ("entertainment/social", "url_domain", "twitter.com", BUILTIN_RULE_PRIORITY),
    ("entertainment/social", "url_domain", "*instagram.com", BUILTIN_RULE_PRIORITY),
    ("entertainment/games", "app", "Steam", BUILTIN_RULE_PRIORITY),
)


def _compile_glob(pattern: str) -> Optional["re.Pattern[str]"]:
    try:
        return re.compile(fnmatch.translate(pattern))
    except re.error:
        return None


def matches_pattern(value: str, pattern: str) -> bool:
    """Case-insensitive exact match, or glob match when pattern has * or ?."""
    value_lower = value.lower()
    pattern_lower = pattern.lower()

    if "*" in pattern or "?" in pattern:
        compiled = _compile_glob(pattern_lower)
        if compiled is None:
            return False
        return compiled.match(value_lower) is not None

    return value_lower == pattern_lower


def classify(snapshot: Snapshot, rules: Iterable[CategoryRule]) -> Optional[int]:
    """Return the category id of the first rule matching ``snapshot``.

    ``rules`` must already be ordered by priority DESC, id ASC.
    """
    for rule in rules:
        value = rule.field.select(snapshot)
        if value is None:
            continue
        if matches_pattern(value, rule.pattern):
            return rule.category_id
    return None


def validate_builtin_rules(rules: Iterable[Tuple[str, str, str, int]]) -> None:
    """Reject a builtin table that defines the same (field, pattern) twice."""
    seen = {}
    for category_name, field, pattern, _priority in rules:
        key = (field, pattern)
        if key in seen:
            raise ConfigError(
                f"Builtin rule {field}={pattern!r} defined for both "
                f"{seen[key]!r} and {category_name!r}"
            )
        seen[key] = category_name


def _category_from_row(row: sqlite3.Row) -> Category:
    return Category(
        id=row["id"],
        name=row["name"],
        parent_id=row["parent_id"],
        productivity_score=row["productivity_score"],
    )


class CategoryStore:
    """Persistence for categories and category rules."""

    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn

    # Categories

    def insert_category(
        self, name: str, parent_id: Optional[int] = None, score: float = 0.0
    ) -> int:
        """Insert a category if it does not exist yet; return its id."""
        with transaction(self.conn):
            self.conn.execute(
                """
                INSERT OR IGNORE INTO categories (name, parent_id, productivity_score)
                VALUES (?, ?, ?)
                """,
                (name, parent_id, score),
            )
            row = self.conn.execute(
                "SELECT id FROM categories WHERE name = ?", (name,)
            ).fetchone()
        return row["id"]

    def get_category_by_name(self, name: str) -> Optional[Category]:
        with storage_errors():
            row = self.conn.execute(
                "SELECT id, name, parent_id, productivity_score FROM categories WHERE name = ?",
                (name,),
            ).fetchone()
        return _category_from_row(row) if row else None

    def get_category_by_id(self, category_id: int) -> Optional[Category]:
        with storage_errors():
            row = self.conn.execute(
                "SELECT id, name, parent_id, productivity_score FROM categories WHERE id = ?",
                (category_id,),
            ).fetchone()
        return _category_from_row(row) if row else None

    def list_categories(self) -> List[Category]:
        with storage_errors():
            rows = self.conn.execute(
                "SELECT id, name, parent_id, productivity_score FROM categories ORDER BY name"
            ).fetchall()
        return [_category_from_row(row) for row in rows]

    def ensure_category(self, name: str) -> Category:
        """Get a category by name, creating it (and linking its parent) if missing."""
        existing = self.get_category_by_name(name)
        if existing:
            return existing

        parent_id = None
        if "/" in name:
            parent = self.get_category_by_name(name.split("/", 1)[0])
            parent_id = parent.id if parent else None

        category_id = self.insert_category(name, parent_id, 0.0)
        created = self.get_category_by_id(category_id)
        if created is None:
            raise CategoryNotFoundError(name)
        return created

    def uncategorized_id(self) -> Optional[int]:
        category = self.get_category_by_name(UNCATEGORIZED)
        return category.id if category else None

    # Rules

    def insert_rule(
        self,
        category_id: int,
        field: RuleField,
        pattern: str,
        is_builtin: bool = False,
        priority: int = 0,
    ) -> int:
        with transaction(self.conn):
            cursor = self.conn.execute(
                """
                INSERT INTO category_rules (category_id, field, pattern, is_builtin, priority)
                VALUES (?, ?, ?, ?, ?)
                """,
                (category_id, field.value, pattern, int(is_builtin), priority),
            )
            return cursor.lastrowid

    def get_rule(self, rule_id: int) -> Optional[CategoryRule]:
        with storage_errors():
            row = self.conn.execute(
                """
                SELECT r.id, r.category_id, c.name AS category_name, r.field,
                       r.pattern, r.is_builtin, r.priority
                FROM category_rules r
                JOIN categories c ON c.id = r.category_id
                WHERE r.id = ?
                """,
                (rule_id,),
            ).fetchone()
        return self._rule_from_row(row) if row else None

    def list_rules(self) -> List[CategoryRule]:
        """All rules in evaluation order."""
        with storage_errors():
            rows = self.conn.execute(
                """
                SELECT r.id, r.category_id, c.name AS category_name, r.field,
                       r.pattern, r.is_builtin, r.priority
                FROM category_rules r
                JOIN categories c ON c.id = r.category_id
                ORDER BY r.priority DESC, r.id ASC
                """
            ).fetchall()
        return [self._rule_from_row(row) for row in rows]

    @staticmethod
    def _rule_from_row(row: sqlite3.Row) -> CategoryRule:
        return CategoryRule(
            id=row["id"],
            category_id=row["category_id"],
            category_name=row["category_name"],
            field=RuleField(row["field"]),
            pattern=row["pattern"],
            is_builtin=bool(row["is_builtin"]),
            priority=row["priority"],
        )

    def add_user_rule(
        self,
        pattern: str,
        category_name: str,
        field: RuleField = RuleField.APP,
        retroactive: bool = False,
    ) -> Tuple[Category, int, int]:
        """Add a user rule above all builtins.

        Returns (category, rule id, number of events recategorized).
        """
        category = self.ensure_category(category_name)
        rule_id = self.insert_rule(category.id, field, pattern, False, USER_RULE_PRIORITY)

        updated = 0
        if retroactive:
            updated = self.recategorize_matching(field, pattern, category.id)
        logger.info(
            "Rule %d added: %s %r -> %s (%d events updated)",
            rule_id, field.value, pattern, category.name, updated,
        )
        return category, rule_id, updated

    def delete_rule(self, rule_id: int) -> int:
        """Delete a user rule and reclassify the events it claimed.

        Only non-AFK events still carrying the rule's category and matching
        its pattern are touched. They are run through the remaining rules and
        fall back to uncategorized. Returns the number of events whose
        category changed.
        """
        rule = self.get_rule(rule_id)
        if rule is None:
            raise RuleNotFoundError(rule_id)
        if rule.is_builtin:
            raise TimelyError(f"Cannot delete builtin rule {rule_id}")

        with transaction(self.conn):
            self.conn.execute("DELETE FROM category_rules WHERE id = ?", (rule_id,))
            remaining = self.list_rules()
            fallback_id = self.uncategorized_id()

            rows = self.conn.execute(
                """
                SELECT id, app, title, url, url_domain FROM events
                WHERE category_id = ? AND is_afk = 0
                """,
                (rule.category_id,),
            ).fetchall()

            recategorized = 0
            for row in rows:
                snapshot = Snapshot(
                    app=row["app"],
                    title=row["title"],
                    url=row["url"],
                    url_domain=row["url_domain"],
                )
                value = rule.field.select(snapshot)
                if value is None or not matches_pattern(value, rule.pattern):
                    continue
                category_id = classify(snapshot, remaining)
                if category_id is None:
                    category_id = fallback_id
                if category_id == rule.category_id:
                    continue
                self.conn.execute(
                    "UPDATE events SET category_id = ? WHERE id = ?",
                    (category_id, row["id"]),
                )
                recategorized += 1

        logger.info("Rule %d deleted (%d events recategorized)", rule_id, recategorized)
        return recategorized

    def recategorize_matching(
        self, field: RuleField, pattern: str, category_id: Optional[int]
    ) -> int:
        """Point every non-AFK event whose field equals ``pattern`` at a category."""
        column = {
            RuleField.APP: "app",
            RuleField.TITLE: "title",
            RuleField.URL_DOMAIN: "url_domain",
        }[field]
        with transaction(self.conn):
            cursor = self.conn.execute(
                f"UPDATE events SET category_id = ? "
                f"WHERE LOWER({column}) = LOWER(?) AND is_afk = 0",
                (category_id, pattern),
            )
            return cursor.rowcount

    def seed_builtin_categories(
        self,
        categories: Sequence[Tuple[str, Optional[str], float]] = BUILTIN_CATEGORIES,
        rules: Sequence[Tuple[str, str, str, int]] = BUILTIN_RULES,
    ) -> None:
        """Insert builtin categories and reconcile builtin rules.

        Builtin rules no longer in ``rules`` are removed and missing ones are
        added; user rules are left alone.
        """
        validate_builtin_rules(rules)

        with transaction(self.conn):
            for name, parent_name, score in categories:
                parent_id = None
                if parent_name:
                    parent = self.get_category_by_name(parent_name)
                    parent_id = parent.id if parent else None
                self.insert_category(name, parent_id, score)

            canonical = {(field, pattern) for _, field, pattern, _ in rules}
            stale = [
                row["id"]
                for row in self.conn.execute(
                    "SELECT id, field, pattern FROM category_rules WHERE is_builtin = 1"
                ).fetchall()
                if (row["field"], row["pattern"]) not in canonical
            ]
            for stale_id in stale:
                self.conn.execute("DELETE FROM category_rules WHERE id = ?", (stale_id,))

            inserted = 0
            for category_name, field, pattern, priority in rules:
                category = self.get_category_by_name(category_name)
                if category is None:
                    logger.warning(
                        "Builtin rule %s=%r names unknown category %s",
                        field, pattern, category_name,
                    )
                    continue
                exists = self.conn.execute(
                    """
                    SELECT 1 FROM category_rules
                    WHERE field = ? AND pattern = ? AND is_builtin = 1
                    """,
                    (field, pattern),
                ).fetchone()
                if not exists:
                    self.insert_rule(category.id, RuleField(field), pattern, True, priority)
                    inserted += 1

        if stale or inserted:
            logger.info(
                "Builtin rules reseeded: %d removed, %d added", len(stale), inserted
            )
