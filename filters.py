#!/usr/bin/env python3
"""
Keyword filter rules.

Rules are authored by users (one pattern each) and matched against an item's
title plus its hover text, case-insensitively, by substring containment:

- ``exclude`` rules drop any item they match, before anything else is checked
- ``require`` rules must all match
- ``include`` rules keep an item when at least one matches (no include rules
  means everything not excluded/required-away is kept)

A compact expression syntax is also supported for ad-hoc queries::

    "bitcoin +crypto !sponsored @10"

where a bare word is an include, ``+word`` a require, ``!word`` an exclude and
``@N`` caps the result count after matching.
"""

import json
import secrets
from time import time
from typing import Any, Dict, Iterable, List, Optional

from config import get_logger
from errors import MalformedFilterInput
from items import item_text

logger = get_logger("filters")

INCLUDE = "include"
EXCLUDE = "exclude"
REQUIRE = "require"
RULE_TYPES = (INCLUDE, EXCLUDE, REQUIRE)
GLOBAL_SCOPE = "global"


class FilterRule:
    """A single user-authored filter rule."""

    __slots__ = ("id", "pattern", "type", "scope", "enabled", "created_at")

    def __init__(
        self,
        pattern: str,
        type: str = EXCLUDE,
        scope: str = GLOBAL_SCOPE,
        enabled: bool = True,
        id: Optional[str] = None,
        created_at: Optional[int] = None,
    ):
        if type not in RULE_TYPES:
            raise ValueError(f"Unknown filter rule type: {type}")
        self.id = id or generate_filter_id()
        self.pattern = pattern
        self.type = type
        self.scope = scope
        self.enabled = enabled
        self.created_at = created_at if created_at is not None else int(time() * 1000)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FilterRule":
        """Build a rule from its JSON form, as sent by clients.

        Raises:
            MalformedFilterInput: when the pattern is missing/empty or the type is unknown.
        """
        if not isinstance(data, dict):
            raise MalformedFilterInput("filter rule must be an object")
        pattern = data.get("pattern")
        if not isinstance(pattern, str) or not pattern.strip():
            raise MalformedFilterInput("filter rule pattern must be a non-empty string")
        rule_type = data.get("type") or EXCLUDE
        if rule_type not in RULE_TYPES:
            raise MalformedFilterInput(f"unknown filter rule type: {rule_type}")
        created_at = data.get("createdAt")
        return cls(
            pattern=pattern,
            type=rule_type,
            scope=str(data.get("scope") or GLOBAL_SCOPE),
            enabled=data.get("enabled") is not False,
            id=str(data["id"]) if data.get("id") else None,
            created_at=created_at if isinstance(created_at, int) else None,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "pattern": self.pattern,
            "type": self.type,
            "scope": self.scope,
            "enabled": self.enabled,
            "createdAt": self.created_at,
        }

    def __repr__(self) -> str:
        state = "" if self.enabled else ", disabled"
        return f"FilterRule({self.type}:{self.pattern!r}, scope={self.scope}{state})"


class ParsedFilter:
    """Structured form of a filter expression or of a rule list."""

    __slots__ = ("includes", "requires", "excludes", "limit")

    def __init__(
        self,
        includes: Optional[List[str]] = None,
        requires: Optional[List[str]] = None,
        excludes: Optional[List[str]] = None,
        limit: Optional[int] = None,
    ):
        self.includes = includes if includes is not None else []
        self.requires = requires if requires is not None else []
        self.excludes = excludes if excludes is not None else []
        self.limit = limit

    def is_empty(self) -> bool:
        return not (self.includes or self.requires or self.excludes or self.limit)

    def __eq__(self, other) -> bool:
        if not isinstance(other, ParsedFilter):
            return NotImplemented
        return (self.includes, self.requires, self.excludes, self.limit) == (
            other.includes, other.requires, other.excludes, other.limit
        )

    def __repr__(self) -> str:
        return (
            f"ParsedFilter(includes={self.includes}, requires={self.requires}, "
            f"excludes={self.excludes}, limit={self.limit})"
        )


def generate_filter_id() -> str:
    return f"filter_{int(time() * 1000)}_{secrets.token_hex(4)}"


def enabled_rules(rules: Iterable[FilterRule]) -> List[FilterRule]:
    return [r for r in rules if r.enabled]


def rules_for_source(rules: Iterable[FilterRule], source_id: str) -> List[FilterRule]:
    """Select the enabled rules that apply to a source: global ones, then source-scoped ones."""
    rules = enabled_rules(rules)
    scoped_global = [r for r in rules if r.scope == GLOBAL_SCOPE]
    scoped_source = [r for r in rules if r.scope == source_id]
    return scoped_global + scoped_source


def rules_to_parsed_filter(rules: Iterable[FilterRule]) -> ParsedFilter:
    """Convert enabled rules into a ParsedFilter with lowercase patterns."""
    result = ParsedFilter()
    buckets = {INCLUDE: result.includes, REQUIRE: result.requires, EXCLUDE: result.excludes}
    for rule in enabled_rules(rules):
        buckets[rule.type].append(rule.pattern.lower())
    return result


def matches_filter(item: Dict[str, Any], parsed: ParsedFilter) -> bool:
    """Check a single item against a parsed filter (exclude, then require, then include)."""
    text = item_text(item)

    if any(exc in text for exc in parsed.excludes):
        return False
    if not all(req in text for req in parsed.requires):
        return False
    if parsed.includes:
        return any(inc in text for inc in parsed.includes)
    return True


def apply_filters(items: List[Dict[str, Any]], rules: Iterable[FilterRule]) -> List[Dict[str, Any]]:
    """Apply filter rules to a list of items.

    Returns the input list itself when no rule is enabled; otherwise a new
    list holding the matching items in their original order. Which rules apply
    to which source is the caller's decision (see rules_for_source).
    """
    parsed = rules_to_parsed_filter(rules)
    if parsed.is_empty():
        return items
    return [item for item in items if matches_filter(item, parsed)]


def parse_filter_expression(expression: str) -> ParsedFilter:
    """Parse a filter expression such as ``"bitcoin +crypto !sponsored @10"``.

    Invalid or non-positive ``@N`` tokens are ignored; the last valid one wins.
    """
    result = ParsedFilter()
    for token in (expression or "").split():
        if token.startswith("+"):
            value = token[1:].strip()
            if value:
                result.requires.append(value.lower())
        elif token.startswith("!"):
            value = token[1:].strip()
            if value:
                result.excludes.append(value.lower())
        elif token.startswith("@"):
            try:
                limit = int(token[1:])
            except ValueError:
                continue
            if limit > 0:
                result.limit = limit
        else:
            result.includes.append(token.lower())
    return result


def apply_parsed_filter(items: List[Dict[str, Any]], parsed: ParsedFilter) -> List[Dict[str, Any]]:
    """Apply a parsed expression, then cap the result at its limit."""
    filtered = [item for item in items if matches_filter(item, parsed)]
    if parsed.limit:
        filtered = filtered[:parsed.limit]
    return filtered


def decode_filter_param(raw: Optional[str]) -> List[FilterRule]:
    """Decode the JSON ``filter`` query value into enabled rules.

    Raises:
        MalformedFilterInput: when the value is not a JSON array.
    """
    if not raw:
        return []
    try:
        parsed = json.loads(raw)
    except ValueError as e:
        raise MalformedFilterInput(f"filter is not valid JSON: {e}") from e
    if not isinstance(parsed, list):
        raise MalformedFilterInput("filter must be a JSON array")

    rules = []
    for entry in parsed:
        try:
            rule = FilterRule.from_dict(entry)
        except MalformedFilterInput as e:
            logger.debug(f"Skipping filter rule {entry!r}: {e}")
            continue
        if rule.enabled:
            rules.append(rule)
    return rules


def parse_filter_param(raw: Optional[str]) -> List[FilterRule]:
    """Lenient variant of decode_filter_param: malformed input means no filters."""
    try:
        return decode_filter_param(raw)
    except MalformedFilterInput as e:
        logger.info(f"Ignoring malformed filter parameter: {e}")
        return []


class FilterConfig:
    """A user's stored rule set: global rules plus per-source rules."""

    def __init__(
        self,
        global_rules: Optional[List[FilterRule]] = None,
        source_rules: Optional[Dict[str, List[FilterRule]]] = None,
        updated_time: int = 0,
    ):
        self.global_rules = global_rules or []
        self.source_rules = source_rules or {}
        self.updated_time = updated_time

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FilterConfig":
        """Build from the stored JSON shape; invalid rules are skipped."""
        if not isinstance(data, dict):
            return cls()

        def _rules(raw, scope):
            rules = []
            for entry in raw if isinstance(raw, list) else []:
                try:
                    rule = FilterRule.from_dict(entry)
                except MalformedFilterInput:
                    continue
                rule.scope = scope
                rules.append(rule)
            return rules

        source_raw = data.get("sourceRules") if isinstance(data.get("sourceRules"), dict) else {}
        return cls(
            global_rules=_rules(data.get("globalRules"), GLOBAL_SCOPE),
            source_rules={sid: _rules(raw, sid) for sid, raw in source_raw.items()},
            updated_time=int(data.get("updatedTime") or 0),
        )

    def rules_for(self, source_id: str) -> List[FilterRule]:
        """Enabled global rules followed by enabled rules for ``source_id``."""
        return enabled_rules(self.global_rules) + enabled_rules(self.source_rules.get(source_id, []))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "globalRules": [r.to_dict() for r in self.global_rules],
            "sourceRules": {sid: [r.to_dict() for r in rules] for sid, rules in self.source_rules.items()},
            "updatedTime": self.updated_time,
        }
