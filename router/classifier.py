"""
Skill Router — Intent Classifier

Maps a free-form request to an Intent using an explicit, ordered rule
table. Every rule is a compiled regex plus the intent it produces.
All rules are tried; the longest matched phrase wins. When two rules
match phrases of equal length and disagree, the result is a plain
FullPipeline. A request that opens with a build verb and goes on to
mention a later phase ("build a token and deploy it") is a whole
project and classifies as FullPipeline. When nothing matches, a
recognised build verb still yields FullPipeline; otherwise the request
is ambiguous and the caller has to resolve it.

Usage:
    from router.classifier import IntentClassifier

    classifier = IntentClassifier(registry)
    classifier.classify("review my contract for security")
    # → PartialSet(phase_ids=frozenset({'security'}))
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Any, Callable

from registry.phases import SkillRegistry
from router.errors import AmbiguousIntent, InputError
from router.types import FullPipeline, Intent, PartialSet, Repair, intent_from_dict

logger = logging.getLogger("skill_router.classifier")


@dataclass(frozen=True)
class IntentRule:
    """One row of the rule table."""
    name: str
    pattern: re.Pattern
    build: Callable[[], Intent]

    def match(self, text: str) -> int:
        """Length of the longest matched phrase, 0 if no match."""
        best = 0
        for m in self.pattern.finditer(text):
            best = max(best, len(m.group(0)))
        return best


def _rule(name: str, pattern: str, intent: Intent) -> IntentRule:
    return IntentRule(
        name=name,
        pattern=re.compile(pattern, re.IGNORECASE),
        build=lambda: intent,
    )


_FRONTEND_WORDS = r"(?:frontend|front-end|front end|ui|user interface|dapp interface)"

DEFAULT_RULES: list[IntentRule] = [
    # "Build X and deploy/test/audit it" is a whole project, not one phase.
    # Anchored at a leading build verb and spanning up to the later phase
    # word, so it outlasts the single-phase rules below. Exclusion phrasing
    # anywhere in the request switches it off.
    _rule("build_and_more",
          r"^\s*(?!.*\b(?:no|skip|without|don'?t|only)\b)"
          r"(?:please\s+|let'?s\s+|i\s+(?:want|need)\s+to\s+)?"
          r"(?:build|create|make|develop|launch|ship|implement|scaffold)\b"
          r"[^.!?]*?\b(?:and|then|with|that|which|plus)\b[^.!?]*?"
          rf"\b(?:deploy\w*|test\w*|audit\w*|secur\w*|{_FRONTEND_WORDS})\b",
          FullPipeline()),

    # Security-only requests
    _rule("review_security", r"\b(?:review|check|scan|inspect)\b[^.!?]*?\bsecur\w*",
          PartialSet(frozenset({"security"}))),
    _rule("security_audit", r"\bsecurity\s+(?:review|audit|check|pass)\b",
          PartialSet(frozenset({"security"}))),
    _rule("audit", r"\baudit(?:ing)?\b(?:\s+(?:my|the|this|our))?",
          PartialSet(frozenset({"security"}))),

    # Testing-only requests
    _rule("write_tests", r"\b(?:write|add|run|improve)\b[^.!?]*?\btests?\b",
          PartialSet(frozenset({"testing"}))),
    _rule("test_coverage", r"\btest\s+coverage\b",
          PartialSet(frozenset({"testing"}))),
    _rule("tests_and_security", r"\btests?\b[^.!?]*?\band\b[^.!?]*?\bsecur\w*",
          PartialSet(frozenset({"testing", "security"}))),

    # Frontend-only requests
    _rule("build_frontend",
          rf"\b(?:build|add|create|connect|wire up|hook up)\s+(?:a\s+|an\s+|the\s+|my\s+)?{_FRONTEND_WORDS}\b",
          PartialSet(frozenset({"frontend"}))),

    # Deploy-only requests
    _rule("deploy_to_network",
          r"\bdeploy(?:ing)?\b(?:\s+\w+){0,3}?\s+(?:to|on)\s+(?:the\s+)?\w+",
          PartialSet(frozenset({"deploy"}))),

    # Exclusions
    _rule("contracts_only", r"\bcontracts?\s+only\b|\bonly\s+(?:the\s+)?contracts?\b",
          FullPipeline(frozenset({"frontend", "deploy"}))),
    _rule("no_frontend",
          rf"\b(?:no|without(?:\s+a|\s+an|\s+the)?|skip(?:\s+the)?)\s+{_FRONTEND_WORDS}\b",
          FullPipeline(frozenset({"frontend"}))),
    _rule("no_deploy",
          r"\b(?:skip(?:\s+the)?\s+deploy(?:ment)?|don'?t\s+deploy|no\s+deploy(?:ment)?|without\s+deploy(?:ing|ment)?)\b",
          FullPipeline(frozenset({"deploy"}))),

    # Repairs
    _rule("fix_bug",
          r"\b(?:fix|repair|patch|debug)(?:ing)?\b[^.!?]*?\b(?:bugs?|issues?|vulnerabilit(?:y|ies)|exploits?|regressions?)\b",
          Repair("contracts")),
]

BUILD_VERBS = re.compile(
    r"\b(?:build|create|make|develop|launch|ship|write|implement|scaffold)\b",
    re.IGNORECASE,
)


def rule_from_config(data: dict[str, Any]) -> IntentRule:
    """
    Build a rule from config. Shape:
        {name, pattern, kind: full_pipeline|partial_set|repair,
         excluded | phase_ids | origin}
    """
    if not data.get("pattern"):
        raise InputError(f"Classifier rule without pattern: {data!r}")
    intent = intent_from_dict(data)
    try:
        pattern = re.compile(data["pattern"], re.IGNORECASE)
    except re.error as e:
        raise InputError(f"Classifier rule '{data.get('name')}': bad pattern: {e}") from e
    return IntentRule(name=data.get("name", data["pattern"]), pattern=pattern, build=lambda: intent)


class IntentClassifier:
    """Deterministic rule-table classifier."""

    def __init__(
        self,
        registry: SkillRegistry,
        rules: list[IntentRule] | None = None,
        extra_rules: list[dict[str, Any]] | None = None,
    ):
        self.registry = registry
        self.rules = list(rules if rules is not None else DEFAULT_RULES)
        for data in extra_rules or []:
            self.rules.append(rule_from_config(data))
        self._check_rules()

    def _check_rules(self):
        # Every rule must name phases the registry knows
        for rule in self.rules:
            intent = rule.build()
            if isinstance(intent, FullPipeline):
                ids = intent.excluded
            elif isinstance(intent, PartialSet):
                ids = intent.phase_ids
            else:
                ids = {intent.origin}
            for pid in ids:
                self.registry.lookup(pid)

    def matches(self, text: str) -> list[tuple[IntentRule, int]]:
        """All matching rules with their matched lengths, longest first."""
        found = []
        for rule in self.rules:
            length = rule.match(text)
            if length:
                found.append((rule, length))
        found.sort(key=lambda m: -m[1])
        return found

    def classify(self, text: str) -> Intent:
        if not isinstance(text, str) or not text.strip():
            raise InputError("Request text is empty")

        found = self.matches(text)
        if not found:
            if BUILD_VERBS.search(text):
                logger.debug("No specific rule matched; build verb → FullPipeline")
                return FullPipeline()
            raise AmbiguousIntent(f"Cannot classify request: {text!r}")

        best_len = found[0][1]
        top = [rule for rule, length in found if length == best_len]
        intents = {rule.build() for rule in top}
        if len(intents) > 1:
            logger.info(
                "Tie between rules %s; defaulting to FullPipeline",
                [r.name for r in top],
            )
            return FullPipeline()

        winner = top[0]
        logger.debug("Rule '%s' matched (%d chars)", winner.name, best_len)
        return winner.build()
