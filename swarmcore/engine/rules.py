"""Auto-response rule engine.

Rules are matched against the ANSI-stripped output window a session
has accumulated since its last input. The first rule in registration
order whose pattern matches anywhere in the window wins.
"""
from __future__ import annotations

import logging
import re
from collections.abc import Iterable, Iterator
from dataclasses import dataclass

from .models import AgentCredentials, AutoResponseRule

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RuleMatch:
    rule: AutoResponseRule
    matched_text: str


class RuleEngine:
    """Stateless matcher."""

    @staticmethod
    def match(
        output_window: str, rules: Iterable[AutoResponseRule],
    ) -> RuleMatch | None:
        if not output_window:
            return None
        for rule in rules:
            found = rule.pattern.search(output_window)
            if found:
                return RuleMatch(rule=rule, matched_text=found.group(0))
        return None


class RuleSet:
    """Ordered rules for one session. ``once`` rules are removed when consumed."""

    def __init__(self, rules: Iterable[AutoResponseRule] = ()) -> None:
        self._rules: list[AutoResponseRule] = list(rules)

    def __iter__(self) -> Iterator[AutoResponseRule]:
        return iter(list(self._rules))

    def __len__(self) -> int:
        return len(self._rules)

    def add(self, rule: AutoResponseRule) -> None:
        self._rules.append(rule)

    def extend(self, rules: Iterable[AutoResponseRule]) -> None:
        self._rules.extend(rules)

    def match(self, output_window: str) -> RuleMatch | None:
        return RuleEngine.match(output_window, self._rules)

    def consume(self, match: RuleMatch) -> None:
        """Record that *match* fired; drops the rule if it is ``once``."""
        if not match.rule.once:
            return
        for index, rule in enumerate(self._rules):
            if rule is match.rule:
                del self._rules[index]
                logger.debug("Consumed once rule: %s", rule.describe())
                return

    def to_list(self) -> list[dict]:
        return [rule.to_dict() for rule in self._rules]


# Menu options only. The key prompt must never match here, or a menu digit
# would be typed into the key field once the key rule is consumed.
_GEMINI_AUTH_MENU = re.compile(
    r"Log in with Google|Use an API key|Use Vertex AI",
    re.IGNORECASE,
)
# Anchored to a line start so crafted output cannot fish for the key.
GEMINI_KEY_PROMPT = re.compile(
    r"^(?:\s|[>$#])*(?:Enter|Paste) (?:your )?(?:Google AI|Gemini) API key:",
    re.IGNORECASE | re.MULTILINE,
)


def runtime_default_rules(
    agent_type: str, credentials: AgentCredentials | None,
) -> list[AutoResponseRule]:
    """Rules that depend on runtime configuration rather than the adapter."""
    rules: list[AutoResponseRule] = []
    if agent_type == "aider":
        rules.append(AutoResponseRule(
            pattern=re.compile(r"\.aider\*.*\.gitignore.*\(Y\)es/\(N\)o", re.IGNORECASE),
            type="config",
            response="y",
            description="Auto-accept adding .aider* to .gitignore",
        ))
    elif agent_type == "gemini":
        api_key = credentials.google_api_key if credentials else None
        if api_key:
            rules.append(AutoResponseRule(
                pattern=GEMINI_KEY_PROMPT,
                type="config",
                response=api_key,
                description="Input Gemini API key from Gemini CLI auth prompt",
                once=True,
            ))
            rules.append(AutoResponseRule(
                pattern=_GEMINI_AUTH_MENU,
                type="config",
                response="2",
                description="Select 'Use an API key' from Gemini auth menu",
            ))
        else:
            rules.append(AutoResponseRule(
                pattern=_GEMINI_AUTH_MENU,
                type="config",
                response="1",
                description="Select 'Log in with Google' from Gemini auth menu",
            ))
    return rules
