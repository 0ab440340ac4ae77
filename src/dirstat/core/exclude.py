"""Regex rules for directories the walker should not descend into."""

from __future__ import annotations

import logging
import re
from typing import Iterable, Iterator

log = logging.getLogger(__name__)


class ExcludeRules:
    """Ordered set of regular expressions matched against full paths.

    A rule must match the whole path, so ``.*/\\.git$`` excludes every
    ``.git`` directory while ``/home/me/.git`` excludes just one.
    """

    def __init__(self, patterns: Iterable[str] = ()) -> None:
        self._rules: list[re.Pattern[str]] = []
        for pattern in patterns:
            self.add(pattern)

    def add(self, pattern: str) -> None:
        """Compile and append a rule; raises ``re.error`` for a bad pattern."""
        if any(rule.pattern == pattern for rule in self._rules):
            log.debug("Exclude rule %r already present", pattern)
            return
        self._rules.append(re.compile(pattern))
        log.debug("Added exclude rule %r", pattern)

    def match(self, path: str) -> bool:
        """Return True if any rule matches ``path`` in full."""
        return any(rule.fullmatch(path) for rule in self._rules)

    def __len__(self) -> int:
        return len(self._rules)

    def __iter__(self) -> Iterator[str]:
        return (rule.pattern for rule in self._rules)
