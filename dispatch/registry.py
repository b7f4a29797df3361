"""
Wait Registry - Named rule sets for follow-up turns
===================================================

Maps wait rule names to rule lists. Entries are either registered
explicitly (named prompts) or derived lazily from a rule's ``replies``
the first time that rule answers. The registry belongs to one bot, and
concurrent first use of a derived name inserts it once.
"""

import threading
from typing import Callable, Dict, Iterator, List, Optional

from core.exceptions import RuleError
from core.logging import get_logger
from rules.engine import Rule

logger = get_logger("dispatch.registry")


class WaitRegistry:
    """
    Thread-safe mapping of wait rule name to rule list.

    Example:
        registry = WaitRegistry()
        registry.register("guess sex", convert({"=male": "right"}))
        rules = registry.get_or_create("_reply_dial", build_reply_rules)
    """

    def __init__(self):
        self._rules: Dict[str, List[Rule]] = {}
        self._lock = threading.Lock()

    def register(self, name: str, rules: List[Rule]) -> None:
        """
        Register a named wait rule list.

        Raises:
            RuleError: If the name is already registered
        """
        with self._lock:
            if name in self._rules:
                raise RuleError("Wait rule name conflict", {"name": name})
            self._rules[name] = list(rules)

    def get(self, name: str) -> Optional[List[Rule]]:
        return self._rules.get(name)

    def get_or_create(self, name: str, factory: Callable[[], List[Rule]]) -> List[Rule]:
        """
        Return the list registered under name, building it once if absent.

        Args:
            name: Wait rule name
            factory: Builds the rule list on first use
        """
        rules = self._rules.get(name)
        if rules is not None:
            return rules

        with self._lock:
            rules = self._rules.get(name)
            if rules is None:
                rules = list(factory())
                self._rules[name] = rules
                logger.debug(f"registered derived wait rule [{name}] ({len(rules)} rules)")
            return rules

    def names(self) -> List[str]:
        return list(self._rules)

    def values(self) -> Iterator[List[Rule]]:
        return iter(list(self._rules.values()))

    def clear(self) -> None:
        with self._lock:
            self._rules.clear()

    def __contains__(self, name: str) -> bool:
        return name in self._rules

    def __len__(self) -> int:
        return len(self._rules)
