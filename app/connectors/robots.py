"""Minimal robots.txt support for the web crawler."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from functools import lru_cache
from urllib.parse import urlsplit


@lru_cache(maxsize=256)
def _wildcard_rule(rule: str) -> re.Pattern[str]:
    anchored = rule.endswith("$")
    body = rule[:-1] if anchored else rule
    pattern = "^" + re.escape(body).replace(r"\*", ".*")
    return re.compile(pattern + ("$" if anchored else ""))


@dataclass
class RobotsPolicy:
    disallowed: list[str] = field(default_factory=list)
    crawl_delay: float | None = None

    @classmethod
    def parse(cls, text: str, agent: str) -> "RobotsPolicy":
        """Collect the rules of every group addressed to ``*`` or to ``agent``."""
        policy = cls()
        agent = agent.lower()
        group_applies = False
        reading_agents = False
        for raw_line in text.splitlines():
            line = raw_line.split("#", 1)[0].strip()
            if ":" not in line:
                continue
            key, value = line.split(":", 1)
            key = key.strip().lower()
            value = value.strip()
            if key == "user-agent":
                if not reading_agents:
                    group_applies = False
                reading_agents = True
                name = value.lower()
                if name == "*" or agent in name:
                    group_applies = True
                continue
            reading_agents = False
            if not group_applies:
                continue
            if key == "disallow" and value:
                policy.disallowed.append(value)
            elif key == "crawl-delay":
                try:
                    policy.crawl_delay = float(value)
                except ValueError:
                    continue
        return policy

    def is_disallowed(self, url: str) -> bool:
        path = urlsplit(url).path or "/"
        for rule in self.disallowed:
            if rule == "/":
                return True
            if "*" in rule or rule.endswith("$"):
                if _wildcard_rule(rule).match(path):
                    return True
            elif path.startswith(rule):
                return True
        return False
