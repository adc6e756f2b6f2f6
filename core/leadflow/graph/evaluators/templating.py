"""Message templating: ``{{variable}}`` placeholders and ``{a|b|c}`` spintax."""

import random
import re
from typing import Any

_PLACEHOLDER = re.compile(r"\{\{\s*([\w.]+)\s*\}\}")
# Innermost alternation group only, so nested spintax resolves inside out
_SPINTAX = re.compile(r"\{([^{}]*\|[^{}]*)\}")


def resolve_spintax(text: str, rng: random.Random) -> str:
    """Replace every ``{a|b}`` group with one of its options."""
    while True:
        resolved = _SPINTAX.sub(lambda m: rng.choice(m.group(1).split("|")), text)
        if resolved == text:
            return resolved
        text = resolved


def fill_placeholders(text: str, values: dict[str, Any]) -> str:
    """Substitute ``{{name}}``; dotted names walk nested dicts. Unknown names become ''."""

    def lookup(match: re.Match) -> str:
        current: Any = values
        for part in match.group(1).split("."):
            if not isinstance(current, dict) or part not in current:
                return ""
            current = current[part]
        return "" if current is None else str(current)

    return _PLACEHOLDER.sub(lookup, text)


def render_message(template: str, values: dict[str, Any], rng: random.Random) -> str:
    # Placeholders first so their {{ }} never reads as spintax
    return resolve_spintax(fill_placeholders(template, values), rng).strip()
