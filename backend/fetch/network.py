from __future__ import annotations

import re

_MOBILE_UA_RE = re.compile(r"iPhone|iPad|iPod|Android", re.IGNORECASE)


def is_constrained_network(user_agent: str | None) -> bool:
    """
    Heuristic: mobile clients are assumed to sit on flaky networks, which is the
    only case where transient fetch failures are retried.
    """
    return bool(user_agent) and bool(_MOBILE_UA_RE.search(user_agent or ""))
