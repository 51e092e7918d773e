from __future__ import annotations

import re
from functools import lru_cache


@lru_cache(maxsize=1024)
def wildcard_to_regex(pattern: str) -> re.Pattern[str]:
    # Escape everything except "*", which matches any run of characters; callers use fullmatch.
    return re.compile(".*".join(re.escape(part) for part in pattern.split("*")))


def wildcard_match(pattern: str, value: str) -> bool:
    return wildcard_to_regex(pattern).fullmatch(value) is not None
