"""Shell-style path matching where wildcards never cross a slash."""

import functools
import re


class PatternError(ValueError):
    """Raised for a malformed glob pattern."""

    pass


@functools.lru_cache(maxsize=256)
def _compile(pattern: str) -> re.Pattern:
    parts = []
    i, n = 0, len(pattern)
    while i < n:
        char = pattern[i]
        i += 1
        if char == "*":
            parts.append("[^/]*")
        elif char == "?":
            parts.append("[^/]")
        elif char == "\\":
            if i >= n:
                raise PatternError(f"trailing backslash in pattern: {pattern!r}")
            parts.append(re.escape(pattern[i]))
            i += 1
        elif char == "[":
            end, char_class = _parse_class(pattern, i)
            parts.append(char_class)
            i = end
        else:
            parts.append(re.escape(char))
    return re.compile("".join(parts) + r"\Z", re.DOTALL)


def _parse_class(pattern: str, start: int) -> tuple[int, str]:
    i, n = start, len(pattern)
    negate = False
    if i < n and pattern[i] in "!^":
        negate = True
        i += 1

    ranges = []
    first = True
    while True:
        if i >= n:
            raise PatternError(f"unterminated character class in pattern: {pattern!r}")
        if pattern[i] == "]" and not first:
            i += 1
            break
        first = False
        low, i = _class_char(pattern, i)
        high = low
        if i + 1 < n and pattern[i] == "-" and pattern[i + 1] != "]":
            high, i = _class_char(pattern, i + 1)
            if high < low:
                raise PatternError(f"bad range in pattern: {pattern!r}")
        ranges.append(re.escape(low) if low == high else f"{re.escape(low)}-{re.escape(high)}")

    body = "".join(ranges)
    if negate:
        return i, f"[^/{body}]"
    return i, f"[{body}]"


def _class_char(pattern: str, i: int) -> tuple[str, int]:
    if pattern[i] == "\\":
        i += 1
        if i >= len(pattern):
            raise PatternError(f"trailing backslash in pattern: {pattern!r}")
    return pattern[i], i + 1


def match(pattern: str, name: str) -> bool:
    """Report whether ``name`` matches the shell pattern ``pattern``.

    ``*`` matches any run of non-slash characters, ``?`` one non-slash
    character, ``[...]`` a character class (``!`` or ``^`` negates it) and
    ``\\`` escapes the next character. A malformed pattern matches nothing.
    """
    try:
        compiled = _compile(pattern)
    except PatternError:
        return False
    return compiled.match(name) is not None
