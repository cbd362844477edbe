"""Best-effort textual repair of raw model output before JSON parsing.

Everything here is pure string manipulation: no I/O, no logging, no exceptions.
``repair_model_output`` is idempotent, so running it on already repaired text
is a no-op.
"""

from __future__ import annotations

import re

_FENCE_RE = re.compile(r"```[ \t]*(?:json)?[ \t]*\r?\n?", re.IGNORECASE)
_TRAILING_COMMA_RE = re.compile(r",(?:\s*,)*(\s*[}\]])")
_BACKSLASH_RE = re.compile(r"\\(u[0-9a-fA-F]{4}|[A-Za-z]+|.|$)", re.DOTALL)

# Private-use code point; never produced by the model in practice.
_PROTECTED_PAIR = "\ue000"

_VALID_SINGLE_ESCAPES = frozenset('"/')
_JSON_ESCAPE_LETTERS = frozenset("bfnrt")
# Control characters that never start a word in real text; a letter run after them is a command.
_RARE_ESCAPE_LETTERS = frozenset("bfr")

# LaTeX commands whose first letter also forms a valid JSON escape (\b \f \n \r \t).
# Left alone they would decode to control characters instead of the command.
LATEX_COMMANDS_SHADOWING_ESCAPES = frozenset(
    {
        "backslash", "bar", "because", "begin", "beta", "bf", "big", "bigcap", "bigcup",
        "bigg", "bigl", "bigr", "binom", "bmod", "boldsymbol", "bot", "boxed", "bullet",
        "flat", "forall", "frac", "frown",
        "nabla", "ne", "neg", "neq", "newline", "ngeq", "ni", "nleq", "nmid", "not",
        "notin", "nu", "nexists", "natural", "ncong", "nearrow", "nleftarrow", "nolimits",
        "noindent", "nonumber", "nparallel", "nrightarrow", "nsim", "nsubset", "nsubseteq",
        "nsupseteq", "nvdash", "nwarrow",
        "rangle", "rbrace", "rceil", "rfloor", "rho", "right", "rightarrow", "rightleftharpoons",
        "rm", "rvert",
        "tan", "tanh", "tau", "text", "textbf", "textit", "textrm", "tfrac", "therefore",
        "tbinom", "textcolor", "textnormal", "textsc", "textsf", "textstyle", "texttt", "textup",
        "theta", "tilde", "times", "tiny", "to", "top", "triangle", "triangleleft", "triangleq",
        "triangleright", "tt",
    }
)


def repair_model_output(raw_text: str | None) -> str:
    if not isinstance(raw_text, str):
        return ""
    text = strip_code_fences(raw_text)
    text = fix_latex_escapes(text)
    text = isolate_json_value(text)
    text = remove_trailing_commas(text)
    return text.strip()


def strip_code_fences(text: str) -> str:
    previous = None
    while previous != text:
        previous = text
        text = _FENCE_RE.sub("", text)
    return text.strip()


def fix_latex_escapes(text: str) -> str:
    """Double single backslashes that are not meant as JSON escapes.

    Correct ``\\\\`` pairs are swapped for a placeholder first so they are never
    escaped a second time, then restored.
    """
    if _PROTECTED_PAIR in text:
        return text
    protected = text.replace("\\\\", _PROTECTED_PAIR)
    fixed = _BACKSLASH_RE.sub(_escape_replacement, protected)
    return fixed.replace(_PROTECTED_PAIR, "\\\\")


def _escape_replacement(match: re.Match) -> str:
    token = match.group(1)
    if _is_valid_json_escape(token):
        return match.group(0)
    return "\\\\" + token


def _is_valid_json_escape(token: str) -> bool:
    if not token:
        return False
    if len(token) == 5 and token[0] == "u" and all(char in "0123456789abcdefABCDEF" for char in token[1:]):
        return True
    if len(token) == 1:
        return token in _VALID_SINGLE_ESCAPES or token in _JSON_ESCAPE_LETTERS
    if token[0] in _RARE_ESCAPE_LETTERS and len(token) >= 3:
        return False
    if token[0] in _JSON_ESCAPE_LETTERS:
        return token not in LATEX_COMMANDS_SHADOWING_ESCAPES
    return False


def isolate_json_value(text: str) -> str:
    """Cut the first top-level JSON value out of surrounding prose.

    Truncated output is closed: an open string is terminated and any open
    arrays/objects are closed in stack order.
    """
    start = _find_json_start(text)
    if start < 0:
        return text.strip()

    closers: list[str] = []
    in_string = False
    escaped = False
    for index in range(start, len(text)):
        char = text[index]
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue
        if char == '"':
            in_string = True
        elif char == "{":
            closers.append("}")
        elif char == "[":
            closers.append("]")
        elif char in "}]":
            if not closers or closers[-1] != char:
                return text[start:].strip()
            closers.pop()
            if not closers:
                return text[start : index + 1]

    truncated = text[start:]
    if in_string:
        if escaped:
            truncated = truncated[:-1]
        truncated += '"'
    truncated = truncated.rstrip()
    if truncated.endswith(":"):
        truncated += " null"
    return truncated + "".join(reversed(closers))


def _find_json_start(text: str) -> int:
    # Responses are objects; a leading "[" is more often prose than an array.
    object_start = text.find("{")
    if object_start >= 0:
        return object_start
    return text.find("[")


def remove_trailing_commas(text: str) -> str:
    return _TRAILING_COMMA_RE.sub(r"\1", text)


__all__ = [
    "LATEX_COMMANDS_SHADOWING_ESCAPES",
    "fix_latex_escapes",
    "isolate_json_value",
    "remove_trailing_commas",
    "repair_model_output",
    "strip_code_fences",
]
