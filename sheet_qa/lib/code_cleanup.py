import re
from typing import List

_FENCE_ONLY_RE = re.compile(r"^\s*```[a-zA-Z0-9_+-]*\s*\n?(.*?)\n?\s*```\s*$", re.S)
_LEADING_FENCE_RE = re.compile(r"^\s*```[a-zA-Z0-9_+-]*[ \t]*\n?")
_TRAILING_FENCE_RE = re.compile(r"\n?[ \t]*```\s*$")


def strip_reasoning_sections(text: str) -> str:
    s = str(text or "")
    if not s:
        return ""
    s = re.sub(r"(?is)<(think|analysis|reasoning)[^>]*>.*?</\1>", " ", s)
    s = re.sub(r"(?is)</?(think|analysis|reasoning)[^>]*>", " ", s)
    s = re.sub(r"(?is)```(?:think|thinking|analysis|reasoning)[^\n]*\n.*?```", " ", s)
    return s.strip()


def find_code_blocks(text: str) -> List[str]:
    s = str(text or "")
    if not s:
        return []
    out: List[str] = []
    seen: set = set()
    patterns = (
        r"```(?:python|py)\s*(.*?)\s*```",
        r"```[a-zA-Z0-9_-]*\s*(.*?)\s*```",
    )
    for pat in patterns:
        for m in re.finditer(pat, s, re.S | re.I):
            code = str(m.group(1) or "").strip()
            if not code or code in seen:
                continue
            seen.add(code)
            out.append(code)
    return out


def strip_code_fences(text: str) -> str:
    """Turn a raw model response into the code it contains.

    A response that is one fenced block yields its body. Prose around a fenced
    block is dropped in favour of the first python block. Unfenced text is only
    trimmed, with a dangling opening or closing fence removed.
    """
    cleaned = strip_reasoning_sections(text)
    if not cleaned:
        return ""
    m = _FENCE_ONLY_RE.match(cleaned)
    if m and "```" not in m.group(1):
        return m.group(1).strip()
    if "```" in cleaned:
        blocks = find_code_blocks(cleaned)
        if blocks:
            return blocks[0]
    cleaned = _LEADING_FENCE_RE.sub("", cleaned)
    cleaned = _TRAILING_FENCE_RE.sub("", cleaned)
    return cleaned.strip()
