"""Code normalization for hashing, fingerprinting and similarity."""

from __future__ import annotations

import hashlib
import re

# Keywords kept verbatim in the code shape; every other identifier collapses to ID.
KEYWORDS = frozenset({
    # python
    "and", "as", "assert", "async", "await", "break", "class", "continue", "def",
    "del", "elif", "else", "except", "finally", "for", "from", "global", "if",
    "import", "in", "is", "lambda", "nonlocal", "not", "or", "pass", "raise",
    "return", "try", "while", "with", "yield", "None", "True", "False",
    # c-family / js / java
    "case", "catch", "const", "default", "do", "function", "let", "new", "null",
    "switch", "this", "throw", "typeof", "var", "void", "undefined", "true",
    "false", "static", "public", "private", "protected", "int", "float", "bool",
    "string", "fn", "mut", "match", "struct", "impl", "func", "package",
})

_TOKEN_RE = re.compile(
    r"""
    (?P<string>"(?:\\.|[^"\\])*"|'(?:\\.|[^'\\])*')
    |(?P<number>\b\d+(?:\.\d+)?(?:[eE][+-]?\d+)?\b)
    |(?P<name>[A-Za-z_][A-Za-z0-9_]*)
    |(?P<newline>\n)
    |(?P<op>[^\sA-Za-z0-9_])
    """,
    re.VERBOSE,
)

_HASH_COMMENT_RE = re.compile(r"(?m)#.*$")
_SLASH_COMMENT_RE = re.compile(r"(?m)//.*$")
_BLOCK_COMMENT_RE = re.compile(r"/\*.*?\*/", re.DOTALL)

HASH_COMMENT_LANGUAGES = frozenset({"python", "ruby", "shell", "bash", "r", "yaml", "perl"})


def strip_comments(code: str, language: str = "python") -> str:
    """Drop line and block comments.

    Naive about comment markers inside string literals; good enough for
    hashing and similarity, never used to rewrite user code.
    """
    if language.lower() in HASH_COMMENT_LANGUAGES:
        return _HASH_COMMENT_RE.sub("", code)
    code = _BLOCK_COMMENT_RE.sub("", code)
    return _SLASH_COMMENT_RE.sub("", code)


def normalize_code(code: str, language: str = "python") -> str:
    """Normalize code for comparison: strip comments, normalize quotes and whitespace."""
    code = strip_comments(code, language).strip()
    code = re.sub(r'["\']', "'", code)
    code = re.sub(r"\s+", " ", code)
    return code


def content_hash(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def normalized_hash(code: str, language: str = "python") -> str:
    """Hash of the normalized code, insensitive to comments and formatting."""
    return content_hash(normalize_code(code, language))[:32]


def tokenize(code: str, language: str = "python") -> list[str]:
    return [
        m.group(0)
        for m in _TOKEN_RE.finditer(strip_comments(code, language))
        if m.lastgroup != "newline"
    ]


def code_shape(code: str, language: str = "python") -> str:
    """Structural shape of a snippet with identifiers and literals abstracted.

    Two snippets that differ only in variable names or literal values map to
    the same shape. Line breaks and leading indentation depth are kept, so
    indentation mistakes still shape differently from flat code.
    """
    lines_out: list[str] = []
    for line in strip_comments(code, language).splitlines():
        if not line.strip():
            continue
        indent = len(line) - len(line.lstrip(" \t"))
        parts: list[str] = []
        for m in _TOKEN_RE.finditer(line):
            kind = m.lastgroup
            tok = m.group(0)
            if kind == "string":
                parts.append("STR")
            elif kind == "number":
                parts.append("NUM")
            elif kind == "name":
                parts.append(tok if tok in KEYWORDS else "ID")
            elif kind == "op":
                parts.append(tok)
        lines_out.append(f"{indent}:{' '.join(parts)}")
    return "\n".join(lines_out)


def shingles(code: str, language: str = "python", size: int = 3) -> frozenset[str]:
    """Token n-grams used for fuzzy same-block detection."""
    tokens = tokenize(code, language)
    if len(tokens) < size:
        return frozenset([" ".join(tokens)]) if tokens else frozenset()
    return frozenset(" ".join(tokens[i : i + size]) for i in range(len(tokens) - size + 1))


def similarity(a: frozenset[str], b: frozenset[str]) -> float:
    """Jaccard similarity of two shingle sets; two empty sets are identical."""
    if not a and not b:
        return 1.0
    union = a | b
    return len(a & b) / len(union)
