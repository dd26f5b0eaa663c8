"""Diagnostic parsing: map editor/linter diagnostics onto stable error kinds."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Optional

# (regex, error kind); first match wins. Group-less patterns map the whole
# family onto one kind so "same mistake" clustering is not split by wording.
ERROR_PATTERNS: list[tuple[str, str]] = [
    (r"IndentationError|unexpected indent|expected an indented block|unindent does not match",
     "IndentationError"),
    (r"TabError|inconsistent use of tabs", "TabError"),
    (r"NameError|name '\w+' is not defined|cannot find name|is not defined", "NameError"),
    (r"AttributeError|has no attribute|property '\w+' does not exist", "AttributeError"),
    (r"ImportError|ModuleNotFoundError|No module named|cannot find module", "ImportError"),
    (r"TypeError|is not assignable to|not callable|unsupported operand", "TypeError"),
    (r"KeyError", "KeyError"),
    (r"IndexError|index out of range", "IndexError"),
    (r"ZeroDivisionError|division by zero", "ZeroDivisionError"),
    (r"ValueError", "ValueError"),
    (r"UnboundLocalError|referenced before assignment", "UnboundLocalError"),
    (r"RecursionError|maximum recursion depth", "RecursionError"),
    (r"SyntaxError|invalid syntax|unexpected token|expected ['\"]?[;:)\]}]", "SyntaxError"),
]

_EXCEPTION_NAME_RE = re.compile(r"^[A-Z][A-Za-z]*(Error|Exception|Warning)$")
_SEVERITIES = ("error", "warning", "info", "hint")


@dataclass(frozen=True)
class DiagnosticInfo:
    code: str
    message: str = ""
    severity: str = "error"
    error_kind: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "code": self.code,
            "message": self.message,
            "severity": self.severity,
            "errorKind": self.error_kind,
        }


def classify_error(code: Optional[str], message: str = "") -> Optional[str]:
    """Derive an error kind from a diagnostic code and/or message.

    Host codes that already look like exception names (``IndentationError``)
    are trusted as-is; otherwise the message is matched against ERROR_PATTERNS.
    """
    if code and _EXCEPTION_NAME_RE.match(code):
        return code
    text = f"{code or ''} {message or ''}"
    for pattern, kind in ERROR_PATTERNS:
        if re.search(pattern, text, re.IGNORECASE):
            return kind
    return None


def parse_diagnostic(raw) -> Optional[DiagnosticInfo]:
    """Build a DiagnosticInfo from a raw host payload, or None when unusable."""
    if not isinstance(raw, dict):
        return None
    code = raw.get("code")
    message = raw.get("message") or ""
    if code is None and not message:
        return None
    code = str(code) if code is not None else ""
    severity = str(raw.get("severity") or "error").lower()
    if severity not in _SEVERITIES:
        severity = "error"
    kind = raw.get("errorKind") or classify_error(code, message)
    return DiagnosticInfo(
        code=code or (kind or "unknown"),
        message=message[:500],
        severity=severity,
        error_kind=kind,
    )
