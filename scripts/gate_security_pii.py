#!/usr/bin/env python3
"""Gate G2: Security & PII check for source files.

Gateway payloads carry phone numbers, JIDs, push names and message text.
Logger calls in zapsync usually span several lines, so the check walks
the AST and inspects each call as a whole.

Fails if:
- print() is called in runtime code (src/**)
- a logger call mentions a sensitive name without going through
  safe_log_context/mask_address/redact_value
- extra_fields is built from a literal dict instead of safe_log_context

Usage:
    python scripts/gate_security_pii.py [path ...]
"""

import ast
import sys
from pathlib import Path

# Names that must not reach a logger call without redaction
SENSITIVE_KEYWORDS = (
    "payload",
    "request.body",
    "body_bytes",
    "request.json",
    "message_text",
    "phone",
    "remote_jid",
    "remotejid",
    "push_name",
    "sender_address",
)

LOG_METHODS = {"debug", "info", "warning", "error", "critical", "exception"}

REDACTION_CALLS = {"safe_log_context", "mask_address", "redact_value", "redact_string"}


def _call_name(node: ast.Call) -> str | None:
    func = node.func
    if isinstance(func, ast.Name):
        return func.id
    if isinstance(func, ast.Attribute):
        return func.attr
    return None


def _is_logger_call(node: ast.Call) -> bool:
    func = node.func
    if not isinstance(func, ast.Attribute) or func.attr not in LOG_METHODS:
        return False
    target = func.value
    return isinstance(target, ast.Name) and target.id.endswith("logger")


def _uses_redaction(node: ast.AST) -> bool:
    return any(
        isinstance(child, ast.Call) and _call_name(child) in REDACTION_CALLS
        for child in ast.walk(node)
    )


def _literal_extra_fields(node: ast.Call) -> bool:
    """True when extra={"extra_fields": {...}} is passed as a raw dict."""
    for kw in node.keywords:
        if kw.arg != "extra" or not isinstance(kw.value, ast.Dict):
            continue
        for key, value in zip(kw.value.keys, kw.value.values):
            if isinstance(key, ast.Constant) and key.value == "extra_fields":
                if isinstance(value, ast.Dict):
                    return True
    return False


def check_file(filepath: Path) -> list[str]:
    """Check a single file for violations. Returns list of error messages."""
    try:
        content = filepath.read_text(encoding="utf-8")
        tree = ast.parse(content, filename=str(filepath))
    except (UnicodeDecodeError, SyntaxError):
        return []

    found: list[tuple[int, str]] = []

    for node in ast.walk(tree):
        if not isinstance(node, ast.Call):
            continue

        if isinstance(node.func, ast.Name) and node.func.id == "print":
            found.append((node.lineno, "print() not allowed in runtime code"))
            continue

        if not _is_logger_call(node):
            continue

        if _literal_extra_fields(node):
            found.append(
                (node.lineno, "extra_fields must be built with safe_log_context")
            )

        if _uses_redaction(node):
            continue
        segment = (ast.get_source_segment(content, node) or "").lower()
        for keyword in SENSITIVE_KEYWORDS:
            if keyword in segment:
                found.append(
                    (
                        node.lineno,
                        f"logger call with '{keyword}' must use redaction "
                        "(safe_log_context/mask_address)",
                    )
                )
                break

    return [f"{filepath}:{lineno}: {message}" for lineno, message in sorted(found)]


def main(argv: list[str] | None = None) -> int:
    """Run gate check on src (or the given paths)."""
    args = sys.argv[1:] if argv is None else argv
    roots = [Path(p) for p in args] or [Path(__file__).parent.parent / "src"]

    all_errors: list[str] = []
    for root in roots:
        if not root.exists():
            sys.stderr.write(f"Error: {root} not found\n")
            return 1
        files = [root] if root.is_file() else sorted(root.rglob("*.py"))
        for pyfile in files:
            all_errors.extend(check_file(pyfile))

    if all_errors:
        sys.stderr.write("Gate G2 FAILED - Security/PII violations found:\n")
        for err in all_errors:
            sys.stderr.write(f"  {err}\n")
        return 1

    sys.stdout.write("Gate G2 PASSED - No security/PII violations found\n")
    return 0


if __name__ == "__main__":
    sys.exit(main())
