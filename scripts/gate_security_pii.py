#!/usr/bin/env python3
"""Gate: log hygiene check for source files.

Fails if:
- print( found in runtime code (src/**)
- a logger call mentions signatures, secrets or request bodies without
  going through redaction (safe_log_context or the webhook log context helper)

Only code is inspected; words inside string literals are ignored.

Usage:
    python scripts/gate_security_pii.py
"""

import re
import sys
from pathlib import Path

# Names that must not reach a logger call unredacted
SENSITIVE_KEYWORDS = (
    "signature",
    "secret",
    "raw_data",
    "body",
    "payload",
    "headers",
)

PRINT_PATTERN = re.compile(r"\bprint\s*\(")

LOGGER_CALL_PATTERN = re.compile(
    r"logger\.(debug|info|warning|error|critical|exception)\s*\("
)

STRING_LITERAL_PATTERN = re.compile(r"(\"[^\"]*\"|'[^']*')")

REDACTION_PATTERNS = (
    "safe_log_context",
    "_log_context(",
    "id_prefix",
)


def _code_only(line: str) -> str:
    code = line.split("#")[0]
    return STRING_LITERAL_PATTERN.sub('""', code)


def check_file(filepath: Path) -> list[str]:
    """Check a single file for violations. Returns list of error messages."""
    try:
        content = filepath.read_text(encoding="utf-8")
    except UnicodeDecodeError:
        return []

    errors = []
    for lineno, line in enumerate(content.splitlines(), start=1):
        if line.lstrip().startswith("#"):
            continue
        code = _code_only(line)

        if PRINT_PATTERN.search(code):
            errors.append(f"{filepath}:{lineno}: print() not allowed in runtime code")

        if LOGGER_CALL_PATTERN.search(code):
            lowered = code.lower()
            if any(rp in code for rp in REDACTION_PATTERNS):
                continue
            for keyword in SENSITIVE_KEYWORDS:
                if keyword in lowered:
                    errors.append(
                        f"{filepath}:{lineno}: logger call with '{keyword}' "
                        "must use redaction (safe_log_context)"
                    )

    return errors


def check_tree(src_dir: Path) -> list[str]:
    all_errors: list[str] = []
    for pyfile in sorted(src_dir.rglob("*.py")):
        all_errors.extend(check_file(pyfile))
    return all_errors


def main() -> int:
    src_dir = Path("src")
    if not src_dir.exists():
        src_dir = Path(__file__).parent.parent / "src"

    if not src_dir.exists():
        sys.stderr.write("Error: src directory not found\n")
        return 1

    all_errors = check_tree(src_dir)
    if all_errors:
        sys.stderr.write("Log hygiene gate FAILED:\n")
        for err in all_errors:
            sys.stderr.write(f"  {err}\n")
        return 1

    sys.stdout.write("Log hygiene gate PASSED\n")
    return 0


if __name__ == "__main__":
    sys.exit(main())
