"""Local demo agent for CLI provider integration tests.

Reads the rendered prompt from ``--prompt-file``. Accumulating chunks get an
acknowledgement plus a ``polyrev-session:`` line; any other prompt gets one
fenced JSON finding per listed file.
"""

from __future__ import annotations

import argparse
import json
import os
import re
import sys
from pathlib import Path
from uuid import uuid4

_FILE_LIST = re.compile(r"## Files to Review\n```\n(.*?)\n?```", re.DOTALL)
_ACCUMULATING_MARKER = "- ACCUMULATING]**"


def main(argv: list[str] | None = None) -> int:
    """Run local deterministic demo review."""

    parser = argparse.ArgumentParser()
    parser.add_argument("--prompt-file", required=True)
    parser.add_argument("--priority", default="p1")
    parser.add_argument("--exit-code", type=int, default=0)
    parser.add_argument("--stderr", default="")
    args, _ = parser.parse_known_args(argv)

    if args.stderr:
        sys.stderr.write(args.stderr + "\n")
    if args.exit_code:
        return args.exit_code

    prompt = Path(args.prompt_file).read_text("utf-8")
    session_token = os.getenv("POLYREV_SESSION_TOKEN") or ""

    if _ACCUMULATING_MARKER in prompt:
        files = _listed_files(prompt)
        print(f"Chunk received. {len(files)} files indexed.")
        print(f"polyrev-session: {session_token or uuid4().hex}")
        return 0

    findings = []
    for index, path in enumerate(_listed_files(prompt), start=1):
        finding = {
            "id": f"ECHO-{index}",
            "title": f"Echo review of {path}",
            "priority": args.priority,
            "file": path,
            "line": index,
            "description": f"Deterministic echo finding for {path}.",
            "remediation": "No action required.",
        }
        if session_token:
            finding["references"] = [f"session:{session_token}"]
        findings.append(finding)
    print("Review complete.\n\n```json")
    print(json.dumps(findings, indent=2))
    print("```")
    return 0


def _listed_files(prompt: str) -> list[str]:
    match = _FILE_LIST.search(prompt)
    if match is None:
        return []
    return [line.strip() for line in match.group(1).splitlines() if line.strip()]


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
