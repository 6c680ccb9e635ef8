"""Local stand-in for the agent CLI used by integration tests.

Reads the prompt from stdin and answers with stream-json lines. Unknown
flags (the real tool's `--verbose`, `--output-format`, ...) are ignored.
"""

from __future__ import annotations

import argparse
import json
import sys
import time
from typing import Any


def _emit(payload: dict[str, Any]) -> None:
    print(json.dumps(payload, ensure_ascii=False), flush=True)


def main(argv: list[str] | None = None) -> int:
    """Run local deterministic echo session."""

    parser = argparse.ArgumentParser(allow_abbrev=False)
    parser.add_argument("--exit-code", type=int, default=0)
    parser.add_argument("--stderr", default="")
    parser.add_argument("--error", default="")
    parser.add_argument("--plain", default="")
    parser.add_argument("--sleep", type=float, default=0.0)
    parser.add_argument("--tokens", type=int, default=7)
    parser.add_argument("--model", default="echo-model")
    parser.add_argument("--no-result", action="store_true")
    args, passthrough = parser.parse_known_args(argv)

    prompt = sys.stdin.read().strip()
    _emit(
        {
            "type": "system",
            "subtype": "init",
            "model": args.model,
            "tools": ["Read", "Write"],
            "args": passthrough,
        },
    )
    _emit(
        {
            "type": "assistant",
            "message": {
                "content": [{"type": "text", "text": prompt or "(empty prompt)"}],
                "usage": {"output_tokens": args.tokens},
            },
        },
    )
    if args.plain:
        print(args.plain, flush=True)
    if args.error:
        _emit({"type": "error", "error": args.error})
    if args.stderr:
        print(args.stderr, file=sys.stderr, flush=True)
    if args.sleep > 0:
        time.sleep(args.sleep)
    if not args.no_result:
        _emit(
            {
                "type": "result",
                "subtype": "success" if args.exit_code == 0 else "error",
                "result": f"echo: {prompt}" if prompt else "echo",
                "usage": {"output_tokens": args.tokens},
            },
        )
    return args.exit_code


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
