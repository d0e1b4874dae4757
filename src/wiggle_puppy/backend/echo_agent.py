"""Local deterministic agent for runner integration tests and dry runs.

Usage: ``python -m wiggle_puppy.backend.echo_agent [options] PROMPT``
"""

from __future__ import annotations

import argparse
import os
import sys
import time
from pathlib import Path

from wiggle_puppy.config import DEFAULT_COMPLETION_PHRASE
from wiggle_puppy.document import load_document, write_document
from wiggle_puppy.graph import next_eligible


def main(argv: list[str] | None = None) -> int:
    """Echo the prompt, then optionally finish work items or claim completion."""

    parser = argparse.ArgumentParser()
    parser.add_argument("prompt", nargs="?", default="")
    parser.add_argument("--counter-file", type=Path, default=None)
    parser.add_argument(
        "--complete-on",
        type=int,
        default=0,
        help="Print the completion phrase on this call number (0 = never).",
    )
    parser.add_argument("--phrase", default=DEFAULT_COMPLETION_PHRASE)
    parser.add_argument(
        "--pass-next",
        type=Path,
        default=None,
        help="Mark the next eligible item of this work document as passing.",
    )
    parser.add_argument("--stderr", default=None, help="Extra line written to stderr.")
    parser.add_argument("--sleep", type=float, default=0.0)
    parser.add_argument("--exit-code", type=int, default=0)
    args = parser.parse_args(argv)

    call = _bump_counter(args.counter_file)
    print(f"pid={os.getpid()}", flush=True)
    print(f"call={call}", flush=True)
    for line in args.prompt.splitlines():
        # Never echo the phrase back from the instruction text.
        if args.phrase in line:
            continue
        print(f"> {line}", flush=True)
    if args.stderr:
        print(args.stderr, file=sys.stderr, flush=True)

    if args.pass_next is not None:
        document = load_document(args.pass_next)
        item = next_eligible(document)
        if item is not None:
            item.passes = True
            write_document(args.pass_next, document)
            print(f"passed={item.id}", flush=True)

    if args.sleep > 0:
        time.sleep(args.sleep)

    if args.complete_on and call >= args.complete_on:
        print(args.phrase, flush=True)
    return args.exit_code


def _bump_counter(path: Path | None) -> int:
    if path is None:
        return 1
    current = int(path.read_text("utf-8").strip() or "0") if path.exists() else 0
    current += 1
    path.write_text(str(current), "utf-8")
    return current


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
