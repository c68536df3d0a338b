"""Local deterministic agent used by process supervision tests."""

from __future__ import annotations

import argparse
import subprocess
import sys
import time

_LINGER_SCRIPT = (
    "import sys, time; time.sleep(float(sys.argv[1])); print('late output', flush=True)"
)


def main(argv: list[str] | None = None) -> int:
    """Print the prompt, optionally echo stdin, then exit with the requested code."""

    parser = argparse.ArgumentParser()
    parser.add_argument("prompt", nargs="?", default="")
    parser.add_argument("--stderr-line", action="append", default=[])
    parser.add_argument("--repeat", type=int, default=1)
    parser.add_argument("--echo-stdin", action="store_true")
    parser.add_argument("--sleep", type=float, default=0.0)
    parser.add_argument("--exit-code", type=int, default=0)
    parser.add_argument("--linger", type=float, default=0.0)
    args = parser.parse_args(argv)

    if args.linger > 0:
        # The child inherits stdout and outlives this process.
        subprocess.Popen(  # noqa: S603
            [sys.executable, "-c", _LINGER_SCRIPT, str(args.linger)],
            stdin=subprocess.DEVNULL,
        )

    for _ in range(max(args.repeat, 0)):
        for line in args.prompt.splitlines():
            print(line, flush=True)
    for line in args.stderr_line:
        print(line, file=sys.stderr, flush=True)

    if args.echo_stdin:
        for raw_line in sys.stdin:
            line = raw_line.rstrip("\n")
            if line == "exit":
                break
            print(f"echo: {line}", flush=True)

    if args.sleep > 0:
        time.sleep(args.sleep)
    return args.exit_code


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
