from __future__ import annotations

import json
import os
import subprocess
import sys
import time
from pathlib import Path

import numpy as np

import bf_aot


# Each <name>.bf may carry <name>.in (stdin bytes) and <name>.out (expected stdout bytes).
PROGRAM_EXT = ".bf"

timeout_s = int(os.environ.get("BF_NULLTEST_TIMEOUT_S", "60"))
opt_levels = [int(x) for x in os.environ.get("BF_NULLTEST_OPT", "0,2").split(",") if x.strip()]


def die(msg: str, code: int = 1) -> None:
    print(msg, file=sys.stderr)
    raise SystemExit(code)


def rel(repo_root: Path, p: Path) -> str:
    try:
        return str(p.resolve().relative_to(repo_root.resolve()))
    except ValueError:
        return p.name


def read_optional_bytes(p: Path) -> bytes | None:
    return p.read_bytes() if p.exists() else None


def run_compiled(prog: Path, stdin: bytes, opt_level: int) -> subprocess.CompletedProcess[bytes]:
    # Out of process: an out-of-range cursor may crash, and a bad loop may never end.
    cmd = [sys.executable, str(Path(bf_aot.__file__).resolve()), str(prog), "--run", "--opt", str(opt_level)]
    return subprocess.run(cmd, input=stdin, capture_output=True, timeout=timeout_s)


def first_mismatch(got: bytes, want: bytes) -> int:
    """Index of the first differing byte, -1 if equal."""
    if got == want:
        return -1
    n = min(len(got), len(want))
    a = np.frombuffer(got[:n], dtype=np.uint8)
    b = np.frombuffer(want[:n], dtype=np.uint8)
    diff = np.nonzero(a != b)[0]
    return int(diff[0]) if diff.size else n


def main() -> None:
    repo_root = Path(__file__).resolve().parents[1]
    prog_dir = Path(os.environ.get("BF_NULLTEST_DIR", repo_root / "tests" / "programs"))
    report_dir = Path(os.environ.get("BF_NULLTEST_REPORT_DIR", repo_root / ".ci" / "out"))
    report_dir.mkdir(parents=True, exist_ok=True)

    if not prog_dir.is_dir():
        die(f"Program dir missing: {rel(repo_root, prog_dir)}")

    progs = sorted(p for p in prog_dir.glob(f"*{PROGRAM_EXT}") if p.is_file())
    if not progs:
        die(f"No {PROGRAM_EXT} programs found in {rel(repo_root, prog_dir)}")

    print(f"[test] programs: {len(progs)}, opt levels: {opt_levels}")

    results = []
    failures = 0

    for prog in progs:
        stdin = read_optional_bytes(prog.with_suffix(".in")) or b""
        expected = read_optional_bytes(prog.with_suffix(".out"))

        root = bf_aot.parse(prog.read_text(encoding="utf-8", errors="replace"))
        reference = bf_aot.interpret(root, stdin)

        if expected is not None and reference != expected:
            print(f"[test] {prog.name}: reference interpreter disagrees with {prog.with_suffix('.out').name}")
            failures += 1

        for opt_level in opt_levels:
            started = time.time()
            print(f"\n=== {rel(repo_root, prog)} (opt={opt_level})")

            try:
                cp = run_compiled(prog, stdin, opt_level)
            except subprocess.TimeoutExpired:
                die(f"TIMEOUT running {rel(repo_root, prog)} after {timeout_s}s", 3)

            if cp.returncode != 0:
                print(cp.stderr.decode("utf-8", errors="replace"), file=sys.stderr)
                die(f"{rel(repo_root, prog)} exited with {cp.returncode} (opt={opt_level})", 3)

            mismatch = first_mismatch(cp.stdout, reference)
            passed = mismatch < 0

            results.append(
                {
                    "program": rel(repo_root, prog),
                    "opt": opt_level,
                    "bytes_out": len(cp.stdout),
                    "bytes_expected": len(reference),
                    "first_mismatch": mismatch,
                    "seconds": round(time.time() - started, 3),
                    "pass": passed,
                }
            )

            print(f"out={len(cp.stdout)} bytes, expected={len(reference)} bytes, first_mismatch={mismatch}")
            if not passed:
                failures += 1

    out_json = report_dir / "bf_nulltest_report.json"
    out_json.write_text(json.dumps(results, indent=2), encoding="utf-8")
    print(f"\nReport: {rel(repo_root, out_json)}")

    if failures:
        die(f"{failures} null test(s) failed.", 10)

    print("All null tests passed.")


if __name__ == "__main__":
    main()
