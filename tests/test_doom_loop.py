"""Tests for repeated-call detection."""

from __future__ import annotations

import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from devpilot.agent.doom_loop import (
    DoomLoopDetector,
    doom_loop_error,
    doom_loop_result,
    hash_args,
)


def test_flags_on_third_identical_call():
    detector = DoomLoopDetector()
    args = {"command": "ls -la"}
    assert detector.check("bash", args) is False
    assert detector.check("bash", args) is False
    assert detector.check("bash", args) is True
    # Stays flagged for further repeats
    assert detector.check("bash", args) is True
    print("  PASS: flags on third identical call")


def test_different_args_or_names_do_not_count_together():
    detector = DoomLoopDetector()
    for i in range(5):
        assert detector.check("bash", {"command": f"echo {i}"}) is False
    assert detector.check("read_file", {"path": "a.py"}) is False
    assert detector.check("write_file", {"path": "a.py"}) is False
    assert detector.count("bash", {"command": "echo 0"}) == 1
    print("  PASS: distinct calls tracked separately")


def test_hash_is_idempotent_and_order_sensitive():
    a = {"path": "x.py", "offset": 1}
    assert hash_args(a) == hash_args(dict(a))
    # Equal maps in a different key order are treated as different calls
    b = {"offset": 1, "path": "x.py"}
    assert a == b
    assert hash_args(a) != hash_args(b)

    detector = DoomLoopDetector()
    detector.check("read_file", a)
    detector.check("read_file", b)
    assert detector.check("read_file", a) is False
    print("  PASS: canonical hash keeps key order")


def test_reset_and_custom_threshold():
    detector = DoomLoopDetector(threshold=2)
    assert detector.check("bash", {}) is False
    assert detector.check("bash", {}) is True
    detector.reset()
    assert detector.check("bash", {}) is False
    print("  PASS: reset and custom threshold")


def test_messages():
    assert doom_loop_error("bash") == (
        "Doom loop detected: bash called 3+ times with identical arguments. Breaking loop."
    )
    assert doom_loop_result("bash") == (
        "Error: Detected repeated identical calls to bash. Please try a different approach."
    )


def main():
    print("\n=== Doom loop detector ===")
    test_flags_on_third_identical_call()
    test_different_args_or_names_do_not_count_together()
    test_hash_is_idempotent_and_order_sensitive()
    test_reset_and_custom_threshold()
    test_messages()
    print("\nAll doom loop tests passed.")


if __name__ == "__main__":
    main()
