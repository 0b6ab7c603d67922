"""Operator prompts on the controlling terminal."""

from __future__ import annotations

from typing import Callable, Optional

from persistusb.domain import Drive

AFFIRMATIVE_ANSWERS = ("y", "yes")


def describe_target(drive: Drive) -> str:
    """Return e.g. "/dev/sdb SanDisk Ultra (16.0GB)"."""
    return f"/dev/{drive.format_label()}"


def confirm_target(
    drive: Drive,
    action: str = "erase all data on",
    *,
    read_input: Optional[Callable[[str], str]] = None,
) -> bool:
    """Ask the operator to confirm a destructive action on ``drive``.

    Only ``y`` or ``yes`` (any case) confirms. End of input counts as no.
    """
    read_input = read_input or input
    print(f"\nWARNING: This will {action} {describe_target(drive)}")
    try:
        answer = read_input("Continue? [y/N]: ")
    except EOFError:
        print()
        return False
    return answer.strip().lower() in AFFIRMATIVE_ANSWERS
