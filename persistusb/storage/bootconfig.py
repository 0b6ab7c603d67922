"""Structured rewriting of the persistence boot entries.

Two formats are handled:

    Loader entry (systemd-boot style)::

        title    Live persistent (x86_64)
        options  archisobasedir=live archisolabel=LIVE_2026 cow_label=LIVEP1A2B

    Syslinux config::

        LABEL live_persistence
        MENU LABEL Live persistent (x86_64, BIOS)
        APPEND archisobasedir=live archisolabel=LIVE_2026 cow_label=LIVEP1A2B

Kernel parameters are tokenized rather than patched textually. An existing
``cryptdevice=`` is dropped and the new one goes right before the first
``cow_label=``, so running a patch any number of times leaves exactly one.
"""

from __future__ import annotations

import re


CRYPTDEVICE_KEY = "cryptdevice="
OVERLAY_KEY = "cow_label="
ENCRYPTED_MARKER = " encrypted"

_ENTRY_LINE = re.compile(r"^(\s*)(\S+)(\s+)(.*?)(\s*)$")
_SYSLINUX_LABEL = re.compile(r"^\s*LABEL\s+", re.IGNORECASE)
_SYSLINUX_MENU_LABEL = re.compile(r"^(\s*MENU\s+LABEL\s+)(.*?)(\s*)$", re.IGNORECASE)
_SYSLINUX_APPEND = re.compile(r"^(\s*APPEND\s+)(.*?)(\s*)$", re.IGNORECASE)


def insert_kernel_parameter(parameters: str, cryptdevice: str) -> str:
    """Return ``parameters`` with ``cryptdevice`` placed before ``cow_label=``."""
    tokens = [token for token in parameters.split() if not token.startswith(CRYPTDEVICE_KEY)]
    for index, token in enumerate(tokens):
        if token.startswith(OVERLAY_KEY):
            tokens.insert(index, cryptdevice)
            break
    else:
        tokens.append(cryptdevice)
    return " ".join(tokens)


def mark_encrypted(title: str) -> str:
    if title.rstrip().endswith(ENCRYPTED_MARKER):
        return title
    return f"{title.rstrip()}{ENCRYPTED_MARKER}"


def patch_loader_entry(text: str, cryptdevice: str) -> str:
    lines = []
    for line in text.splitlines():
        match = _ENTRY_LINE.match(line)
        if match:
            indent, key, space, value, _ = match.groups()
            if key.lower() == "options":
                line = f"{indent}{key}{space}{insert_kernel_parameter(value, cryptdevice)}"
            elif key.lower() == "title":
                line = f"{indent}{key}{space}{mark_encrypted(value)}"
        lines.append(line)
    return "\n".join(lines) + "\n"


def _split_sections(lines: list[str]) -> list[list[str]]:
    sections: list[list[str]] = [[]]
    for line in lines:
        if _SYSLINUX_LABEL.match(line) and not _SYSLINUX_MENU_LABEL.match(line):
            sections.append([])
        sections[-1].append(line)
    return sections


def _is_persistent_section(section: list[str]) -> bool:
    for line in section:
        match = _SYSLINUX_APPEND.match(line)
        if match and any(t.startswith(OVERLAY_KEY) for t in match.group(2).split()):
            return True
    return False


def patch_syslinux_config(text: str, cryptdevice: str) -> str:
    """Patch every LABEL section whose APPEND line carries ``cow_label=``."""
    lines: list[str] = []
    for section in _split_sections(text.splitlines()):
        if not _is_persistent_section(section):
            lines.extend(section)
            continue
        for line in section:
            append = _SYSLINUX_APPEND.match(line)
            menu_label = _SYSLINUX_MENU_LABEL.match(line)
            if append:
                line = f"{append.group(1)}{insert_kernel_parameter(append.group(2), cryptdevice)}"
            elif menu_label:
                line = f"{menu_label.group(1)}{mark_encrypted(menu_label.group(2))}"
            lines.append(line)
    return "\n".join(lines) + "\n"
