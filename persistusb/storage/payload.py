"""Payload installation onto the freshly formatted partitions.

Steps:
    copy_image_tree()        full image copy onto the live partition (#1)
    install_esp_assets()     boot files, EFI tree and ESP templates onto #2,
                             with label placeholders substituted
    install_persistence()    overlay skeleton onto #3, active and pristine copies
    regenerate_initramfs()   encryption only: rebuild the initramfs with the
                             ``encrypt`` hook inside an overlay of the live root

Label Substitution:
    Template files listed in the medium descriptor carry placeholders:
        %IMG_LABEL%  label of the live partition
        %ESP_LABEL%  label of the ESP
        %COW_LABEL%  label of the persistence filesystem
    Assignments of the image's own label (``archisolabel=LIVE_2026``) are
    rewritten to the live partition label. The match stops at word
    characters and hyphens, so a second pass changes nothing.

Copy failures raise CopyError; initramfs failures raise EncryptionError.
"""

from __future__ import annotations

import re
import shutil
from pathlib import Path
from typing import Mapping

from persistusb.domain import MediumDescriptor, TargetLabels
from persistusb.logging import LoggerFactory
from persistusb.storage.commands import run_command
from persistusb.storage.exceptions import CopyError, EncryptionError
from persistusb.storage.medium import MEDIUM_DATA_DIR
from persistusb.storage.mount import WorkingTree


log = LoggerFactory.for_device()

ESP_TEMPLATE_DIR = MEDIUM_DATA_DIR / "esp"
EFI_DIR = "EFI"
MKINITCPIO_CONF = Path("etc") / "mkinitcpio.conf"
ENCRYPT_HOOK = "encrypt"
FILESYSTEMS_HOOK = "filesystems"

_HOOKS_LINE = re.compile(r"^(\s*HOOKS=\()([^)]*)(\).*)$", re.MULTILINE)


def label_tokens(labels: TargetLabels) -> dict[str, str]:
    return {
        "%IMG_LABEL%": labels.image,
        "%ESP_LABEL%": labels.esp,
        "%COW_LABEL%": labels.persistence,
    }


def substitute_text(
    text: str, tokens: Mapping[str, str], iso_label: str = "", image_label: str = ""
) -> str:
    for token, value in tokens.items():
        text = text.replace(token, value)
    if iso_label and image_label:
        pattern = re.compile(r"=" + re.escape(iso_label) + r"(?![\w-])")
        text = pattern.sub(lambda _: f"={image_label}", text)
    return text


def substitute_file(
    path: Path, tokens: Mapping[str, str], iso_label: str = "", image_label: str = ""
) -> bool:
    """Substitute placeholders in ``path``; returns True when it changed."""
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as error:
        raise CopyError(f"Cannot read template {path}", detail=str(error)) from error
    updated = substitute_text(text, tokens, iso_label, image_label)
    if updated == text:
        return False
    try:
        path.write_text(updated, encoding="utf-8")
    except OSError as error:
        raise CopyError(f"Cannot write template {path}", detail=str(error)) from error
    log.debug(f"Substituted labels in {path}")
    return True


def copy_tree(source: Path, destination: Path, *, dereference: bool = False) -> None:
    """Copy the contents of ``source`` into ``destination`` with cp."""
    try:
        destination.parent.mkdir(parents=True, exist_ok=True)
    except OSError as error:
        raise CopyError(f"Cannot create {destination.parent}", detail=str(error)) from error
    flags = "-LrT" if dereference else "-rT"
    run_command(["cp", flags, str(source), str(destination)], error=CopyError)


def copy_image_tree(image_root: Path, live_root: Path) -> None:
    log.info("Copying image contents to the live partition...")
    copy_tree(image_root, live_root)


def install_esp_assets(
    image_root: Path, esp_root: Path, medium: MediumDescriptor, labels: TargetLabels
) -> None:
    """Populate the ESP and substitute labels in its boot entries.

    Raises:
        CopyError: Missing boot directory, failed copy or unreadable template
    """
    log.info("Installing boot files to the ESP...")
    boot_dir = Path(medium.install_dir) / "boot"
    if not (image_root / boot_dir).is_dir():
        raise CopyError(f"Image has no {boot_dir} directory")
    copy_tree(image_root / boot_dir, esp_root / boot_dir, dereference=True)
    for optional, destination in (
        (image_root / EFI_DIR, esp_root / EFI_DIR),
        (image_root / ESP_TEMPLATE_DIR, esp_root),
    ):
        if optional.is_dir():
            copy_tree(optional, destination, dereference=True)
        else:
            log.debug(f"Image has no {optional.relative_to(image_root)}, skipping")

    tokens = label_tokens(labels)
    for relative in medium.esp_files:
        substitute_file(esp_root / relative, tokens, medium.iso_label, labels.image)


def install_persistence(
    image_root: Path, persistence_root: Path, medium: MediumDescriptor, labels: TargetLabels
) -> Path:
    """Lay down the overlay tree and its pristine origin copy.

    Returns:
        Path of the active persistence directory
    """
    log.info("Configuring persistence...")
    skeleton = image_root / MEDIUM_DATA_DIR / medium.persistence_dir_name
    if not skeleton.is_dir():
        raise CopyError(f"Image has no persistence skeleton {skeleton.relative_to(image_root)}")
    active = persistence_root / labels.persistence_dir_name
    copy_tree(skeleton, active)
    copy_tree(skeleton, persistence_root / labels.origin_dir_name)

    for name in ("upperdir", "workdir"):
        try:
            (active / medium.arch / name).mkdir(parents=True, exist_ok=True)
        except OSError as error:
            raise CopyError(f"Cannot create overlay {name}", detail=str(error)) from error

    tokens = {"%ESP_LABEL%": labels.esp}
    for relative in medium.persistence_files:
        substitute_file(active / relative, tokens)
    return active


def add_encrypt_hook(text: str) -> str:
    """Insert ``encrypt`` into HOOKS=(...) before ``filesystems``.

    Raises:
        EncryptionError: No HOOKS array in the config
    """
    match = _HOOKS_LINE.search(text)
    if not match:
        raise EncryptionError(f"No HOOKS=(...) entry in {MKINITCPIO_CONF}")
    hooks = match.group(2).split()
    if ENCRYPT_HOOK in hooks:
        return text
    if FILESYSTEMS_HOOK in hooks:
        hooks.insert(hooks.index(FILESYSTEMS_HOOK), ENCRYPT_HOOK)
    else:
        hooks.append(ENCRYPT_HOOK)
    return f"{text[:match.start()]}{match.group(1)}{' '.join(hooks)}{match.group(3)}{text[match.end():]}"


def regenerate_initramfs(
    tree: WorkingTree,
    live_root: Path,
    persistence_root: Path,
    esp_root: Path,
    medium: MediumDescriptor,
    labels: TargetLabels,
) -> list[Path]:
    """Rebuild the initramfs so the live system can unlock the container.

    The live root filesystem image is mounted read-only as the lower layer
    of an overlay whose upper and work dirs are the fresh persistence tree.
    Both mounts are released before returning.

    Returns:
        Initramfs images copied onto the ESP
    """
    log.info("Regenerating initramfs with the encrypt hook...")
    rootfs_image = live_root / medium.install_dir / medium.rootfs_image
    if not rootfs_image.is_file():
        raise EncryptionError(f"Root filesystem image {rootfs_image} not found")
    active = persistence_root / labels.persistence_dir_name / medium.arch
    boot_target = esp_root / medium.install_dir / "boot" / medium.arch

    with tree.scope():
        lower = tree.mount(rootfs_image, "rootfs", options="ro,loop")
        overlay = tree.mount(
            "overlay",
            "overlay",
            fstype="overlay",
            options=(
                f"lowerdir={lower},upperdir={active / 'upperdir'},"
                f"workdir={active / 'workdir'}"
            ),
        )

        conf = overlay / MKINITCPIO_CONF
        try:
            text = conf.read_text(encoding="utf-8")
            updated = add_encrypt_hook(text)
            if updated != text:
                conf.write_text(updated, encoding="utf-8")
        except OSError as error:
            raise EncryptionError(f"Cannot update {MKINITCPIO_CONF}", detail=str(error)) from error

        run_command(
            ["arch-chroot", str(overlay), "mkinitcpio", "-P"], error=EncryptionError
        )

        images = sorted((overlay / "boot").glob("initramfs-*.img"))
        if not images:
            raise EncryptionError("mkinitcpio produced no initramfs images")
        copied = []
        try:
            boot_target.mkdir(parents=True, exist_ok=True)
            for image in images:
                destination = boot_target / image.name
                shutil.copyfile(image, destination)
                log.debug(f"Copied {image.name} to {destination}")
                copied.append(destination)
        except OSError as error:
            raise EncryptionError("Cannot copy initramfs to the ESP", detail=str(error)) from error
    return copied
