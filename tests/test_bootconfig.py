"""Tests for storage/bootconfig.py - persistence boot entry rewriting."""

from persistusb.storage import bootconfig

CRYPT = "cryptdevice=UUID=1111-2222:persistcrypt"


class TestInsertKernelParameter:
    def test_inserted_before_overlay_argument(self):
        result = bootconfig.insert_kernel_parameter(
            "archisobasedir=live cow_label=LIVEPAB12 quiet", CRYPT
        )
        assert result == f"archisobasedir=live {CRYPT} cow_label=LIVEPAB12 quiet"

    def test_appended_without_overlay_argument(self):
        assert bootconfig.insert_kernel_parameter("quiet", CRYPT) == f"quiet {CRYPT}"

    def test_existing_value_replaced(self):
        result = bootconfig.insert_kernel_parameter(
            "cryptdevice=UUID=old:old cow_label=X", CRYPT
        )
        assert result == f"{CRYPT} cow_label=X"


class TestMarkEncrypted:
    def test_appends_marker(self):
        assert bootconfig.mark_encrypted("Live persistent") == "Live persistent encrypted"

    def test_idempotent(self):
        assert bootconfig.mark_encrypted("Live persistent encrypted") == "Live persistent encrypted"

    def test_word_ending_in_marker_is_not_marked(self):
        assert bootconfig.mark_encrypted("Live Unencrypted") == "Live Unencrypted encrypted"


class TestPatchLoaderEntry:
    ENTRY = (
        "title    Live persistent (x86_64, UEFI)\n"
        "linux    /live/boot/x86_64/vmlinuz-linux\n"
        "options  archisobasedir=live archisolabel=LIVE_AB12 cow_label=LIVEPAB12\n"
    )

    def test_patch(self):
        result = bootconfig.patch_loader_entry(self.ENTRY, CRYPT)

        assert "title    Live persistent (x86_64, UEFI) encrypted\n" in result
        assert (
            f"options  archisobasedir=live archisolabel=LIVE_AB12 {CRYPT} cow_label=LIVEPAB12\n"
            in result
        )
        assert "linux    /live/boot/x86_64/vmlinuz-linux\n" in result

    def test_idempotent(self):
        once = bootconfig.patch_loader_entry(self.ENTRY, CRYPT)
        twice = bootconfig.patch_loader_entry(once, CRYPT)

        assert twice == once
        assert twice.count("cryptdevice=") == 1
        assert twice.count("encrypted") == 1


class TestPatchSyslinuxConfig:
    CONFIG = (
        "DEFAULT live\n"
        "\n"
        "LABEL live\n"
        "MENU LABEL Live (x86_64, BIOS)\n"
        "APPEND archisobasedir=live archisolabel=LIVE_AB12\n"
        "\n"
        "LABEL live_persistence\n"
        "MENU LABEL Live persistent (x86_64, BIOS)\n"
        "APPEND archisobasedir=live archisolabel=LIVE_AB12 cow_label=LIVEPAB12\n"
    )

    def test_only_persistent_section_patched(self):
        result = bootconfig.patch_syslinux_config(self.CONFIG, CRYPT)

        assert "MENU LABEL Live (x86_64, BIOS)\n" in result
        assert "APPEND archisobasedir=live archisolabel=LIVE_AB12\n" in result
        assert "MENU LABEL Live persistent (x86_64, BIOS) encrypted\n" in result
        assert f"APPEND archisobasedir=live archisolabel=LIVE_AB12 {CRYPT} cow_label=LIVEPAB12\n" in result

    def test_idempotent(self):
        once = bootconfig.patch_syslinux_config(self.CONFIG, CRYPT)
        twice = bootconfig.patch_syslinux_config(once, CRYPT)

        assert twice == once
        assert twice.count("cryptdevice=") == 1

    def test_case_insensitive_directives(self):
        config = "label p\n  menu label Persistent\n  append cow_label=X\n"

        result = bootconfig.patch_syslinux_config(config, CRYPT)

        assert "  menu label Persistent encrypted\n" in result
        assert f"  append {CRYPT} cow_label=X\n" in result
