"""Tests for boot/discovery.py - boot menu entries from the store layout."""

from __future__ import annotations

from contextlib import contextmanager
from unittest.mock import patch

import pytest

from bootshelf.boot import discovery
from bootshelf.boot.discovery import (
    candidate_glob,
    decompose_root,
    discover_entries,
    parse_image_path,
    render_discovery_script,
    render_menu,
    render_menu_entry,
)
from bootshelf.domain import BootEntry
from bootshelf.storage.exceptions import MountError


def always(_path):
    return True


def make_image(root, vendor, release, content=b"iso"):
    directory = root / "boot_images" / vendor / release
    directory.mkdir(parents=True, exist_ok=True)
    (directory / "active").write_bytes(content)
    return directory / "active"


class TestDecomposeRoot:
    @pytest.mark.parametrize(
        "root,expected",
        [
            ("hd0,gpt1", ("hd0", "gpt1")),
            ("(hd1,gpt2)", ("hd1", "gpt2")),
            ("hd0,msdos1", ("hd0", "msdos1")),
        ],
    )
    def test_valid(self, root, expected):
        assert decompose_root(root) == expected

    @pytest.mark.parametrize("root", ["hd0", ",gpt1", "hd0,", ""])
    def test_invalid(self, root):
        with pytest.raises(ValueError):
            decompose_root(root)


class TestParseImagePath:
    def test_standard_path(self):
        entry = parse_image_path("(hd0,gpt2)/boot_images/acme/widget/active")

        assert entry == BootEntry(
            disk="hd0",
            partition="(hd0,gpt2)",
            relative_path="/boot_images/acme/widget",
            name="acme/widget",
        )
        assert entry.image_path == "/boot_images/acme/widget/active"

    def test_custom_store_root(self):
        entry = parse_image_path("(hd1,gpt3)/isos/nitrux/stable/active", store_root="isos")
        assert entry.name == "nitrux/stable"
        assert entry.disk == "hd1"

    @pytest.mark.parametrize(
        "path",
        [
            "/boot_images/acme/widget/active",
            "(hd0,gpt2/boot_images/acme/widget/active",
            "(hd0,gpt2)/boot_images/acme/active",
            "(hd0,gpt2)/boot_images/acme/widget/extra/active",
            "(hd0,gpt2)/other/acme/widget/active",
            "(hd0,gpt2)/boot_images/acme/widget/backup",
            "(hd0,gpt2)/boot_images/acme/wid.get/active",
            "(hd0)/boot_images/acme/widget/active",
        ],
    )
    def test_rejects_paths_outside_layout(self, path):
        with pytest.raises(ValueError):
            parse_image_path(path)


class TestDiscoverEntries:
    def test_no_partitions(self):
        assert discover_entries({}, probe=always) == []

    def test_partition_without_store(self, tmp_path):
        assert discover_entries({"(hd0,gpt1)": tmp_path}, probe=always) == []

    def test_one_entry_per_image(self, tmp_path):
        data = tmp_path / "data"
        make_image(data, "acme", "widget")
        make_image(data, "acme", "gadget")
        make_image(data, "zeta", "one")

        entries = discover_entries({"(hd0,gpt2)": data}, probe=always)

        assert [entry.name for entry in entries] == ["acme/gadget", "acme/widget", "zeta/one"]
        assert all(entry.partition == "(hd0,gpt2)" for entry in entries)
        assert entries[1].grub_path == "(hd0,gpt2)/boot_images/acme/widget/active"

    def test_sorted_by_partition_then_name(self, tmp_path):
        first = tmp_path / "p2"
        second = tmp_path / "p3"
        make_image(second, "acme", "alpha")
        make_image(first, "zeta", "one")

        entries = discover_entries({"(hd0,gpt3)": second, "(hd0,gpt2)": first}, probe=always)

        assert [(e.partition, e.name) for e in entries] == [
            ("(hd0,gpt2)", "zeta/one"),
            ("(hd0,gpt3)", "acme/alpha"),
        ]

    def test_probe_failures_are_skipped(self, tmp_path):
        data = tmp_path / "data"
        good = make_image(data, "acme", "widget")
        make_image(data, "acme", "corrupt")

        entries = discover_entries({"(hd0,gpt2)": data}, probe=lambda path: path == good)

        assert [entry.name for entry in entries] == ["acme/widget"]

    def test_ignores_backups_and_invalid_names(self, tmp_path):
        data = tmp_path / "data"
        active = make_image(data, "acme", "widget")
        (active.parent / "backup").write_bytes(b"old")
        make_image(data, "acme", "bad.name")
        (data / "boot_images" / "acme" / "dir-only" / "active").mkdir(parents=True)

        entries = discover_entries({"(hd0,gpt2)": data}, probe=always)

        assert [entry.name for entry in entries] == ["acme/widget"]


class TestProbeImage:
    def test_mountable_image(self, tmp_path):
        @contextmanager
        def fake_mounted(source, options=None):
            assert options == ["loop", "ro"]
            yield tmp_path

        with patch("bootshelf.boot.discovery.mounted", fake_mounted):
            assert discovery.probe_image(tmp_path / "active") is True

    def test_unmountable_image(self, tmp_path):
        @contextmanager
        def fake_mounted(source, options=None):
            raise MountError("not an iso")
            yield

        with patch("bootshelf.boot.discovery.mounted", fake_mounted):
            assert discovery.probe_image(tmp_path / "active") is False


class TestRendering:
    def test_menu_entry(self):
        entry = parse_image_path("(hd0,gpt2)/boot_images/acme/widget/active")

        text = render_menu_entry(entry)

        assert text.startswith(
            'menuentry "acme/widget" "(hd0,gpt2)" "/boot_images/acme/widget/active" {\n'
        )
        assert "\tloopback loop ${dev}${iso_path}\n" in text
        assert "\tconfigfile /boot/grub/loopback.cfg\n" in text
        assert text.rstrip().endswith("}")

    def test_empty_menu(self):
        assert render_menu([]) == ""

    def test_menu_has_one_entry_per_image(self):
        entries = [
            parse_image_path("(hd0,gpt2)/boot_images/acme/widget/active"),
            parse_image_path("(hd0,gpt2)/boot_images/zeta/one/active"),
        ]
        assert render_menu(entries).count("menuentry ") == 2

    def test_candidate_glob(self):
        assert candidate_glob("hd0") == "(hd0,gpt*)/boot_images/*/*/active"
        assert candidate_glob("$disk", "isos") == "($disk,gpt*)/isos/*/*/active"

    def test_discovery_script(self):
        script = render_discovery_script()

        assert "for f in ($disk,gpt*)/boot_images/*/*/active; do" in script
        assert "loopback probe $f" in script
        assert "configfile /boot/grub/loopback.cfg" in script
        assert "${dev}${iso_path}" in script
        assert script.count("{") == script.count("}")


class TestPreview:
    @patch("bootshelf.boot.discovery.devices.get_device_tree")
    def test_builds_menu_from_device(self, mock_tree, tmp_path, mock_shelf_device):
        mock_tree.return_value = mock_shelf_device
        boot = tmp_path / "sdb1"
        data = tmp_path / "sdb2"
        boot.mkdir()
        make_image(data, "acme", "widget")
        mountpoints = {"/dev/sdb1": boot, "/dev/sdb2": data}

        @contextmanager
        def fake_mounted(source, options=None):
            if source in mountpoints:
                yield mountpoints[source]
            else:
                yield tmp_path

        with patch("bootshelf.boot.discovery.mounted", fake_mounted):
            menu = discovery.preview("/dev/sdb")

        assert menu.count("menuentry ") == 1
        assert '"acme/widget" "(hd0,gpt2)"' in menu

    @patch("bootshelf.boot.discovery.devices.get_device_tree", return_value=None)
    def test_unknown_device(self, _tree):
        with pytest.raises(ValueError):
            discovery.preview("/dev/nope")
