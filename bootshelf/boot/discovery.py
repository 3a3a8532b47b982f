"""Boot menu discovery for image stores.

At boot time GRUB runs the script produced by render_discovery_script(): it
globs every GPT partition of the boot disk for
``<store-root>/<vendor>/<release>/active``, probes each candidate with a loop
mount and adds one menu entry per image that mounts.

The same algorithm is available in Python so a device's menu can be previewed
and tested without rebooting:

    $ sudo python -m bootshelf.boot.discovery /dev/sdb

Paths are decomposed by explicit segment parsing against the store layout
rather than by pattern matching on the whole string:

    (hd0,gpt2)/boot_images/acme/widget/active
    |________| |_________| |__________| |____|
    partition  store root     name      active file
"""

from __future__ import annotations

import sys
from pathlib import Path
from typing import Callable, Iterable, Mapping, Optional

from bootshelf.config import settings
from bootshelf.config.settings import ACTIVE_FILENAME, LOOPBACK_CONFIG_PATH
from bootshelf.domain import BootEntry, ImageName
from bootshelf.logging import LoggerFactory
from bootshelf.storage import devices
from bootshelf.storage.exceptions import InvalidNameError, MountError
from bootshelf.storage.mount import mounted


log = LoggerFactory.for_boot()

Probe = Callable[[Path], bool]


def decompose_root(root: str) -> tuple[str, str]:
    """Split a GRUB root device expression into disk and partition.

    >>> decompose_root("hd0,gpt1")
    ('hd0', 'gpt1')
    """
    value = root.strip()
    if value.startswith("(") and value.endswith(")"):
        value = value[1:-1]
    disk, sep, partition = value.rpartition(",")
    if not sep or not disk or not partition:
        raise ValueError(f"Not a partition root: {root!r}")
    return disk, partition


def candidate_glob(disk: str, store_root: Optional[str] = None) -> str:
    """GRUB glob matching the active image of every image on any GPT partition."""
    store_root = store_root or settings.get_setting("store_root")
    return f"({disk},gpt*)/{store_root}/*/*/{ACTIVE_FILENAME}"


def parse_image_path(path: str, store_root: Optional[str] = None) -> BootEntry:
    """Decompose the GRUB path of an active image into a BootEntry.

    Raises:
        ValueError: If path does not follow the store layout
    """
    store_root = store_root or settings.get_setting("store_root")
    if not path.startswith("("):
        raise ValueError(f"Missing device prefix: {path!r}")
    close = path.find(")")
    if close < 0:
        raise ValueError(f"Unterminated device prefix: {path!r}")
    partition = path[: close + 1]
    disk, _ = decompose_root(partition)

    segments = path[close + 1 :].split("/")
    if len(segments) != 5 or segments[0] != "":
        raise ValueError(f"Expected /{store_root}/<vendor>/<release>/{ACTIVE_FILENAME}: {path!r}")
    _, root_segment, vendor, release, filename = segments
    if root_segment != store_root or filename != ACTIVE_FILENAME:
        raise ValueError(f"Expected /{store_root}/<vendor>/<release>/{ACTIVE_FILENAME}: {path!r}")
    try:
        name = ImageName.parse(f"{vendor}/{release}")
    except InvalidNameError as error:
        raise ValueError(str(error)) from error

    return BootEntry(
        disk=disk,
        partition=partition,
        relative_path=f"/{store_root}/{vendor}/{release}",
        name=str(name),
    )


def probe_image(path: Path) -> bool:
    """Check that an image file loop-mounts; the probe mount is released at once."""
    try:
        with mounted(str(path), options=["loop", "ro"]):
            pass
    except (MountError, ValueError) as error:
        log.debug(f"Skipping {path}: {error}")
        return False
    return True


def discover_entries(
    partitions: Mapping[str, Path],
    store_root: Optional[str] = None,
    probe: Probe = probe_image,
) -> list[BootEntry]:
    """Build boot entries from mounted partitions.

    Args:
        partitions: GRUB partition expression (e.g. "(hd0,gpt2)") mapped to
            the directory it is mounted at
        store_root: Store root directory name
        probe: Returns False for candidates that must be skipped

    Returns:
        Entries sorted by partition then name; empty if nothing was found
    """
    store_root = store_root or settings.get_setting("store_root")
    entries = []
    for partition, mountpoint in partitions.items():
        for candidate in sorted(Path(mountpoint).glob(f"{store_root}/*/*/{ACTIVE_FILENAME}")):
            if not candidate.is_file() or not probe(candidate):
                continue
            relative = candidate.relative_to(mountpoint).as_posix()
            try:
                entry = parse_image_path(f"{partition}/{relative}", store_root)
            except ValueError as error:
                log.debug(f"Ignoring {candidate}: {error}")
                continue
            entries.append(entry)
    return sorted(entries, key=lambda entry: (entry.partition, entry.name))


def render_menu_entry(entry: BootEntry) -> str:
    """GRUB menuentry that boots the image through its own loopback.cfg."""
    return (
        f'menuentry "{entry.name}" "{entry.partition}" "{entry.image_path}" {{\n'
        "\tdev=$2\n"
        "\tiso_path=$3\n"
        "\texport iso_path\n"
        "\tloopback loop ${dev}${iso_path}\n"
        "\troot=(loop)\n"
        f"\tconfigfile {LOOPBACK_CONFIG_PATH}\n"
        "\tloopback -d loop\n"
        "}\n"
    )


def render_menu(entries: Iterable[BootEntry]) -> str:
    return "\n".join(render_menu_entry(entry) for entry in entries)


def render_discovery_script(store_root: Optional[str] = None) -> str:
    """GRUB script installed as the boot partition's grub.cfg."""
    store_root = store_root or settings.get_setting("store_root")
    return f"""\
theme=/boot/grub/themes/default/theme.txt
export theme

if ! keystatus --shift; then
\tinsmod efi_gop
\tinsmod efi_uga
\tinsmod gfxterm
\tterminal_output gfxterm
\tinsmod png
\tinsmod jpeg
fi

regexp -s 1:disk '^\\(?([^,]*),.*$' $root

for f in {candidate_glob('$disk', store_root)}; do
\tif ! loopback probe $f; then
\t\tcontinue
\tfi
\tloopback -d probe

\tregexp -s 1:dev '^(\\([^)]*\\)).*$' $f
\tregexp -s 2:path '^(\\([^)]*\\))(/.*)$' $f
\tregexp -s 2:name '^(/[^/]*/)([^/]*/[^/]*)(/[^/]*)$' $path

\tmenuentry $name $dev $path {{
\t\tdev=$2
\t\tiso_path=$3
\t\texport iso_path
\t\tloopback loop ${{dev}}${{iso_path}}
\t\troot=(loop)
\t\tconfigfile {LOOPBACK_CONFIG_PATH}
\t\tloopback -d loop
\t}}
done
"""


def grub_partition_name(disk: str, partition: dict) -> Optional[str]:
    number = devices.partition_number(partition)
    if number is None:
        return None
    return f"({disk},gpt{number})"


def preview(device: str, disk: str = "hd0") -> str:
    """Render the menu GRUB would build when booting from device."""
    tree = devices.get_device_tree(device)
    if not tree:
        raise ValueError(f"No such device: {device}")
    store_root = settings.get_setting("store_root")
    entries: list[BootEntry] = []
    for part in devices.iter_partitions(tree):
        name = grub_partition_name(disk, part)
        node = devices.partition_node(part)
        if not name or not node:
            continue
        try:
            with mounted(node, options=["ro"]) as mountpoint:
                entries.extend(discover_entries({name: mountpoint}, store_root))
        except MountError as error:
            log.debug(f"Skipping partition {node}: {error}")
    return render_menu(entries)


if __name__ == "__main__":
    if len(sys.argv) != 2:
        print(f"usage: python -m {__spec__.name} <device>", file=sys.stderr)
        sys.exit(1)
    settings.load_settings()
    print(preview(sys.argv[1]), end="")
