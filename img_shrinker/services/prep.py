"""Guest cleanup before shrinking (``-p`` and ``-o``).

Removes per-machine state and logs from the guest filesystem so the image
can be handed out. Only deletes files; sizing is unaffected apart from the
space freed.
"""

from __future__ import annotations

import shutil
from pathlib import Path
from typing import Iterable

from img_shrinker.domain.models import LoopDevice
from img_shrinker.logging import LoggerFactory
from img_shrinker.storage import mount
from img_shrinker.storage.exceptions import PrepError


log = LoggerFactory.for_storage("prep")

# Globs relative to the guest root; matches are removed recursively.
SYSPREP_PATTERNS = (
    "var/cache/apt/archives/*",
    "var/lib/dhcpcd/*",
    "var/tmp/*",
    "tmp/*",
    "etc/ssh/*_host_*",
)

SSH_KEYGEN_SERVICE = "regenerate_ssh_host_keys.service"

OPENWB_ROOT = "var/www/html/openWB"
OPENWB_PATTERNS = (
    f"{OPENWB_ROOT}/data/charge_log/*",
    f"{OPENWB_ROOT}/data/daily_log/*",
    f"{OPENWB_ROOT}/data/monthly_log/*",
    f"{OPENWB_ROOT}/data/log/*",
    f"{OPENWB_ROOT}/data/backup/*",
    f"{OPENWB_ROOT}/data/restore/*",
    f"{OPENWB_ROOT}/data/data_migration/*",
    "var/lib/mosquitto/mosquitto.db",
    "var/lib/mosquitto_local/mosquitto.db",
)
OPENWB_HOME_FILES = (".bash_history", "configuration.json", "snnumber")


def _remove(path: Path) -> None:
    if path.is_dir() and not path.is_symlink():
        shutil.rmtree(path)
    else:
        path.unlink()


def remove_matching(root: Path, patterns: Iterable[str]) -> int:
    """Remove everything under ``root`` matching ``patterns``.

    Returns:
        Number of top-level matches removed
    """
    removed = 0
    for pattern in patterns:
        for path in sorted(root.glob(pattern)):
            _remove(path)
            removed += 1
    return removed


def sysprep(root: Path) -> int:
    """Remove logs, apt archives, dhcp leases and ssh host keys.

    Host keys are regenerated on first boot when the guest ships the
    ``regenerate_ssh_host_keys`` service; the service is enabled here.
    """
    log.info("Syspreping: Removing logs, apt archives, dhcp leases and ssh hostkeys")
    removed = remove_matching(root, SYSPREP_PATTERNS)

    log_dir = root / "var" / "log"
    if log_dir.is_dir():
        for path in sorted(log_dir.rglob("*")):
            if path.is_file() or path.is_symlink():
                path.unlink()
                removed += 1

    service = root / "lib" / "systemd" / "system" / SSH_KEYGEN_SERVICE
    wants = root / "etc" / "systemd" / "system" / "multi-user.target.wants"
    link = wants / SSH_KEYGEN_SERVICE
    if service.is_file() and not link.is_symlink():
        wants.mkdir(parents=True, exist_ok=True)
        link.symlink_to(Path("/lib/systemd/system") / SSH_KEYGEN_SERVICE)
    return removed


def openwb_prep(root: Path) -> int:
    log.info(
        "openWB: Removing logs, chart data, backup files, restore files, data "
        "migration files, mqtt broker store, python cache directories, bash "
        "history, configuration file and serial number file"
    )
    removed = remove_matching(root, OPENWB_PATTERNS)

    openwb = root / OPENWB_ROOT
    if openwb.is_dir():
        for cache in sorted(openwb.rglob("__pycache__"), reverse=True):
            if cache.is_dir():
                shutil.rmtree(cache)
                removed += 1

    home = root / "home"
    if home.is_dir():
        for path in sorted(home.rglob("*")):
            if path.name in OPENWB_HOME_FILES and path.is_file():
                path.unlink()
                removed += 1
    return removed


def run_prep(device: LoopDevice, *, sysprep_enabled: bool, openwb_enabled: bool) -> int:
    """Mount the guest once and run the requested cleanups.

    Raises:
        MountError: If the filesystem cannot be mounted or unmounted
        PrepError: If a guest file cannot be removed
    """
    removed = 0
    with mount.mounted(device) as root:
        try:
            if sysprep_enabled:
                removed += sysprep(root)
            if openwb_enabled:
                removed += openwb_prep(root)
        except OSError as error:
            raise PrepError(
                f"Removing guest files failed: {error}", path=error.filename
            ) from error
    log.debug(f"Prep removed {removed} entries")
    return removed
