"""First-boot autoexpand for shrunk images.

Writes an ``/etc/rc.local`` into the guest filesystem that grows the root
partition and filesystem to fill the SD card on the next boot, then puts the
guest's own ``rc.local`` back. An existing ``rc.local`` is kept as
``rc.local.bak`` so a failed run can be rolled back.
"""

from __future__ import annotations

import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from img_shrinker.domain.models import LoopDevice
from img_shrinker.logging import LoggerFactory
from img_shrinker.storage import mount
from img_shrinker.storage.exceptions import (
    AutoexpandError,
    MountError,
    UnmountFailedError,
)


log = LoggerFactory.for_storage("autoexpand")

AUTOEXPAND_MARKER = "## img-shrinker autoexpand ##"
RC_LOCAL = Path("etc") / "rc.local"
RC_LOCAL_BACKUP = Path("etc") / "rc.local.bak"

RC_LOCAL_SCRIPT = f"""#!/bin/bash
{AUTOEXPAND_MARKER}
restore_rc_local() {{
  rm -f /etc/rc.local
  if [ -f /etc/rc.local.bak ]; then
    cp -fp /etc/rc.local.bak /etc/rc.local
    /etc/rc.local
  fi
}}

expand_with_fdisk() {{
  ROOT_PART=$(mount | sed -n 's|^/dev/\\(.*\\) on / .*|\\1|p')
  PART_NUM=${{ROOT_PART#mmcblk0p}}
  if [ "$PART_NUM" = "$ROOT_PART" ]; then
    echo "$ROOT_PART is not an SD card. Don't know how to expand"
    return 0
  fi

  PART_START=$(parted /dev/mmcblk0 -ms unit s p | grep "^${{PART_NUM}}" | cut -f 2 -d: | sed 's/[^0-9]//g')
  [ "$PART_START" ] || return 1
  # fdisk reports an error because the mounted root keeps the old table in use
  fdisk /dev/mmcblk0 <<EOF
p
d
$PART_NUM
n
p
$PART_NUM
$PART_START

p
w
EOF

  cat <<EOF > /etc/rc.local &&
#!/bin/sh
echo "Expanding /dev/$ROOT_PART"
resize2fs /dev/$ROOT_PART
rm -f /etc/rc.local; cp -fp /etc/rc.local.bak /etc/rc.local && /etc/rc.local

EOF
  reboot
  exit
}}

expand_with_raspi_config() {{
  /usr/bin/env raspi-config --expand-rootfs || return 1
  rm -f /etc/rc.local; cp -fp /etc/rc.local.bak /etc/rc.local && /etc/rc.local
  reboot
  exit
}}

expand_with_raspi_config
echo "WARNING: Using backup expand..."
sleep 5
expand_with_fdisk
echo "ERROR: Expanding failed..."
sleep 5
restore_rc_local
exit 0
"""


@dataclass
class BootScriptState:
    """What autoexpand changed in the guest, for rollback."""

    injected: bool = False
    backup_created: bool = False


def inject(root: Path, state: Optional[BootScriptState] = None) -> BootScriptState:
    """Install the autoexpand ``rc.local`` under a mounted guest ``root``.

    ``state`` is updated as soon as each change lands, so a caller holding it
    knows about the backup even when a later write fails.

    Raises:
        AutoexpandError: If rc.local cannot be read, moved or written
    """
    if state is None:
        state = BootScriptState()
    if not (root / "etc").is_dir():
        log.info("/etc not found, autoexpand will not be enabled")
        return state

    rc_local = root / RC_LOCAL
    try:
        if not rc_local.is_file():
            log.info("An existing /etc/rc.local was not found, autoexpand may fail...")
        elif AUTOEXPAND_MARKER in rc_local.read_text(encoding="utf-8", errors="replace"):
            log.info("Autoexpand is already enabled")
            state.injected = True
            return state

        log.info("Creating new /etc/rc.local")
        if rc_local.is_file():
            rc_local.replace(root / RC_LOCAL_BACKUP)
            state.backup_created = True
        rc_local.write_text(RC_LOCAL_SCRIPT, encoding="utf-8")
        rc_local.chmod(0o755)
    except OSError as error:
        raise AutoexpandError(
            f"Could not install /etc/rc.local: {error}", path=str(rc_local)
        ) from error
    state.injected = True
    return state


def enable_autoexpand(
    device: LoopDevice, state: Optional[BootScriptState] = None
) -> BootScriptState:
    """Mount the guest filesystem and install the autoexpand script.

    Not being able to mount is not fatal: the image is shrunk anyway, it just
    will not grow on first boot.
    """
    if state is None:
        state = BootScriptState()
    try:
        with mount.mounted(device, options="rw") as root:
            return inject(root, state)
    except UnmountFailedError:
        raise
    except MountError as error:
        log.info(f"Unable to mount loopback, autoexpand will not be enabled ({error})")
        return state


def restore_backup(root: Path) -> bool:
    """Put the guest's original ``rc.local`` back from ``rc.local.bak``.

    The backup itself stays on disk for forensic recovery.

    Returns:
        True if a backup was found and restored
    """
    backup = root / RC_LOCAL_BACKUP
    if not backup.is_file():
        log.warning(f"No rc.local backup found under {root}")
        return False
    shutil.copy2(backup, root / RC_LOCAL)
    log.info("Restored original /etc/rc.local")
    return True
