"""Wrappers around the external storage tools (losetup, parted, e2fsprogs, mount)."""
