"""Chroot-scoped command execution."""

from opi_imagegen.chroot.executor import ChrootExecutor

__all__ = ["ChrootExecutor"]
