"""Filesystem helpers for selfupgrade."""

import errno
import logging
import os
import shutil
import sys

from rich.console import Console


class FileSystemService:
    """Encapsulates file and directory side effects."""

    def __init__(self, logger: logging.Logger, console: Console):
        self.logger = logger
        self.console = console

    def set_permissions(self, path: str, mode: int):
        if sys.platform == "win32":
            return

        try:
            os.chmod(path, mode)
        except OSError as exc:
            self.logger.warning("Could not set permissions on %s: %s", path, exc)

    def reset_dir(self, path: str, mode: int):
        """Remove whatever is at ``path`` and recreate it as an empty directory.

        Leftovers from a crashed attempt (partial copies, stale lock files) are
        discarded. Errors propagate to the caller.
        """
        if os.path.islink(path) or os.path.isfile(path):
            os.remove(path)
        elif os.path.isdir(path):
            shutil.rmtree(path)

        os.makedirs(path, exist_ok=True)
        self.set_permissions(path, mode)
        self.logger.debug("Prepared directory: %s", path)

    def cleanup_dir(self, path: str) -> bool:
        if os.path.exists(path):
            try:
                shutil.rmtree(path)
                self.logger.debug("Removed directory: %s", path)
            except OSError as exc:
                message = f"Warning: Could not remove {path}: {exc}"
                self.console.print(f"[yellow]{message}[/yellow]")
                self.logger.warning(message)
                return False
        return True

    def copy_directory_recursive(self, source_dir: str, destination_dir: str):
        """Mirror ``source_dir`` into ``destination_dir``.

        Every file is copied, existing destination files are overwritten and
        symbolic links are recreated as links. The copy is not transactional:
        a failure leaves whatever was already copied in place.
        """
        source = os.path.realpath(source_dir)
        destination = os.path.realpath(destination_dir)

        if source == destination:
            raise OSError(errno.EINVAL, "Cannot copy a directory onto itself", source_dir)
        if not os.path.isdir(source):
            raise FileNotFoundError(errno.ENOENT, "Source directory not found", source_dir)

        os.makedirs(destination, exist_ok=True)

        for current_root, dirs, files in os.walk(source):
            relative_root = os.path.relpath(current_root, source)
            target_root = os.path.normpath(os.path.join(destination, relative_root))

            # Destination nested inside the source must not be copied into itself.
            dirs[:] = [
                name
                for name in dirs
                if os.path.realpath(os.path.join(current_root, name)) != destination
            ]

            for name in list(dirs):
                source_path = os.path.join(current_root, name)
                target_path = os.path.join(target_root, name)
                if os.path.islink(source_path):
                    self._copy_link(source_path, target_path)
                    dirs.remove(name)
                    continue
                # A leftover link or file must not redirect the copy outside the destination.
                if os.path.islink(target_path) or (os.path.lexists(target_path) and not os.path.isdir(target_path)):
                    self._remove_path(target_path)
                os.makedirs(target_path, exist_ok=True)

            for name in files:
                source_path = os.path.join(current_root, name)
                target_path = os.path.join(target_root, name)
                if os.path.islink(source_path):
                    self._copy_link(source_path, target_path)
                    continue
                self._copy_file(source_path, target_path)

        self.logger.debug("Copied %s to %s", source_dir, destination_dir)

    def _copy_file(self, source_path: str, target_path: str):
        if os.path.islink(target_path) or os.path.isdir(target_path):
            self._remove_path(target_path)
        shutil.copy2(source_path, target_path)

    def _copy_link(self, source_path: str, target_path: str):
        if os.path.lexists(target_path):
            self._remove_path(target_path)
        os.symlink(os.readlink(source_path), target_path)

    def _remove_path(self, path: str):
        if os.path.isdir(path) and not os.path.islink(path):
            shutil.rmtree(path)
        else:
            os.remove(path)
