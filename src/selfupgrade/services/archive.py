"""Package extraction helpers for selfupgrade."""

import os
import shutil
import zipfile
from pathlib import Path

from selfupgrade.errors import PackageVerificationError


class ArchiveService:
    """Extracts ``.nupkg`` payloads without letting entries escape the target."""

    def is_within_dir(self, base_dir: Path, candidate: Path) -> bool:
        try:
            return os.path.commonpath([str(base_dir), str(candidate)]) == str(base_dir)
        except ValueError:
            return False

    def safe_extract_zip(self, zip_path: str, destination_dir: str):
        base = Path(destination_dir).resolve()

        try:
            with zipfile.ZipFile(zip_path, "r") as zip_ref:
                members = zip_ref.infolist()
                for member in members:
                    target_path = self._member_target(base, member)

                    if not self.is_within_dir(base, target_path):
                        raise PackageVerificationError(
                            f"Unsafe package entry detected: `{member.filename}`. "
                            "Extraction aborted to prevent path traversal."
                        )

                    file_type = (member.external_attr >> 16) & 0o170000
                    if file_type == 0o120000:
                        raise PackageVerificationError(
                            f"Unsafe package entry detected: `{member.filename}` is a symbolic link."
                        )

                for member in members:
                    target_path = self._member_target(base, member)

                    if member.is_dir():
                        target_path.mkdir(parents=True, exist_ok=True)
                        continue

                    target_path.parent.mkdir(parents=True, exist_ok=True)
                    with zip_ref.open(member, "r") as src, open(target_path, "wb") as dst:
                        shutil.copyfileobj(src, dst)
        except zipfile.BadZipFile as exc:
            raise PackageVerificationError(f"Invalid package archive: {zip_path}") from exc

    def read_member(self, zip_path: str, member_name: str) -> bytes:
        try:
            with zipfile.ZipFile(zip_path, "r") as zip_ref:
                return zip_ref.read(member_name)
        except KeyError as exc:
            raise PackageVerificationError(f"Package {zip_path} has no entry `{member_name}`.") from exc
        except zipfile.BadZipFile as exc:
            raise PackageVerificationError(f"Invalid package archive: {zip_path}") from exc

    def list_names(self, zip_path: str):
        try:
            with zipfile.ZipFile(zip_path, "r") as zip_ref:
                return zip_ref.namelist()
        except zipfile.BadZipFile as exc:
            raise PackageVerificationError(f"Invalid package archive: {zip_path}") from exc

    @staticmethod
    def _member_target(base: Path, member: zipfile.ZipInfo) -> Path:
        # NuGet escapes spaces and other characters in entry names.
        normalized_name = member.filename.replace("\\", "/").replace("%20", " ")
        return (base / normalized_name).resolve()
