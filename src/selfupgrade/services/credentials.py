"""Credential lookup for authenticated package feeds."""

import os
from abc import ABC, abstractmethod
from typing import Dict, Optional, Tuple

from selfupgrade.errors import UpgraderError
from selfupgrade.services.command_runner import CommandRunner

Credential = Tuple[str, str]


class CredentialStore(ABC):
    """Returns ``(username, password)`` for a URL, or ``None`` when nothing is stored."""

    @abstractmethod
    def get_credential(self, url: str) -> Optional[Credential]:
        ...


class NullCredentialStore(CredentialStore):
    def get_credential(self, url: str) -> Optional[Credential]:
        return None


class GitCredentialStore(CredentialStore):
    """Reads credentials through ``git credential fill``.

    Interactive prompts are disabled; a URL with no stored credential yields
    ``None`` instead of blocking on the terminal.
    """

    def __init__(self, command_runner: CommandRunner, logger, git_executable: str = "git"):
        self.command_runner = command_runner
        self.logger = logger
        self.git_executable = git_executable

    def get_credential(self, url: str) -> Optional[Credential]:
        env = dict(os.environ)
        env["GIT_TERMINAL_PROMPT"] = "0"

        try:
            result = self.command_runner.run(
                [self.git_executable, "credential", "fill"],
                check=False,
                capture_output=True,
                input_text=f"url={url}\n\n",
                env=env,
                timeout=30,
            )
        except UpgraderError as exc:
            self.logger.warning("Could not query git credential helper for %s: %s", url, exc)
            return None

        if result.returncode != 0:
            self.logger.debug("No stored credential for %s", url)
            return None

        fields = self.parse_credential_output(result.stdout or "")
        password = fields.get("password")
        if not password:
            return None
        return fields.get("username", ""), password

    @staticmethod
    def parse_credential_output(output: str) -> Dict[str, str]:
        fields: Dict[str, str] = {}
        for line in output.splitlines():
            key, sep, value = line.partition("=")
            if sep:
                fields[key.strip()] = value.strip()
        return fields
