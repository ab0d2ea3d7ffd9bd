"""Actionable error catalog for selfupgrade."""

from typing import Dict

_ERROR_MESSAGES: Dict[str, Dict[str, str]] = {
    "insecure_http": {
        "what": "{label} uses insecure HTTP.",
        "next": "Switch to HTTPS or use `--allow-insecure-http` only for trusted endpoints.",
    },
    "missing_config_key": {
        "what": "Required configuration key `{key}` is not set.",
        "next": "Add `{key}` to the upgrade configuration file and retry.",
    },
    "feed_authentication": {
        "what": "The feed at {url} rejected the request (HTTP {status}).",
        "next": "Store credentials for {url} with `git credential approve` or set `upgrade.credentialUrl`.",
    },
    "staging_permission_denied": {
        "what": "File copy error - {detail}",
        "next": "Make sure you have write permissions to directory {path} and run {command} again.",
    },
    "installer_failed": {
        "what": "Installer {name} exited with code {exit_code}.",
        "next": "Inspect the installer log output and run {command} again.",
    },
}


def actionable_error(code: str, **kwargs: str) -> str:
    if code not in _ERROR_MESSAGES:
        raise KeyError(f"Unknown error catalog key: {code}")

    template = _ERROR_MESSAGES[code]
    what = template["what"].format(**kwargs)
    next_step = template["next"].format(**kwargs)
    return f"{what} Suggested action: {next_step}"
