"""Download service with progress reporting."""

import os

import requests
from rich.progress import (
    BarColumn,
    DownloadColumn,
    Progress,
    SpinnerColumn,
    TextColumn,
    TimeElapsedColumn,
)

from selfupgrade.errors import FeedAuthenticationError, FeedError
from selfupgrade.errors_catalog import actionable_error

AUTH_STATUS_CODES = (401, 403)


def raise_for_feed_status(response, url: str):
    """Turn an HTTP error status into a feed error, keeping auth failures distinct."""
    status = response.status_code
    if status in AUTH_STATUS_CODES:
        raise FeedAuthenticationError(actionable_error("feed_authentication", url=url, status=str(status)))
    try:
        response.raise_for_status()
    except requests.HTTPError as exc:
        raise FeedError(f"Request to {url} failed: {exc}") from exc


class DownloadService:
    """Streams remote payloads to disk through an HTTP session."""

    def __init__(self, session, logger, console, timeout: float = 60.0):
        self.session = session
        self.logger = logger
        self.console = console
        self.timeout = timeout

    def download_file(self, url: str, dest_path: str, description: str = "Downloading..."):
        self.logger.info("Downloading %s to %s", url, dest_path)

        try:
            with self.session.get(url, stream=True, timeout=self.timeout) as response:
                raise_for_feed_status(response, url)
                total_size = int(response.headers.get("Content-Length", 0))

                os.makedirs(os.path.dirname(dest_path), exist_ok=True)

                with Progress(
                    SpinnerColumn(),
                    TextColumn("[progress.description]{task.description}"),
                    BarColumn(),
                    DownloadColumn(),
                    TimeElapsedColumn(),
                    console=self.console,
                    transient=True,
                ) as progress:
                    task = progress.add_task(f"[cyan]{description}", total=total_size or None)
                    with open(dest_path, "wb") as file_obj:
                        for chunk in response.iter_content(chunk_size=8192):
                            if not chunk:
                                continue
                            file_obj.write(chunk)
                            progress.update(task, advance=len(chunk))
        except requests.RequestException as exc:
            raise FeedError(f"Download failed for {url}: {exc}") from exc
