"""Materialize an image file from a local path or a URL.

Strategies, tried in order for a URL:

    *.zsync URL     zsync delta transfer (using the basis file when given),
                    then a plain download of the URL without ".zsync"
    other URLs      plain HTTP(S) download with aiohttp

Plain downloads land in ``<dest>.part`` and resume from it with an HTTP Range
request when an attempt breaks off, so a retry continues where the previous
attempt stopped. zsync works on ``<dest>.delta`` (and its own
``<dest>.delta.part``), so its partly filled output never looks like a
download prefix. Staging files are discarded when a fetch starts, fails or is
interrupted. The destination is only ever replaced by an atomic rename, never
written in place. If every strategy fails, FetchError is raised and the
destination is untouched.
"""

from __future__ import annotations

import asyncio
import os
import shutil
import subprocess
import time
from pathlib import Path
from typing import Callable, Optional
from urllib.parse import urlparse

import aiohttp

from bootshelf.config import settings
from bootshelf.config.settings import DELTA_STAGING_SUFFIX, DELTA_SUFFIX, PARTIAL_SUFFIX
from bootshelf.logging import LoggerFactory, ThrottledLogger
from bootshelf.storage.devices import run_command
from bootshelf.storage.exceptions import FetchError


log = LoggerFactory.for_fetch()

ZSYNC_PREFIX = "zsync|"


class TransferError(Exception):
    """Raised when a single transfer strategy fails."""


def is_url(source: str) -> bool:
    return urlparse(source).scheme in {"http", "https"}


def is_delta_url(source: str) -> bool:
    return is_url(source) and source.endswith(DELTA_SUFFIX)


def strip_delta_suffix(url: str) -> str:
    if url.endswith(DELTA_SUFFIX):
        return url[: -len(DELTA_SUFFIX)]
    return url


def normalize_locator(text: str) -> str:
    """Turn an embedded update locator into a fetchable URL."""
    text = text.strip()
    if text.startswith(ZSYNC_PREFIX):
        text = text[len(ZSYNC_PREFIX):].strip()
    return text


def partial_path(dest: Path) -> Path:
    return dest.with_name(dest.name + PARTIAL_SUFFIX)


def delta_path(dest: Path) -> Path:
    return dest.with_name(dest.name + DELTA_STAGING_SUFFIX)


def staging_paths(dest: Path) -> list[Path]:
    """Every temporary file a fetch into dest may create."""
    delta = delta_path(dest)
    return [
        partial_path(dest),
        delta,
        partial_path(delta),
        delta.with_name(delta.name + ".zs-old"),
    ]


def discard_staging(dest: Path) -> None:
    for path in staging_paths(dest):
        path.unlink(missing_ok=True)


def copy_file(source: Path, dest: Path) -> None:
    """Copy source to dest through a partial file and an atomic rename."""
    staging = partial_path(dest)
    try:
        shutil.copyfile(source, staging)
        os.replace(staging, dest)
    except BaseException:
        staging.unlink(missing_ok=True)
        raise


class Fetcher:
    """Fetcher capability used by deploy and update."""

    def __init__(
        self,
        *,
        retries: Optional[int] = None,
        retry_delay: Optional[float] = None,
        timeout_seconds: Optional[int] = None,
        chunk_size: Optional[int] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.retries = max(1, retries if retries is not None else settings.get_int("fetch_retries", 3))
        self.retry_delay = (
            retry_delay
            if retry_delay is not None
            else settings.get_int("fetch_retry_delay_seconds", 5)
        )
        self.timeout_seconds = timeout_seconds or settings.get_int("fetch_timeout_seconds", 3600)
        self.chunk_size = chunk_size or settings.get_int("fetch_chunk_size", 1024 * 1024)
        self._sleep = sleep

    def fetch(self, source: str, dest: Path, basis: Optional[Path] = None) -> None:
        """Materialize dest from source.

        Args:
            source: HTTP(S) URL, optionally of a .zsync control file
            dest: Destination file path; replaced atomically on success
            basis: Optional local file holding an older version of the content

        Raises:
            FetchError: If every strategy failed
        """
        dest = Path(dest)
        if not is_url(source):
            raise FetchError(source, "not an http(s) URL")

        # Leftovers of an earlier run may belong to another version.
        discard_staging(dest)
        try:
            self._fetch(source, dest, basis)
        finally:
            discard_staging(dest)

    def _fetch(self, source: str, dest: Path, basis: Optional[Path]) -> None:
        failures: list[str] = []
        if is_delta_url(source):
            try:
                self.fetch_delta(source, dest, basis)
                return
            except TransferError as error:
                log.warning(f"Delta transfer failed, falling back to full download: {error}")
                failures.append(f"zsync: {error}")
                discard_staging(dest)
            source_plain = strip_delta_suffix(source)
        else:
            source_plain = source

        try:
            self.fetch_bulk(source_plain, dest)
            return
        except TransferError as error:
            failures.append(f"download: {error}")
        raise FetchError(source, "; ".join(failures))

    def fetch_delta(self, url: str, dest: Path, basis: Optional[Path] = None) -> None:
        """Run zsync against url, seeding from basis when it exists.

        zsync writes to a staging file next to dest, which replaces dest only
        once zsync has verified the whole file.
        """
        if not shutil.which("zsync"):
            raise TransferError("zsync not found")
        staging = delta_path(dest)
        command = ["zsync"]
        if basis is not None and Path(basis).is_file():
            command.extend(["-i", str(basis)])
        command.extend(["-o", str(staging), url])
        log.info(f"Delta transfer of {url}")
        try:
            run_command(command, log_output=False)
        except (subprocess.CalledProcessError, OSError) as error:
            stderr = getattr(error, "stderr", None) or str(error)
            raise TransferError(stderr.strip()) from error
        if not staging.is_file():
            raise TransferError(f"zsync did not produce {staging}")
        os.replace(staging, dest)

    def fetch_bulk(self, url: str, dest: Path) -> None:
        """Download url to dest, resuming and retrying up to self.retries times.

        The partial file is only resumed across the attempts of this call;
        it is removed when the download finally fails or is interrupted.
        """
        staging = partial_path(dest)
        staging.unlink(missing_ok=True)
        try:
            self._download_with_retries(url, staging)
        except BaseException:
            staging.unlink(missing_ok=True)
            raise
        os.replace(staging, dest)
        log.success(f"Downloaded {url}")

    def _download_with_retries(self, url: str, staging: Path) -> None:
        last_error: Optional[Exception] = None
        for attempt in range(1, self.retries + 1):
            log.info(f"Downloading {url} (attempt {attempt}/{self.retries})")
            try:
                asyncio.run(self._download(url, staging))
                return
            except (aiohttp.ClientError, asyncio.TimeoutError, OSError, TransferError) as error:
                last_error = error
                log.warning(f"Download attempt {attempt}/{self.retries} failed: {error}")
                if attempt < self.retries:
                    self._sleep(self.retry_delay)
        raise TransferError(str(last_error))

    async def _download(self, url: str, staging: Path) -> None:
        offset = staging.stat().st_size if staging.exists() else 0
        headers = {"Range": f"bytes={offset}-"} if offset else {}
        timeout = aiohttp.ClientTimeout(total=self.timeout_seconds)
        progress = ThrottledLogger(log.bind(tags=["fetch", "progress"]))
        chunks = log.bind(tags=["fetch", "chunk"])

        async with aiohttp.ClientSession(timeout=timeout) as session:
            async with session.get(url, headers=headers) as resp:
                if resp.status == 416 and offset:
                    if resp.headers.get("Content-Range", "").endswith(f"/{offset}"):
                        # Partial file already holds the whole content.
                        return
                    staging.unlink(missing_ok=True)
                    raise TransferError(f"Range not satisfiable for {url}, restarting")
                if resp.status == 206 and offset:
                    mode = "ab"
                    log.debug(f"Resuming {url} at byte {offset}")
                elif resp.status == 200:
                    mode = "wb"
                    offset = 0
                else:
                    raise TransferError(f"HTTP {resp.status} for {url}")

                total = resp.content_length
                if total is not None:
                    total += offset
                written = offset
                with open(staging, mode) as handle:
                    async for chunk in resp.content.iter_chunked(self.chunk_size):
                        handle.write(chunk)
                        written += len(chunk)
                        chunks.trace(f"Wrote {len(chunk)} bytes, {written} total")
                        if total:
                            progress.info(
                                url,
                                f"Downloaded {written * 100 // total}% of {url}",
                            )

                if total is not None and written < total:
                    raise TransferError(f"Connection closed after {written} of {total} bytes")
