"""
HTTP artifact fetches performed in-process by the orchestrator.
"""
from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Optional

import requests
from tqdm import tqdm

logger = logging.getLogger(__name__)


class DownloadError(OSError):
    """An artifact could not be fetched."""


def download_file(
    url: str,
    destination: Path,
    *,
    chunk_size: int = 1 << 20,
    timeout: float = 60.0,
    session: Optional[requests.Session] = None,
) -> Path:
    """
    Stream ``url`` to ``destination``, replacing any existing file.

    The body is written to ``<destination>.part`` first and renamed on success,
    so an interrupted fetch never leaves a truncated file under the final name.
    """
    if session is None:
        with requests.Session() as owned:
            return download_file(url, destination, chunk_size=chunk_size, timeout=timeout, session=owned)

    partial = destination.with_name(destination.name + ".part")
    destination.parent.mkdir(parents=True, exist_ok=True)

    logger.info("Downloading %s -> %s", url, destination)
    try:
        with session.get(url, stream=True, timeout=timeout) as response:
            response.raise_for_status()
            total = int(response.headers.get("Content-Length", 0)) or None
            with partial.open("wb") as handle, tqdm(
                total=total,
                unit="B",
                unit_scale=True,
                desc=destination.name,
                dynamic_ncols=True,
            ) as progress:
                for chunk in response.iter_content(chunk_size):
                    if chunk:
                        handle.write(chunk)
                        progress.update(len(chunk))
    except requests.RequestException as exc:
        partial.unlink(missing_ok=True)
        raise DownloadError(f"Failed to download {url}: {exc}") from exc
    except BaseException:
        partial.unlink(missing_ok=True)
        raise

    os.replace(partial, destination)
    return destination


__all__ = ["DownloadError", "download_file"]
