"""Locating and downloading the DE kernel the SPICE provider reads."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Optional

import httpx

from .settings import Settings, load_settings

LOGGER = logging.getLogger(__name__)

DEFAULT_EPHEMERIS_FILENAME = "de440s.bsp"
CHUNK_SIZE = 1 << 20


class EphemerisAcquisitionError(RuntimeError):
    """Raised when no usable kernel exists and none could be downloaded."""


def _fetch_kernel(url: str, destination: Path) -> Path:
    """Stream *url* into *destination*, publishing the file only once complete."""

    destination.parent.mkdir(parents=True, exist_ok=True)
    partial = destination.with_name(destination.name + ".part")
    LOGGER.info(json.dumps({"event": "ephemeris_downloading", "url": url, "destination": str(destination)}))
    try:
        with httpx.stream("GET", url, timeout=httpx.Timeout(120.0, connect=30.0), follow_redirects=True) as response:
            response.raise_for_status()
            expected = int(response.headers.get("Content-Length", "0")) or None
            written = 0
            with partial.open("wb") as handle:
                for chunk in response.iter_bytes(chunk_size=CHUNK_SIZE):
                    written += handle.write(chunk)
    except (httpx.HTTPError, OSError) as exc:  # pragma: no cover - network only.
        partial.unlink(missing_ok=True)
        raise EphemerisAcquisitionError(f"Failed to download ephemeris from {url}: {exc}") from exc

    if written == 0 or (expected is not None and written != expected):
        partial.unlink(missing_ok=True)
        raise EphemerisAcquisitionError(
            f"Incomplete kernel download from {url}: got {written} bytes, expected {expected}"
        )
    partial.replace(destination)

    LOGGER.info(
        json.dumps({"event": "ephemeris_downloaded", "destination": str(destination), "bytes": written})
    )
    return destination


def _kernel_path(path: Path, url: str) -> Path:
    """A ``.bsp`` file or a directory holding one, downloading into it when empty."""

    if path.is_dir():
        if not any(candidate.suffix.lower() == ".bsp" for candidate in path.iterdir()):
            _fetch_kernel(url, path / DEFAULT_EPHEMERIS_FILENAME)
        return path
    if path.is_file():
        if path.suffix.lower() != ".bsp":
            raise EphemerisAcquisitionError(f"Ephemeris file must have .bsp extension: {path}")
        return path
    if path.exists():
        raise EphemerisAcquisitionError(f"Ephemeris path is not a file or directory: {path}")
    # Missing: a .bsp name is the file to create, anything else a directory.
    if path.suffix.lower() == ".bsp":
        return _fetch_kernel(url, path)
    _fetch_kernel(url, path / DEFAULT_EPHEMERIS_FILENAME)
    return path


def resolve_ephemeris_source(settings: Optional[Settings] = None) -> Path:
    """Path to hand to :func:`hilal.astro.load_ephemeris`.

    ``HILAL_BSP`` wins when set; otherwise the kernel cached under
    ``HILAL_BSP_CACHE_DIR`` is used, fetched from ``HILAL_BSP_URL`` the first
    time.
    """

    settings = settings or load_settings()
    if settings.bsp_override is not None:
        return _kernel_path(settings.bsp_override, settings.bsp_url)
    return _kernel_path(settings.bsp_cache_dir / DEFAULT_EPHEMERIS_FILENAME, settings.bsp_url)
