"""Environment-driven configuration."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional, Tuple

from .visibility import POLICIES

DEFAULT_CACHE_DIR = Path.home() / ".hilal" / "kernels"
# DE440s covers 1849-2150, which is ample for a Hijri month sequence.
DEFAULT_EPHEMERIS_URL = "https://naif.jpl.nasa.gov/pub/naif/generic_kernels/spk/planets/de440s.bsp"


@dataclass(frozen=True)
class Settings:
    """Runtime settings, see ``load_settings`` for the variables read."""

    bsp_override: Optional[Path] = None
    bsp_cache_dir: Path = DEFAULT_CACHE_DIR
    bsp_url: str = DEFAULT_EPHEMERIS_URL
    grid_resolution: float = 4.0
    n_jobs: int = 1
    policy: str = "relaxed"
    month_count: int = 12
    log_level: str = "INFO"
    cors_origins: Tuple[str, ...] = ()


def _number(env: Mapping[str, str], name: str, default, cast):
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return cast(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be a number, got {raw!r}") from exc


def load_settings(env: Optional[Mapping[str, str]] = None) -> Settings:
    """Build :class:`Settings` from ``HILAL_*`` environment variables."""

    env = os.environ if env is None else env
    override = env.get("HILAL_BSP")
    origins = env.get("HILAL_CORS_ORIGINS", "")
    policy = env.get("HILAL_POLICY", "relaxed").strip().lower()
    if policy not in POLICIES:
        raise ValueError(f"HILAL_POLICY must be one of {sorted(POLICIES)}, got {policy!r}")
    return Settings(
        bsp_override=Path(override).expanduser() if override else None,
        bsp_cache_dir=Path(env.get("HILAL_BSP_CACHE_DIR", str(DEFAULT_CACHE_DIR))).expanduser(),
        bsp_url=env.get("HILAL_BSP_URL", DEFAULT_EPHEMERIS_URL),
        grid_resolution=_number(env, "HILAL_GRID_RESOLUTION", 4.0, float),
        n_jobs=_number(env, "HILAL_N_JOBS", 1, int),
        policy=policy,
        month_count=_number(env, "HILAL_MONTH_COUNT", 12, int),
        log_level=env.get("HILAL_LOG_LEVEL", "INFO").upper(),
        cors_origins=tuple(origin.strip() for origin in origins.split(",") if origin.strip()),
    )
