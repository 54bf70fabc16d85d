"""Configuration loading, writing, and data directory initialization.

Reads TOML config files using stdlib ``tomllib`` and writes them using
``tomli_w``.  Depends only on ``models.py``.

Two files live in the data root:

- ``config.toml`` -- ``[general]`` settings plus one ``[[profiles]]`` table
  per sync profile.  A profile may carry a ``[profiles.categories]`` table
  overriding the default taxonomy.
- ``categories.toml`` -- the process-wide default taxonomy, one table per
  category group.
"""

from __future__ import annotations

import os
import sys
from pathlib import Path

if sys.version_info >= (3, 11):
    import tomllib
else:
    try:
        import tomllib
    except ModuleNotFoundError:
        import tomli as tomllib  # type: ignore[no-redef]

import tomli_w

from ledger_sync.models import AppConfig, CategoryGroup, SyncProfile

PROVIDER_URL_ENV = "INVESTEC_BASE_URL"

# ---------------------------------------------------------------------------
# Default file content
# ---------------------------------------------------------------------------

_DEFAULT_CONFIG_TOML = """\
# ledger-sync configuration

[general]
data_dir = "data"
max_log_entries = 100
purge_work_dir = false
isolation = "process"           # "process" or "thread"
provider_base_url = "https://openapi.investec.com"
batch_size = 200
lookback_days = 365

# One table per sync profile.
# [[profiles]]
# id = "personal"
# name = "Personal"
# enabled = true
# client_id = ""
# secret_id = ""
# api_key = ""
# server_url = "http://localhost:5006"
# budget_id = ""
# password = ""
# schedule = "0 0 * * *"        # cron expression, empty for manual only
#
# Optional per-profile taxonomy override:
# [profiles.categories]
# "Food" = ["Groceries", "Restaurants"]
"""

_DEFAULT_CATEGORIES_TOML = """\
# Default category taxonomy -- created in the ledger if missing, never removed

[Income]
categories = ["Salary", "Interest", "Other Income"]

[Housing]
categories = ["Rent/Bond", "Rates & Levies", "Maintenance"]

[Utilities]
categories = ["Electricity & Water", "Internet", "Mobile Phone"]

[Food]
categories = ["Groceries", "Restaurants", "Takeaways", "Coffee"]

[Transport]
categories = ["Fuel", "Parking & Tolls", "Ride Hailing", "Vehicle Service"]

[Health]
categories = ["Medical Aid", "Doctor", "Pharmacy"]

[Lifestyle]
categories = ["Entertainment", "Subscriptions", "Clothing", "Gifts"]

[Financial]
categories = ["Bank Fees", "Insurance", "Savings"]
"""

# Directories that ``initialize`` creates, relative to the root.
_INIT_DIRS = [
    "data",
    "data/work",
]


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def load_config(root: Path) -> AppConfig:
    """Load ``config.toml`` from *root* and return an :class:`AppConfig`.

    The ``INVESTEC_BASE_URL`` environment variable, when set, overrides the
    configured provider base URL.

    Args:
        root: Data root directory containing ``config.toml``.

    Returns:
        A fully-populated :class:`AppConfig` instance.

    Raises:
        FileNotFoundError: If ``config.toml`` does not exist.
        ValueError: If a profile id is empty, ``"."`` or ``".."``.
    """
    data = _read_toml(root / "config.toml")
    general = data.get("general", {})

    profiles = [_profile_from_dict(p) for p in data.get("profiles", [])]

    provider_base_url = os.environ.get(PROVIDER_URL_ENV) or general.get(
        "provider_base_url", "https://openapi.investec.com"
    )

    return AppConfig(
        profiles=profiles,
        data_dir=general.get("data_dir", "data"),
        max_log_entries=int(general.get("max_log_entries", 100)),
        purge_work_dir=bool(general.get("purge_work_dir", False)),
        isolation=general.get("isolation", "process"),
        provider_base_url=provider_base_url.rstrip("/"),
        batch_size=int(general.get("batch_size", 200)),
        lookback_days=int(general.get("lookback_days", 365)),
    )


def load_categories(root: Path) -> list[CategoryGroup]:
    """Load ``categories.toml`` and return the default taxonomy.

    Args:
        root: Data root directory containing ``categories.toml``.

    Returns:
        One :class:`CategoryGroup` per table, preserving file order.  An
        absent file yields an empty taxonomy.
    """
    path = root / "categories.toml"
    if not path.exists():
        return []
    data = _read_toml(path)
    return [
        CategoryGroup(name=name, categories=list(section.get("categories", [])))
        for name, section in data.items()
        if isinstance(section, dict)
    ]


def load_settings(root: Path) -> tuple[AppConfig, list[CategoryGroup]]:
    """Load both the configuration and the default taxonomy."""
    return load_config(root), load_categories(root)


def save_config(root: Path, config: AppConfig) -> None:
    """Write *config* back to ``config.toml``.

    Every string value is trimmed and trailing slashes are removed from
    server URLs before writing.  Comments in the existing file are not
    preserved.

    Args:
        root: Data root directory.
        config: The configuration to persist.
    """
    general = {
        "data_dir": config.data_dir,
        "max_log_entries": config.max_log_entries,
        "purge_work_dir": config.purge_work_dir,
        "isolation": config.isolation,
        "provider_base_url": config.provider_base_url.strip().rstrip("/"),
        "batch_size": config.batch_size,
        "lookback_days": config.lookback_days,
    }
    document = {
        "general": general,
        "profiles": [_profile_to_dict(p) for p in config.profiles],
    }
    (root / "config.toml").write_text(tomli_w.dumps(document), encoding="utf-8")


def initialize(target_dir: Path) -> None:
    """Create the data directory structure and default config files.

    Idempotent: existing directories are left alone and existing files
    are **not** overwritten.

    Args:
        target_dir: The directory in which to create the structure.
    """
    target_dir = Path(target_dir)
    target_dir.mkdir(parents=True, exist_ok=True)

    for d in _INIT_DIRS:
        (target_dir / d).mkdir(parents=True, exist_ok=True)

    _write_if_missing(target_dir / "config.toml", _DEFAULT_CONFIG_TOML)
    _write_if_missing(target_dir / "categories.toml", _DEFAULT_CATEGORIES_TOML)


def validate_profile_id(profile_id: str) -> str:
    """Return the trimmed *profile_id*.

    Raises:
        ValueError: If the id is empty, ``"."`` or ``".."``.
    """
    value = str(profile_id).strip()
    if value in ("", ".", ".."):
        raise ValueError(f"Invalid profile id {profile_id!r}")
    return value


def effective_taxonomy(
    profile: SyncProfile, default: list[CategoryGroup]
) -> list[CategoryGroup]:
    """Return the profile's taxonomy override, or *default* if it has none."""
    if profile.categories is not None:
        return profile.categories
    return default


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------


def _read_toml(path: Path) -> dict:
    """Read and parse a TOML file."""
    with open(path, "rb") as f:
        return tomllib.load(f)


def _profile_from_dict(data: dict) -> SyncProfile:
    """Build a :class:`SyncProfile` from one ``[[profiles]]`` table."""
    categories = data.get("categories")
    taxonomy = None
    if isinstance(categories, dict):
        taxonomy = [
            CategoryGroup(name=group, categories=[str(c) for c in names])
            for group, names in categories.items()
        ]

    return SyncProfile(
        id=validate_profile_id(data["id"]),
        name=str(data.get("name", data["id"])).strip(),
        enabled=bool(data.get("enabled", True)),
        client_id=str(data.get("client_id", "")).strip(),
        secret_id=str(data.get("secret_id", "")).strip(),
        api_key=str(data.get("api_key", "")).strip(),
        server_url=str(data.get("server_url", "")).strip().rstrip("/"),
        budget_id=str(data.get("budget_id", "")).strip(),
        password=str(data.get("password", "")).strip(),
        schedule=str(data.get("schedule", "")).strip(),
        categories=taxonomy,
    )


def _profile_to_dict(profile: SyncProfile) -> dict:
    """Serialize a profile, trimming strings and normalising the URL."""
    data: dict = {
        "id": profile.id.strip(),
        "name": profile.name.strip(),
        "enabled": profile.enabled,
        "client_id": profile.client_id.strip(),
        "secret_id": profile.secret_id.strip(),
        "api_key": profile.api_key.strip(),
        "server_url": profile.server_url.strip().rstrip("/"),
        "budget_id": profile.budget_id.strip(),
        "password": profile.password.strip(),
        "schedule": profile.schedule.strip(),
    }
    if profile.categories is not None:
        data["categories"] = {
            group.name.strip(): [c.strip() for c in group.categories]
            for group in profile.categories
        }
    return data


def _write_if_missing(path: Path, content: str) -> None:
    """Write *content* to *path* only if the file does not already exist."""
    if not path.exists():
        path.write_text(content, encoding="utf-8")
