"""Configuration objects and constants for the migration pipeline."""

from __future__ import annotations

import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Dict, Mapping, Optional, Tuple

from .profiles import ClassifierRules, Discriminators, ImagePolicy, LinkRewrite, SiteProfile

DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)
DEFAULT_UPLOAD_BASE_URL = "/wp-content/uploads/{year}/{month}/"

POST_CONTENT_SELECTORS: Tuple[str, ...] = (
    ".blog-post-detail",
    ".entry-content",
    "article",
    ".post-content",
    ".ddc-span8",
    ".ddc-content",
    ".main-content",
    "#content",
    ".content",
)
PAGE_CONTENT_SELECTORS: Tuple[str, ...] = (
    ".main",
    "main",
    "#page-body",
    ".ddc-wrapper",
    ".ddc-span8",
    ".ddc-content",
    ".main-content",
    "#content",
    ".content",
)


def default_chain(content_type: Optional[str]) -> Tuple[str, ...]:
    """Built-in selector chain used when a profile declares none."""
    if content_type == "post":
        return POST_CONTENT_SELECTORS
    if content_type == "page":
        return PAGE_CONTENT_SELECTORS
    merged = list(POST_CONTENT_SELECTORS[:4])
    merged.extend(s for s in PAGE_CONTENT_SELECTORS if s not in merged)
    merged.extend(s for s in POST_CONTENT_SELECTORS if s not in merged)
    return tuple(merged)


@dataclass(frozen=True)
class FetchSettings:
    """Renderer behaviour for the content fetcher."""

    headless: bool = True
    timeout: float = 60.0
    max_retries: int = 2
    concurrency: int = 1
    wait_after_load: float = 3.0
    user_agent: str = DEFAULT_USER_AGENT
    retry_base_delay: float = 1.0


@dataclass
class MigrationConfig:
    """Top-level settings that do not change between runs."""

    output_root: Path
    fetch: FetchSettings = field(default_factory=FetchSettings)
    images: ImagePolicy = field(default_factory=ImagePolicy)
    bypass_images: bool = False
    sanitize_workers: int = 4
    import_max_rows: int = 1000
    import_max_bytes: int = 50 * 1024 * 1024
    upload_base_url: str = DEFAULT_UPLOAD_BASE_URL

    @classmethod
    def from_env(
        cls,
        output_root: Optional[Path] = None,
        environ: Optional[Mapping[str, str]] = None,
    ) -> "MigrationConfig":
        """Build a config from defaults overlaid with environment variables."""
        env = os.environ if environ is None else environ
        root = output_root or Path(env.get("WP_MIGRATE_OUTPUT", "output"))
        fetch = FetchSettings(
            headless=_env_bool(env, "SCRAPER_HEADLESS", True),
            timeout=_env_millis(env, "SCRAPER_TIMEOUT", 60.0),
            max_retries=_env_int(env, "SCRAPER_MAX_RETRIES", 2),
            concurrency=max(1, _env_int(env, "SCRAPER_CONCURRENCY", 1)),
            wait_after_load=_env_millis(env, "SCRAPER_WAIT_TIME", 3.0),
            user_agent=env.get("SCRAPER_USER_AGENT", DEFAULT_USER_AGENT),
        )
        images = ImagePolicy(
            max_concurrent=max(1, _env_int(env, "IMAGES_MAX_CONCURRENT", 5)),
            timeout=_env_millis(env, "IMAGES_TIMEOUT", 30.0),
            retry_attempts=_env_int(env, "IMAGES_RETRY_ATTEMPTS", 2),
            auto_convert_avif=_env_bool(env, "IMAGES_AUTO_CONVERT_AVIF", True),
        )
        return cls(
            output_root=Path(root).resolve(),
            fetch=fetch,
            images=images,
            bypass_images=_env_bool(env, "BYPASS_IMAGES", False),
        )


def _env_bool(env: Mapping[str, str], name: str, default: bool) -> bool:
    value = env.get(name)
    if value is None or value == "":
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _env_int(env: Mapping[str, str], name: str, default: int) -> int:
    value = env.get(name)
    if not value:
        return default
    try:
        return int(value)
    except ValueError:
        return default


def _env_millis(env: Mapping[str, str], name: str, default: float) -> float:
    """Read a millisecond value from the environment, returning seconds."""
    value = env.get(name)
    if not value:
        return default
    try:
        return int(value) / 1000.0
    except ValueError:
        return default


@dataclass(frozen=True)
class RunSettings:
    """Fully resolved, immutable configuration for one run.

    Built once from the run request, the site profile and the
    :class:`MigrationConfig`, then handed to every stage.
    """

    run_id: str
    output_root: Path
    urls: Tuple[str, ...]
    url_types: Dict[str, str]
    content_type: Optional[str]
    chain: Tuple[str, ...]
    chain_overrides: Dict[str, Tuple[str, ...]]
    remove_selectors: Tuple[str, ...]
    post_rules: ClassifierRules
    page_rules: ClassifierRules
    discriminators: Discriminators
    image_policy: ImagePolicy
    images_enabled: bool
    fetch: FetchSettings
    preserve_layout_classes: bool = True
    remove_all_classes: bool = False
    remove_all_ids: bool = True
    link_rewrites: Tuple[LinkRewrite, ...] = ()
    classifier_heuristic: str = "structural"
    sanitize_workers: int = 4
    import_max_rows: int = 1000
    import_max_bytes: int = 50 * 1024 * 1024
    upload_base_url: str = DEFAULT_UPLOAD_BASE_URL
    skip_fetch: bool = False
    skip_images: bool = False
    skip_sanitize: bool = False
    skip_generate: bool = False

    def rules_for(self, content_type: str) -> ClassifierRules:
        return self.post_rules if content_type == "post" else self.page_rules


def fetch_settings_for(profile: Optional[SiteProfile], base: FetchSettings) -> FetchSettings:
    if profile is None:
        return base
    overrides = profile.fetch
    changes = {}
    if overrides.wait_time is not None:
        changes["wait_after_load"] = overrides.wait_time
    if overrides.timeout is not None:
        changes["timeout"] = overrides.timeout
    if overrides.max_retries is not None:
        changes["max_retries"] = overrides.max_retries
    if overrides.user_agent:
        changes["user_agent"] = overrides.user_agent
    return replace(base, **changes) if changes else base
