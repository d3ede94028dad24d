"""Site profile schema and loading.

A site profile bundles the extraction, classification, removal and image
rules for one target site. Profiles are validated once when they are
loaded (including every CSS selector they carry) and are immutable
afterwards; the migration core only ever reads them.

Two input shapes are accepted: the flat shape used by profile files
(``extraction``, ``postRules``, ``pageRules``, ``removeSelectors``,
``imagePolicy``) and the nested dashboard shape
(``{"id", "name", "config": {"scraper", "blogPost", "page", "processor", "images"}}``).
"""

from __future__ import annotations

import json
import re
from pathlib import Path
from typing import Any, Dict, Iterable, Optional, Tuple

import soupsieve
import yaml
from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    field_validator,
    model_validator,
)

from .errors import ProfileError

DEFAULT_ALLOWED_FORMATS: Tuple[str, ...] = (
    ".jpg",
    ".jpeg",
    ".png",
    ".gif",
    ".webp",
    ".svg",
    ".ico",
    ".bmp",
    ".avif",
)

_PLAIN_CLASS_NAME = re.compile(r"^[.#\[]|[\s>+~\[]")


def _aliases(*names: str) -> AliasChoices:
    return AliasChoices(*names)


def normalize_discriminator(selector: Optional[str]) -> Optional[str]:
    """Treat a bare word such as ``blog-post`` as a class selector."""
    if selector is None:
        return None
    selector = selector.strip()
    if not selector:
        return None
    if not _PLAIN_CLASS_NAME.search(selector):
        return f".{selector}"
    return selector


def _check_selector(selector: str) -> str:
    try:
        soupsieve.compile(selector)
    except (soupsieve.SelectorSyntaxError, ValueError) as exc:
        raise ValueError(f"invalid CSS selector {selector!r}: {exc}") from exc
    return selector


def _selector_tuple(values: Any) -> Tuple[str, ...]:
    if values is None:
        return ()
    if isinstance(values, str):
        values = [values]
    cleaned = []
    for value in values:
        value = str(value).strip()
        if value:
            cleaned.append(_check_selector(value))
    return tuple(cleaned)


class _ProfileModel(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")


class Discriminators(_ProfileModel):
    """Selector pair whose presence in a fragment decides its content type."""

    post: Optional[str] = None
    page: Optional[str] = None

    @field_validator("post", "page", mode="before")
    @classmethod
    def _normalize(cls, value: Any) -> Optional[str]:
        selector = normalize_discriminator(value)
        return _check_selector(selector) if selector else None

    @property
    def configured(self) -> bool:
        return bool(self.post or self.page)


class ClassifierRules(_ProfileModel):
    """Per content type selectors used for extraction, metadata and removal."""

    content_selector: Optional[str] = Field(
        None, validation_alias=_aliases("contentSelector", "content_selector"),
        serialization_alias="contentSelector",
    )
    date_selector: Optional[str] = Field(
        None, validation_alias=_aliases("dateSelector", "date_selector"),
        serialization_alias="dateSelector",
    )
    title_selector: Optional[str] = Field(
        None, validation_alias=_aliases("titleSelector", "title_selector"),
        serialization_alias="titleSelector",
    )
    exclude_selectors: Tuple[str, ...] = Field(
        (), validation_alias=_aliases("excludeSelectors", "exclude_selectors"),
        serialization_alias="excludeSelectors",
    )
    discriminators: Discriminators = Field(default_factory=Discriminators)

    @field_validator("content_selector", "date_selector", "title_selector", mode="before")
    @classmethod
    def _single_selector(cls, value: Any) -> Optional[str]:
        if value is None or not str(value).strip():
            return None
        return _check_selector(str(value).strip())

    @field_validator("exclude_selectors", mode="before")
    @classmethod
    def _selector_list(cls, value: Any) -> Tuple[str, ...]:
        return _selector_tuple(value)


class ImagePolicy(_ProfileModel):
    """Download, concurrency and format rules for the image stage."""

    enabled: bool = True
    max_concurrent: int = Field(
        5, ge=1, validation_alias=_aliases("maxConcurrent", "max_concurrent"),
        serialization_alias="maxConcurrent",
    )
    timeout: float = Field(30.0, gt=0)
    retry_attempts: int = Field(
        2, ge=0, validation_alias=_aliases("retryAttempts", "retry_attempts"),
        serialization_alias="retryAttempts",
    )
    allowed_formats: Tuple[str, ...] = Field(
        DEFAULT_ALLOWED_FORMATS,
        validation_alias=_aliases("allowedFormats", "allowed_formats"),
        serialization_alias="allowedFormats",
    )
    auto_convert_avif: bool = Field(
        True, validation_alias=_aliases("autoConvertAvif", "auto_convert_avif"),
        serialization_alias="autoConvertAvif",
    )

    @field_validator("timeout", mode="before")
    @classmethod
    def _timeout_seconds(cls, value: Any) -> Any:
        # Dashboard profiles store milliseconds.
        if isinstance(value, (int, float)) and value > 600:
            return value / 1000.0
        return value

    @field_validator("allowed_formats", mode="before")
    @classmethod
    def _normalize_formats(cls, value: Any) -> Tuple[str, ...]:
        if value is None:
            return DEFAULT_ALLOWED_FORMATS
        if isinstance(value, str):
            value = [value]
        formats = []
        for item in value:
            item = str(item).strip().lower()
            if not item:
                continue
            formats.append(item if item.startswith(".") else f".{item}")
        return tuple(formats)

    def allows(self, extension: str) -> bool:
        extension = extension.lower()
        if not extension.startswith("."):
            extension = f".{extension}"
        if extension in self.allowed_formats:
            return True
        return extension == ".jpg" and ".jpeg" in self.allowed_formats


class LinkRewrite(_ProfileModel):
    """Regex substitution applied to internal link targets."""

    pattern: str
    replacement: str

    @field_validator("pattern")
    @classmethod
    def _compile(cls, value: str) -> str:
        try:
            re.compile(value)
        except re.error as exc:
            raise ValueError(f"invalid link rewrite pattern {value!r}: {exc}") from exc
        return value

    def apply(self, href: str) -> str:
        return re.sub(self.pattern, self.replacement, href)


class FetchOverrides(_ProfileModel):
    """Per-site adjustments to the renderer settings."""

    wait_time: Optional[float] = Field(
        None, validation_alias=_aliases("waitTime", "wait_time"), serialization_alias="waitTime"
    )
    timeout: Optional[float] = None
    max_retries: Optional[int] = Field(
        None, ge=0, validation_alias=_aliases("maxRetries", "max_retries"),
        serialization_alias="maxRetries",
    )
    user_agent: Optional[str] = Field(
        None, validation_alias=_aliases("userAgent", "user_agent"), serialization_alias="userAgent"
    )

    @field_validator("wait_time", "timeout", mode="before")
    @classmethod
    def _milliseconds(cls, value: Any) -> Any:
        if isinstance(value, (int, float)) and value > 600:
            return value / 1000.0
        return value


class SiteProfile(_ProfileModel):
    """Named bundle of extraction, classification, removal and image rules."""

    id: Optional[str] = None
    name: str = "default"
    provider: Optional[str] = None
    extraction: Tuple[str, ...] = Field(
        (), validation_alias=_aliases("extraction", "contentSelectors", "content_selectors")
    )
    post_rules: ClassifierRules = Field(
        default_factory=ClassifierRules,
        validation_alias=_aliases("postRules", "post_rules", "blogPost"),
        serialization_alias="postRules",
    )
    page_rules: ClassifierRules = Field(
        default_factory=ClassifierRules,
        validation_alias=_aliases("pageRules", "page_rules", "page"),
        serialization_alias="pageRules",
    )
    remove_selectors: Tuple[str, ...] = Field(
        (),
        validation_alias=_aliases("removeSelectors", "remove_selectors", "customRemoveSelectors"),
        serialization_alias="removeSelectors",
    )
    image_policy: Optional[ImagePolicy] = Field(
        None,
        validation_alias=_aliases("imagePolicy", "image_policy", "images"),
        serialization_alias="imagePolicy",
    )
    fetch: FetchOverrides = Field(
        default_factory=FetchOverrides, validation_alias=_aliases("fetch", "scraper")
    )
    preserve_layout_classes: bool = Field(
        True,
        validation_alias=_aliases(
            "preserveLayoutClasses", "preserve_layout_classes", "preserveBootstrapClasses"
        ),
        serialization_alias="preserveLayoutClasses",
    )
    remove_all_classes: bool = Field(
        False, validation_alias=_aliases("removeAllClasses", "remove_all_classes"),
        serialization_alias="removeAllClasses",
    )
    remove_all_ids: bool = Field(
        True, validation_alias=_aliases("removeAllIds", "remove_all_ids"),
        serialization_alias="removeAllIds",
    )
    link_rewrites: Tuple[LinkRewrite, ...] = Field(
        (), validation_alias=_aliases("linkRewrites", "link_rewrites"),
        serialization_alias="linkRewrites",
    )
    classifier_heuristic: str = Field(
        "structural",
        validation_alias=_aliases("classifierHeuristic", "classifier_heuristic"),
        serialization_alias="classifierHeuristic",
    )

    @model_validator(mode="before")
    @classmethod
    def _flatten_dashboard_shape(cls, data: Any) -> Any:
        if not isinstance(data, dict) or not isinstance(data.get("config"), dict):
            return data
        config = data["config"]
        flat: Dict[str, Any] = {k: v for k, v in data.items() if k != "config"}
        scraper = config.get("scraper") or {}
        processor = config.get("processor") or {}
        flat.setdefault("provider", config.get("provider"))
        if scraper.get("contentSelectors"):
            flat["extraction"] = scraper["contentSelectors"]
        flat["fetch"] = {k: v for k, v in scraper.items() if k != "contentSelectors"}
        for source, target in (("blogPost", "postRules"), ("page", "pageRules")):
            if config.get(source):
                flat[target] = config[source]
        if config.get("images"):
            flat["imagePolicy"] = config["images"]
        for key in ("customRemoveSelectors", "preserveBootstrapClasses", "removeAllClasses", "removeAllIds"):
            if key in processor:
                flat[key] = processor[key]
        for key in ("linkRewrites", "classifierHeuristic"):
            if key in config:
                flat[key] = config[key]
        return flat

    @field_validator("extraction", "remove_selectors", mode="before")
    @classmethod
    def _selector_list(cls, value: Any) -> Tuple[str, ...]:
        return _selector_tuple(value)

    def rules_for(self, content_type: str) -> ClassifierRules:
        return self.post_rules if content_type == "post" else self.page_rules

    def discriminators(self) -> Discriminators:
        """Post/page discriminators, preferring the ones declared under post rules."""
        post = self.post_rules.discriminators
        page = self.page_rules.discriminators
        return Discriminators(post=post.post or page.post, page=post.page or page.page)

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


def parse_profile(data: Dict[str, Any]) -> SiteProfile:
    """Validate a profile mapping, raising :class:`ProfileError` on failure."""
    try:
        return SiteProfile.model_validate(data)
    except ValidationError as exc:
        name = data.get("name", "<unnamed>") if isinstance(data, dict) else "<unnamed>"
        raise ProfileError(f"Invalid site profile {name}: {exc}") from exc


def load_profile(path: Path) -> SiteProfile:
    """Load a site profile from a JSON or YAML file."""
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise ProfileError(f"Cannot read site profile {path}: {exc}") from exc
    try:
        if path.suffix.lower() in {".yaml", ".yml"}:
            data = yaml.safe_load(text)
        else:
            data = json.loads(text)
    except (yaml.YAMLError, json.JSONDecodeError) as exc:
        raise ProfileError(f"Cannot parse site profile {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise ProfileError(f"Site profile {path} must contain a mapping")
    return parse_profile(data)


def merge_selectors(*groups: Iterable[str]) -> Tuple[str, ...]:
    """Union selector lists, keeping first-seen order."""
    merged = []
    for group in groups:
        for selector in group:
            if selector and selector not in merged:
                merged.append(selector)
    return tuple(merged)
