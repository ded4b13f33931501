"""Read-only page snapshot consumed by the detection engine."""

from __future__ import annotations

from dataclasses import dataclass, field
from functools import cached_property
from typing import Mapping

from bs4 import BeautifulSoup, Tag

from ..utils.origins import resolve_url, url_hostname, url_origin

RESOURCE_SELECTOR = "[src], link[rel~=stylesheet][href]"


@dataclass(frozen=True)
class FormInfo:
    """A form on the page with its action resolved against the base URL."""

    action: str
    raw_action: str = ""
    method: str = "get"
    has_password_field: bool = False


@dataclass(frozen=True)
class PageSnapshot:
    """Point-in-time view of a rendered page.

    Built fresh for every scan. Parsed views (soup, forms, resources) are
    derived lazily from the serialized markup and cached on the instance.
    """

    url: str
    html: str = ""
    referrer: str = ""
    headers: Mapping[str, str] = field(default_factory=dict)

    @classmethod
    def from_html(
        cls,
        url: str,
        html: str,
        referrer: str = "",
        headers: Mapping[str, str] | None = None,
    ) -> "PageSnapshot":
        normalized = {str(k).lower(): str(v) for k, v in (headers or {}).items()}
        return cls(url=url, html=html or "", referrer=referrer or "", headers=normalized)

    @property
    def origin(self) -> str:
        return url_origin(self.url)

    @property
    def referrer_origin(self) -> str:
        return url_origin(self.referrer)

    @property
    def hostname(self) -> str:
        return url_hostname(self.url)

    @cached_property
    def soup(self) -> BeautifulSoup:
        return BeautifulSoup(self.html, "html.parser")

    @cached_property
    def base_url(self) -> str:
        base = self.soup.find("base", href=True)
        if isinstance(base, Tag):
            return resolve_url(self.url, str(base["href"]))
        return self.url

    def select(self, selector: str) -> list[Tag]:
        """CSS selector query; raises soupsieve errors on malformed selectors."""
        return self.soup.select(selector)

    def _form_info(self, form: Tag) -> FormInfo:
        raw_action = str(form.get("action") or "")
        return FormInfo(
            action=resolve_url(self.base_url, raw_action),
            raw_action=raw_action,
            method=str(form.get("method") or "get").lower(),
            has_password_field=form.select_one('input[type="password" i]') is not None,
        )

    def forms_matching(self, selector: str = "form") -> list[FormInfo]:
        """Forms matched by a selector (non-form matches are ignored)."""
        return [self._form_info(tag) for tag in self.select(selector) if tag.name == "form"]

    @cached_property
    def forms(self) -> tuple[FormInfo, ...]:
        return tuple(self.forms_matching("form"))

    @cached_property
    def resource_urls(self) -> tuple[str, ...]:
        """Script, image and stylesheet URLs resolved against the base URL."""
        urls: list[str] = []
        for node in self.select(RESOURCE_SELECTOR):
            raw = node.get("src") if node.has_attr("src") else node.get("href")
            raw = str(raw or "").strip()
            if raw:
                urls.append(resolve_url(self.base_url, raw))
        return tuple(urls)

    @cached_property
    def has_password_field(self) -> bool:
        return self.soup.select_one('input[type="password" i]') is not None

    def header(self, name: str) -> str | None:
        return self.headers.get(name.lower())
