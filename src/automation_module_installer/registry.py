from __future__ import annotations

import logging
import re
import xml.etree.ElementTree as ET
from typing import Iterable, List, Optional, Tuple
from urllib.parse import quote

from packaging.version import Version

from .config import InstallerConfig
from .errors import NotFoundError
from .models import DependencySpec, ModuleDescriptor, parse_version
from .transport import TransportError, send

LOG = logging.getLogger(__name__)

ATOM = "{http://www.w3.org/2005/Atom}"
DATA = "{http://schemas.microsoft.com/ado/2007/08/dataservices}"
META = "{http://schemas.microsoft.com/ado/2007/08/dataservices/metadata}"

_MAX_PAGES = 50


class RegistryClient:
    """Query NuGet v2 OData feeds (PowerShell Gallery and compatible) for module metadata."""

    def __init__(self, config: InstallerConfig):
        self.config = config

    def find_module(self, name: str, repository: str, exact_version: Optional[str] = None) -> ModuleDescriptor:
        try:
            feed = self.config.feed_url(repository)
        except ValueError as exc:
            raise NotFoundError(name, repository, exact_version) from exc
        if exact_version:
            url = f"{feed}/Packages(Id='{_odata_quote(name)}',Version='{_odata_quote(exact_version)}')"
            entries = self._fetch_entries(url, name, repository, exact_version)
        else:
            url = f"{feed}/FindPackagesById()?id='{_odata_quote(name)}'"
            entries = self._fetch_entries(url, name, repository, None)

        parsed = [_descriptor_from_entry(entry, repository) for entry in entries]
        candidates = [item for item in parsed if item is not None and item[0].name.lower() == name.lower()]
        if exact_version:
            wanted = parse_version(exact_version)
            matches = [d for d, _ in candidates if parse_version(d.version) == wanted]
            if not matches:
                raise NotFoundError(name, repository, exact_version)
            return matches[0]

        best = _latest(candidates)
        if best is None:
            raise NotFoundError(name, repository)
        LOG.debug("Latest %s in %s is %s", name, repository, best.version)
        return best

    def package_uri(self, repository: str, name: str, version: str) -> str:
        return f"{self.config.feed_url(repository)}/package/{quote(name)}/{quote(version)}"

    def _fetch_entries(self, url: str, name: str, repository: str, version: Optional[str]) -> List[ET.Element]:
        entries: List[ET.Element] = []
        next_url: Optional[str] = url
        pages = 0
        while next_url and pages < _MAX_PAGES:
            pages += 1
            try:
                resp = send("GET", next_url, headers={"Accept": "application/atom+xml"}, timeout=self.config.request_timeout)
            except TransportError as exc:
                LOG.debug("Registry query failed for %s: %s", name, exc)
                raise NotFoundError(name, repository, version) from exc
            if resp.status == 404:
                raise NotFoundError(name, repository, version)
            if resp.status >= 400:
                LOG.debug("Registry responded %s for %s", resp.status, next_url)
                raise NotFoundError(name, repository, version)
            page_entries, next_url = parse_feed(resp.body)
            entries.extend(page_entries)
        return entries


def parse_feed(document: str):
    """Split an Atom document into its entries and the optional ``next`` page link."""
    root = ET.fromstring(document)
    if root.tag == f"{ATOM}entry":
        return [root], None
    entries = root.findall(f"{ATOM}entry")
    next_url = None
    for link in root.findall(f"{ATOM}link"):
        if link.get("rel") == "next":
            next_url = link.get("href")
    return entries, next_url


def parse_dependencies(raw: Optional[str]) -> List[DependencySpec]:
    """Parse the feed's ``Name:Range:Framework|...`` dependency string."""
    specs: List[DependencySpec] = []
    if not raw:
        return specs
    for chunk in raw.split("|"):
        chunk = chunk.strip()
        if not chunk:
            continue
        name, _, rest = chunk.partition(":")
        version_range, _, _framework = rest.partition(":")
        name = name.strip()
        if not name:
            continue
        specs.append(_spec_from_range(name, version_range.strip()))
    return specs


def _spec_from_range(name: str, version_range: str) -> DependencySpec:
    if not version_range:
        return DependencySpec(name=name)
    exact = re.fullmatch(r"\[\s*([^,\s\]]+)\s*\]", version_range)
    if exact:
        return DependencySpec.exact(name, exact.group(1))
    if version_range[0] in "[(":
        lower = version_range[1:].split(",", 1)[0].strip()
        if lower:
            # Upper bounds are ignored, no range solving.
            return DependencySpec.minimum(name, lower)
        return DependencySpec(name=name)
    return DependencySpec.minimum(name, version_range)


def _descriptor_from_entry(entry: ET.Element, repository: str) -> Optional[Tuple[ModuleDescriptor, bool]]:
    props = entry.find(f"{META}properties")
    if props is None:
        return None
    name = _text(props.find(f"{DATA}Id")) or _text(entry.find(f"{ATOM}title"))
    version = _text(props.find(f"{DATA}NormalizedVersion")) or _text(props.find(f"{DATA}Version"))
    if not name or not version:
        return None
    descriptor = ModuleDescriptor(
        name=name,
        version=version,
        repository=repository,
        dependencies=parse_dependencies(_text(props.find(f"{DATA}Dependencies"))),
    )
    prerelease = (_text(props.find(f"{DATA}IsPrerelease")) or "false").lower() == "true"
    return descriptor, prerelease


def _latest(candidates: Iterable[Tuple[ModuleDescriptor, bool]]) -> Optional[ModuleDescriptor]:
    best: Optional[ModuleDescriptor] = None
    best_version: Optional[Version] = None
    for descriptor, prerelease in candidates:
        if prerelease:
            continue
        try:
            version = parse_version(descriptor.version)
        except ValueError:
            LOG.debug("Skipping unparseable version %s of %s", descriptor.version, descriptor.name)
            continue
        if version.is_prerelease:
            continue
        if best_version is None or version > best_version:
            best, best_version = descriptor, version
    return best


def _text(element: Optional[ET.Element]) -> Optional[str]:
    if element is None or element.text is None:
        return None
    return element.text.strip() or None


def _odata_quote(value: str) -> str:
    return quote(value.replace("'", "''"), safe="")
