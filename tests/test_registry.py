from xml.sax.saxutils import escape

import pytest

import automation_module_installer.registry as registry_module
from automation_module_installer.config import build_config
from automation_module_installer.errors import NotFoundError
from automation_module_installer.models import ConstraintKind, DependencySpec
from automation_module_installer.registry import RegistryClient, parse_dependencies
from automation_module_installer.transport import HttpResponse, TransportError

NAMESPACES = (
    'xmlns="http://www.w3.org/2005/Atom" '
    'xmlns:d="http://schemas.microsoft.com/ado/2007/08/dataservices" '
    'xmlns:m="http://schemas.microsoft.com/ado/2007/08/dataservices/metadata"'
)

FEED_HEAD = f'<?xml version="1.0" encoding="utf-8"?><feed xml:base="https://www.powershellgallery.com/api/v2/" {NAMESPACES}>'


def _entry(name, version, dependencies="", prerelease=False, standalone=False):
    return (
        (f"<entry {NAMESPACES}>" if standalone else "<entry>")
        + f'<title type="text">{name}</title>'
        "<m:properties>"
        f"<d:Id>{name}</d:Id>"
        f"<d:Version>{version}</d:Version>"
        f"<d:Dependencies>{dependencies}</d:Dependencies>"
        f'<d:IsPrerelease m:type="Edm.Boolean">{"true" if prerelease else "false"}</d:IsPrerelease>'
        "</m:properties>"
        "</entry>"
    )


def _feed(*entries, next_url=None):
    link = f'<link rel="next" href="{escape(next_url)}" />' if next_url else ""
    return FEED_HEAD + "".join(entries) + link + "</feed>"


@pytest.fixture
def responses(monkeypatch):
    pages = {}
    requested = []

    def fake_send(method, url, **kwargs):
        requested.append(url)
        if url not in pages:
            return HttpResponse(status=404, body="")
        return pages[url]

    monkeypatch.setattr(registry_module, "send", fake_send)
    return pages, requested


FEED = "https://www.powershellgallery.com/api/v2"


def test_parse_dependencies_ranges():
    specs = parse_dependencies("Az.Accounts:[2.7.5, ):|Exact.One:[1.2.0]:|Bare:3.0:|Any::|Capped:(, 4.0]:")
    assert specs == [
        DependencySpec.minimum("Az.Accounts", "2.7.5"),
        DependencySpec.exact("Exact.One", "1.2.0"),
        DependencySpec.minimum("Bare", "3.0"),
        DependencySpec(name="Any"),
        DependencySpec(name="Capped"),
    ]
    assert parse_dependencies(None) == []
    assert parse_dependencies("") == []


def test_parse_dependencies_ignores_upper_bound():
    [spec] = parse_dependencies("Lib:[1.0, 2.0):")
    assert spec.constraint_kind == ConstraintKind.MINIMUM
    assert spec.constraint_version == "1.0"


def test_find_latest_skips_prereleases(responses):
    pages, requested = responses
    pages[f"{FEED}/FindPackagesById()?id='Az.Storage'"] = HttpResponse(
        status=200,
        body=_feed(
            _entry("Az.Storage", "5.0.0", "Az.Accounts:[2.7.5, ):"),
            _entry("Az.Storage", "5.1.0"),
            _entry("Az.Storage", "6.0.0-preview", prerelease=True),
        ),
    )
    client = RegistryClient(build_config())

    descriptor = client.find_module("Az.Storage", "PSGallery")

    assert descriptor.name == "Az.Storage"
    assert descriptor.version == "5.1.0"
    assert descriptor.repository == "PSGallery"
    assert descriptor.dependencies == []


def test_find_latest_follows_next_links(responses):
    pages, requested = responses
    second = f"{FEED}/FindPackagesById()?id='Lib'&$skiptoken='Lib','1.0.0'"
    pages[f"{FEED}/FindPackagesById()?id='Lib'"] = HttpResponse(
        status=200, body=_feed(_entry("Lib", "1.0.0"), next_url=second)
    )
    pages[second] = HttpResponse(status=200, body=_feed(_entry("Lib", "1.2.0", "Dep:[1.0]:")))

    descriptor = RegistryClient(build_config()).find_module("Lib", "psgallery")

    assert descriptor.version == "1.2.0"
    assert descriptor.dependencies == [DependencySpec.exact("Dep", "1.0")]
    assert len(requested) == 2


def test_find_exact_version(responses):
    pages, _ = responses
    pages[f"{FEED}/Packages(Id='Az.Accounts',Version='2.7.5')"] = HttpResponse(
        status=200,
        body=_entry("Az.Accounts", "2.7.5", standalone=True),
    )
    descriptor = RegistryClient(build_config()).find_module("Az.Accounts", "PSGallery", exact_version="2.7.5")
    assert descriptor.version == "2.7.5"


def test_unknown_module_raises_not_found(responses):
    with pytest.raises(NotFoundError):
        RegistryClient(build_config()).find_module("Missing", "PSGallery")
    with pytest.raises(NotFoundError):
        RegistryClient(build_config()).find_module("Missing", "PSGallery", exact_version="1.0")


def test_empty_feed_raises_not_found(responses):
    pages, _ = responses
    pages[f"{FEED}/FindPackagesById()?id='Empty'"] = HttpResponse(status=200, body=_feed())
    with pytest.raises(NotFoundError):
        RegistryClient(build_config()).find_module("Empty", "PSGallery")


def test_network_failure_raises_not_found(monkeypatch):
    def boom(method, url, **kwargs):
        raise TransportError("connection refused")

    monkeypatch.setattr(registry_module, "send", boom)
    with pytest.raises(NotFoundError):
        RegistryClient(build_config()).find_module("Lib", "PSGallery")


def test_package_uri_uses_repository_feed(tmp_path):
    cfg_path = tmp_path / "config.json"
    cfg_path.write_text('{"installer": {"repositories": {"Internal": "https://nuget.internal/api/v2/"}}}')
    client = RegistryClient(build_config(config_file=cfg_path))
    assert client.package_uri("PSGallery", "Az.Accounts", "2.7.5") == f"{FEED}/package/Az.Accounts/2.7.5"
    assert client.package_uri("Internal", "Tool", "1.0") == "https://nuget.internal/api/v2/package/Tool/1.0"


def test_unconfigured_repository_raises_not_found(responses):
    _, requested = responses
    with pytest.raises(NotFoundError) as excinfo:
        RegistryClient(build_config()).find_module("Az.Accounts", "NoSuchRepo")
    assert excinfo.value.repository == "NoSuchRepo"
    assert requested == []
