import asyncio
import os

import requests

from codeskew.includes import (
    DEFAULT_INCLUDE_URL,
    ChainIncludeResolver,
    DictIncludeResolver,
    FileIncludeResolver,
    HttpIncludeResolver,
    default_include_resolver,
)
from codeskew.preprocessor import preprocess


class FakeResponse:
    def __init__(self, status_code, text=""):
        self.status_code = status_code
        self.text = text


def fetch(resolver, path):
    return asyncio.run(resolver.fetch(path))


def test_dict_resolver():
    resolver = DictIncludeResolver({"a": "fn a() {}"})
    assert fetch(resolver, "a") == "fn a() {}"
    assert fetch(resolver, "b") is None


def test_file_resolver(tmp_path):
    (tmp_path / "lib.wgsl").write_text("fn lib() {}")
    (tmp_path / "sub").mkdir()
    (tmp_path / "sub" / "other.txt").write_text("fn other() {}")
    (tmp_path / "secret.wgsl").write_text("secret")
    resolver = FileIncludeResolver(str(tmp_path / "sub"), str(tmp_path))

    assert fetch(resolver, "lib") == "fn lib() {}"
    assert fetch(resolver, "lib.wgsl") == "fn lib() {}"
    assert fetch(resolver, "other.txt") == "fn other() {}"
    assert fetch(resolver, "missing") is None

    resolver = FileIncludeResolver(str(tmp_path / "sub"))
    assert fetch(resolver, "../secret") is None


def test_packaged_includes():
    resolver = FileIncludeResolver()
    assert "struct String" in fetch(resolver, "std/string")
    assert "fn rotate2" in fetch(resolver, "std/math")


def test_packaged_string_include_preprocesses():
    source = asyncio.run(
        preprocess(
            '#include <string>\nconst greeting = "hello";',
            include_resolver=FileIncludeResolver(),
        )
    )
    assert source is not None
    assert any("chars: array<uint, 20>," in line for line in source.lines)
    assert source.lines[-1].startswith("const greeting = String(5, array<uint,20>(0x68,")


def test_http_resolver(monkeypatch):
    requested = []

    def get(url, headers=None, timeout=None):
        requested.append(url)
        if url.endswith("std/noise.wgsl"):
            return FakeResponse(200, "fn noise() {}")
        return FakeResponse(404)

    monkeypatch.setattr(requests, "get", get)
    resolver = HttpIncludeResolver("https://example.com/include", use_cache=False)

    assert resolver.base_url == "https://example.com/include/"
    assert fetch(resolver, "std/noise") == "fn noise() {}"
    assert fetch(resolver, "std/nothing") is None
    assert requested == [
        "https://example.com/include/std/noise.wgsl",
        "https://example.com/include/std/nothing.wgsl",
    ]


def test_http_resolver_base_url_from_env(monkeypatch):
    monkeypatch.setenv("CODESKEW_INCLUDE_URL", "https://mirror.example.com/")
    assert HttpIncludeResolver().base_url == "https://mirror.example.com/"
    monkeypatch.delenv("CODESKEW_INCLUDE_URL")
    assert HttpIncludeResolver().base_url == DEFAULT_INCLUDE_URL


def test_http_failures_are_not_found(monkeypatch, caplog):
    def get(url, headers=None, timeout=None):
        raise requests.exceptions.ConnectionError("offline")

    monkeypatch.setattr(requests, "get", get)
    resolver = HttpIncludeResolver(use_cache=False)

    with caplog.at_level("WARNING", logger="codeskew"):
        assert fetch(resolver, "std/noise") is None
    assert "Failed to fetch include" in caplog.text

    errors = []
    source = asyncio.run(
        preprocess(
            "#include <noise>",
            include_resolver=resolver,
            on_error=lambda s, n: errors.append((s, n)),
        )
    )
    assert source is None
    assert errors == [("Cannot find include <noise>", 1)]


def test_http_resolver_cache(monkeypatch, tmp_path):
    monkeypatch.setenv("XDG_CACHE_HOME", str(tmp_path))
    monkeypatch.setenv("LOCALAPPDATA", str(tmp_path))
    monkeypatch.setenv("HOME", str(tmp_path))
    calls = []

    def get(url, headers=None, timeout=None):
        calls.append(url)
        return FakeResponse(200, "fn cached() {}")

    monkeypatch.setattr(requests, "get", get)
    resolver = HttpIncludeResolver("https://example.com/")

    assert fetch(resolver, "std/cached") == "fn cached() {}"
    assert fetch(resolver, "std/cached") == "fn cached() {}"
    assert len(calls) == 1
    assert os.path.isfile(resolver._cache_path("std/cached"))


def test_chain_resolver():
    first = DictIncludeResolver({"a": "first"})
    second = DictIncludeResolver({"a": "second", "b": "second"})
    resolver = ChainIncludeResolver(first, second)

    assert fetch(resolver, "a") == "first"
    assert fetch(resolver, "b") == "second"
    assert fetch(resolver, "c") is None


def test_default_resolver_prefers_packaged_includes(monkeypatch):
    def get(url, headers=None, timeout=None):
        raise AssertionError("packaged includes should not hit the network")

    monkeypatch.setattr(requests, "get", get)
    resolver = default_include_resolver()
    assert "struct String" in fetch(resolver, "std/string")


def test_unreadable_include_is_reported(tmp_path, caplog):
    (tmp_path / "bad.wgsl").write_bytes(b"fn f() {}\n\xff\xfe")
    errors = []
    with caplog.at_level("WARNING", logger="codeskew"):
        source = asyncio.run(
            preprocess(
                'fn main() {}\n#include "bad"\n',
                include_resolver=FileIncludeResolver(str(tmp_path)),
                on_error=lambda s, n: errors.append((s, n)),
            )
        )
    assert source is None
    assert errors == [('Cannot find include "bad"', 2)]
    assert "Failed to resolve include bad" in caplog.text


def test_failing_cache_write_is_reported(monkeypatch, tmp_path):
    # the cache location is a file, so the cache directory can't be created
    blocker = tmp_path / "blocked"
    blocker.write_text("")
    monkeypatch.setenv("XDG_CACHE_HOME", str(blocker))
    monkeypatch.setenv("LOCALAPPDATA", str(blocker))
    monkeypatch.setenv("HOME", str(blocker))
    monkeypatch.setattr(
        requests, "get", lambda url, headers=None, timeout=None: FakeResponse(200, "fn f() {}")
    )

    errors = []
    source = asyncio.run(
        preprocess(
            '#include "lib"',
            include_resolver=HttpIncludeResolver("https://example.com/"),
            on_error=lambda s, n: errors.append((s, n)),
        )
    )
    assert source is None
    assert errors == [('Cannot find include "lib"', 1)]
