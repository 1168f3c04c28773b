from __future__ import annotations

import itertools
import random
from pathlib import Path
from typing import Optional

import pytest

import sitemap_keywords as sk


def urlset(*locs: str) -> bytes:
    entries = "".join(f"<url><loc>{loc}</loc></url>" for loc in locs)
    return (
        '<?xml version="1.0" encoding="UTF-8"?>'
        f'<urlset xmlns="http://www.sitemaps.org/schemas/sitemap/0.9">{entries}</urlset>'
    ).encode("utf-8")


class FakeFetcher:
    """Returns `body` for every URL, after raising the queued errors first."""

    def __init__(self, body: bytes, errors: Optional[list[Exception]] = None) -> None:
        self.body = body
        self.errors = list(errors or [])
        self.calls: list[str] = []

    async def fetch(self, url: str) -> bytes:
        self.calls.append(url)
        if self.errors:
            raise self.errors.pop(0)
        return self.body


class FakeProvider:
    def __init__(self, text: str = "An article.", errors: Optional[list[Exception]] = None) -> None:
        self.text = text
        self.errors = list(errors or [])
        self.calls: list[tuple[str, str, float, int]] = []

    async def complete(self, system_prompt: str, user_prompt: str, temperature: float, max_tokens: int) -> str:
        self.calls.append((system_prompt, user_prompt, temperature, max_tokens))
        if self.errors:
            raise self.errors.pop(0)
        return self.text


def counting_clock(prefix: str = "2024-05-01T12-00-00"):
    counter = itertools.count()
    return lambda: f"{prefix}-{next(counter):03d}Z"


@pytest.fixture
def store(tmp_path: Path) -> sk.OutputStore:
    return sk.OutputStore(tmp_path / "output")


@pytest.fixture
def make_processor(store):
    def _make(fetcher, provider=None, *, seed: int = 7, max_attempts: int = 3) -> sk.SitemapProcessor:
        generator = sk.ArticleGenerator(provider or FakeProvider(), delay=0, max_attempts=max_attempts)
        return sk.SitemapProcessor(
            fetcher,
            generator,
            store,
            delay=0,
            max_attempts=max_attempts,
            rng=random.Random(seed),
            clock=counting_clock(),
        )

    return _make
