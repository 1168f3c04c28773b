#!/usr/bin/env python3
"""
Sitemap keyword miner.

Reads a list of sitemap URLs and, for every domain:

- fetches and parses the sitemap (`<urlset><url><loc>` entries)
- turns each URL path into a title-cased phrase and sorts it into
  `keywords` (phrases ending in "NJ") or `phrases` (everything else)
- writes both lists to a fresh, timestamped output folder
- picks one keyword at random and asks the completion API for a short
  promotional article about it

Domains are processed in isolated worker processes, at most `max_workers`
at a time, with a `rate_limit_delay` pause between launches. Every domain
is retried up to `max_attempts` times with linear backoff. When the batch
finishes, a one-line summary is written into each domain's folder.
"""

from __future__ import annotations

import argparse
import asyncio
import dataclasses
import enum
import gzip
import logging
import multiprocessing
import os
import random
import re
import signal
import sys
import xml.etree.ElementTree as ET
from datetime import datetime, timezone
from pathlib import Path
from typing import Awaitable, Callable, Iterable, Optional, Protocol, Sequence, Union
from urllib.parse import urlsplit

import httpx
import yaml
from dotenv import load_dotenv
from openai import AsyncOpenAI


LOGGER_NAME = "sitemap_keywords"
NO_KEYWORD = "None"


# --------------------------- Configuration --------------------------------- #


@dataclasses.dataclass(frozen=True)
class Config:
    output_dir: str = "output"
    sitemaps_file: str = "sitemaps.txt"
    max_workers: int = 5
    rate_limit_delay: float = 1.0  # seconds between launches, and base backoff
    max_attempts: int = 3
    timeout: int = 20  # seconds per request
    user_agent: str = "SitemapKeywordsBot/1.0 (+https://example.com/bot)"
    model: str = "gpt-3.5-turbo"
    temperature: float = 0.7
    max_tokens: int = 800
    isolated_units: bool = True
    openai_api_key: str = dataclasses.field(default="", repr=False)

    @staticmethod
    def from_yaml(path: Path) -> "Config":
        with path.open("r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
        return Config(
            output_dir=data.get("output_dir", "output"),
            sitemaps_file=data.get("sitemaps_file", "sitemaps.txt"),
            max_workers=int(data.get("max_workers", 5)),
            rate_limit_delay=float(data.get("rate_limit_delay", 1.0)),
            max_attempts=int(data.get("max_attempts", 3)),
            timeout=int(data.get("timeout", 20)),
            user_agent=data.get("user_agent", "SitemapKeywordsBot/1.0 (+https://example.com/bot)"),
            model=data.get("model", "gpt-3.5-turbo"),
            temperature=float(data.get("temperature", 0.7)),
            max_tokens=int(data.get("max_tokens", 800)),
            isolated_units=bool(data.get("isolated_units", True)),
            openai_api_key=data.get("openai_api_key", "") or "",
        )

    def with_environment(self) -> "Config":
        """Fill the API key from OPENAI_API_KEY (or a .env file) when the YAML has none."""
        if self.openai_api_key:
            return self
        load_dotenv()
        return dataclasses.replace(self, openai_api_key=os.getenv("OPENAI_API_KEY", "").strip())


def validate_startup(cfg: Config) -> Config:
    if not cfg.openai_api_key:
        raise StartupConfigurationError("OPENAI_API_KEY environment variable is not set")
    if cfg.max_workers < 1:
        raise StartupConfigurationError(f"max_workers must be at least 1, got {cfg.max_workers}")
    if cfg.max_attempts < 1:
        raise StartupConfigurationError(f"max_attempts must be at least 1, got {cfg.max_attempts}")
    return cfg


# ------------------------------- Errors ------------------------------------ #


class SitemapKeywordsError(Exception):
    pass


class InvalidInputError(SitemapKeywordsError):
    pass


class FetchError(SitemapKeywordsError):
    pass


class SitemapParseError(SitemapKeywordsError):
    pass


class PersistenceError(SitemapKeywordsError):
    pass


class CompletionError(SitemapKeywordsError):
    pass


class StartupConfigurationError(SitemapKeywordsError):
    pass


# ----------------------------- Utilities ----------------------------------- #


def file_timestamp(now: Optional[datetime] = None) -> str:
    """ISO-8601 UTC time with milliseconds, made safe for file names.

    2024-05-01T12:30:45.123Z -> 2024-05-01T12-30-45-123Z
    """
    now = now or datetime.now(timezone.utc)
    iso = now.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S") + f".{now.microsecond // 1000:03d}Z"
    return re.sub(r"[:.]", "-", iso)


def domain_of(url: str) -> str:
    return urlsplit(url).hostname or ""


def article_filename(keyword: str, timestamp: str) -> str:
    base = re.sub(r"[^a-z0-9]", "_", keyword, flags=re.I).lower()
    return f"{base}_{timestamp}.txt"


def ensure_dir(p: Path) -> None:
    p.mkdir(parents=True, exist_ok=True)


# ----------------------------- Logging ------------------------------------- #


LOG_FORMAT = "%(asctime)s %(levelname)s [%(domain)s] %(message)s"


def setup_root_logger(output_root: Path) -> None:
    formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")
    root_logger = logging.getLogger(LOGGER_NAME)
    root_logger.setLevel(logging.INFO)
    root_logger.handlers.clear()
    fh = logging.FileHandler(output_root / "sitemap_keywords.log", encoding="utf-8")
    fh.setLevel(logging.INFO)
    fh.setFormatter(formatter)
    ch = logging.StreamHandler(stream=sys.stdout)
    ch.setLevel(logging.INFO)
    ch.setFormatter(formatter)
    root_logger.addHandler(fh)
    root_logger.addHandler(ch)


def get_domain_logger(domain: str) -> logging.LoggerAdapter:
    return logging.LoggerAdapter(logging.getLogger(LOGGER_NAME), extra={"domain": domain or "?"})


# ----------------------------- Data model ---------------------------------- #


@dataclasses.dataclass(frozen=True)
class SitemapTask:
    url: str

    @property
    def domain(self) -> str:
        return domain_of(self.url)


class PhraseCategory(enum.Enum):
    KEYWORD = "keyword"
    PHRASE = "phrase"


@dataclasses.dataclass(frozen=True)
class ClassifiedPhrase:
    text: str
    category: PhraseCategory


@dataclasses.dataclass(frozen=True)
class DomainResult:
    domain: str
    output_dir: Path
    timestamp: str
    keywords: tuple[str, ...]
    phrases: tuple[str, ...]
    processed_keyword: str = NO_KEYWORD
    article_path: Optional[Path] = None

    @property
    def keyword_count(self) -> int:
        return len(self.keywords)

    @property
    def phrase_count(self) -> int:
        return len(self.phrases)

    def summary_line(self) -> str:
        return (
            f"{self.domain}: {self.keyword_count} keywords, {self.phrase_count} phrases, "
            f"processed keyword: {self.processed_keyword}"
        )


@dataclasses.dataclass(frozen=True)
class Success:
    result: DomainResult

    @property
    def domain(self) -> str:
        return self.result.domain


@dataclasses.dataclass(frozen=True)
class Failure:
    domain: str
    url: str
    error: str
    attempts: int = 0


ProcessingOutcome = Union[Success, Failure]


# ---------------------------- Input loading -------------------------------- #


def parse_sitemap_url(raw: str) -> SitemapTask:
    value = raw.strip()
    parts = urlsplit(value)
    if parts.scheme not in ("http", "https") or not parts.hostname:
        raise InvalidInputError(f"Invalid URL: {value}")
    return SitemapTask(url=value)


def load_sitemap_tasks(path: Path, logger: Optional[logging.LoggerAdapter] = None) -> list[SitemapTask]:
    logger = logger or get_domain_logger("ALL")
    tasks: list[SitemapTask] = []
    for line in path.read_text(encoding="utf-8").splitlines():
        if not line.strip():
            continue
        try:
            tasks.append(parse_sitemap_url(line))
        except InvalidInputError as e:
            logger.warning(str(e))
    return tasks


# --------------------------- Text classifier ------------------------------- #


BLOG_RE = re.compile(r"(blog|blogs|blogging|blog-post|blog-posts)", re.I)
HOST_PREFIX_RE = re.compile(r"^https?://[^/]+")
EDGE_SLASH_RE = re.compile(r"^/|/$")
PAGE_EXTENSION_RE = re.compile(r"\.html$|\.php$")


def transform_path(raw_url: str) -> str:
    """Turn a URL into a title-cased phrase: /plumbing-repair-nj.html -> Plumbing Repair NJ."""
    path = HOST_PREFIX_RE.sub("", raw_url)
    path = PAGE_EXTENSION_RE.sub("", EDGE_SLASH_RE.sub("", path))
    words = [w for w in path.replace("-", " ").split(" ") if w.strip()]
    transformed = []
    for index, word in enumerate(words):
        if index == len(words) - 1 and word.lower() == "nj":
            transformed.append(word.upper())
        else:
            transformed.append(word[:1].upper() + word[1:].lower())
    return " ".join(transformed)


def is_valid_keyword(phrase: str) -> bool:
    # Gates every accepted phrase, not only keywords.
    return len([w for w in phrase.split(" ") if w.strip()]) >= 2


def classify(raw_url: str) -> Optional[ClassifiedPhrase]:
    if BLOG_RE.search(raw_url):
        return None
    text = transform_path(raw_url)
    if not text or not is_valid_keyword(text):
        return None
    category = PhraseCategory.KEYWORD if text.endswith("NJ") else PhraseCategory.PHRASE
    return ClassifiedPhrase(text=text, category=category)


def partition_phrases(urls: Iterable[str]) -> tuple[list[str], list[str]]:
    keywords: list[str] = []
    phrases: list[str] = []
    for url in urls:
        item = classify(url)
        if item is None:
            continue
        if item.category is PhraseCategory.KEYWORD:
            keywords.append(item.text)
        else:
            phrases.append(item.text)
    return keywords, phrases


# ---------------------------- Collaborators -------------------------------- #


class Fetcher(Protocol):
    async def fetch(self, url: str) -> bytes: ...


class CompletionProvider(Protocol):
    async def complete(self, system_prompt: str, user_prompt: str, temperature: float, max_tokens: int) -> str: ...


class HttpxFetcher:
    def __init__(self, client: httpx.AsyncClient, timeout: int = 20) -> None:
        self.client = client
        self.timeout = timeout

    async def fetch(self, url: str) -> bytes:
        try:
            resp = await self.client.get(url, timeout=self.timeout, follow_redirects=True)
            resp.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise FetchError(f"HTTP {e.response.status_code} for {url}") from e
        except httpx.HTTPError as e:
            raise FetchError(f"Request failed for {url}: {e}") from e
        return resp.content


def build_http_client(cfg: Config) -> httpx.AsyncClient:
    headers = {
        "User-Agent": cfg.user_agent,
        "Accept": "application/xml,text/xml;q=0.9,*/*;q=0.8",
    }
    return httpx.AsyncClient(headers=headers, timeout=httpx.Timeout(cfg.timeout), follow_redirects=True)


def _tag_endswith(el: ET.Element, name: str) -> bool:
    return el.tag.lower().endswith(name)


def parse_sitemap(data: bytes) -> list[str]:
    """Return the `<url><loc>` values of a `<urlset>` document, in document order."""
    if data[:2] == b"\x1f\x8b":
        try:
            data = gzip.decompress(data)
        except (OSError, EOFError) as e:
            raise SitemapParseError(f"Could not decompress sitemap: {e}") from e
    try:
        root = ET.fromstring(data)
    except ET.ParseError as e:
        raise SitemapParseError(f"Malformed sitemap XML: {e}") from e
    if not _tag_endswith(root, "urlset"):
        raise SitemapParseError(f"Expected <urlset> root, got <{root.tag}>")
    locs: list[str] = []
    for url_el in root:
        if not _tag_endswith(url_el, "url"):
            continue
        for child in url_el:
            if _tag_endswith(child, "loc") and (child.text or "").strip():
                locs.append(child.text.strip())
                break
    return locs


class OpenAICompletionProvider:
    def __init__(self, client: AsyncOpenAI, model: str) -> None:
        self.client = client
        self.model = model

    async def complete(self, system_prompt: str, user_prompt: str, temperature: float, max_tokens: int) -> str:
        completion = await self.client.chat.completions.create(
            model=self.model,
            messages=[
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
            temperature=temperature,
            max_tokens=max_tokens,
        )
        return completion.choices[0].message.content or ""


class OutputStore:
    def __init__(self, root: Path) -> None:
        self.root = root

    def make_run_dir(self, domain: str, timestamp: str) -> Path:
        path = self.root / f"{domain}_{timestamp}"
        try:
            # Never shared: a same-millisecond run for the host fails and retries with a new timestamp.
            path.mkdir(parents=True, exist_ok=False)
        except OSError as e:
            raise PersistenceError(f"Could not create {path}: {e}") from e
        return path

    def write_text(self, path: Path, text: str) -> Path:
        try:
            path.write_text(text, encoding="utf-8")
        except OSError as e:
            raise PersistenceError(f"Failed writing {path}: {e}") from e
        return path


# --------------------------- Article generator ----------------------------- #


SYSTEM_PROMPT = "You are a professional content writer specializing in local service businesses."


def article_prompt(keyword: str) -> str:
    return (
        f"Write a 500 word SEO-optimized article about {keyword}. Include specific details about the service, "
        "how the area is being served, benefits to customers, and end with a clear call to action"
    )


class ArticleGenerator:
    def __init__(
        self,
        provider: CompletionProvider,
        *,
        delay: float = 1.0,
        max_attempts: int = 3,
        temperature: float = 0.7,
        max_tokens: int = 800,
    ) -> None:
        self.provider = provider
        self.delay = max(0.0, delay)
        self.max_attempts = max_attempts
        self.temperature = temperature
        self.max_tokens = max_tokens

    async def generate(self, keyword: str, logger: Optional[logging.LoggerAdapter] = None) -> str:
        logger = logger or get_domain_logger("ALL")
        attempt = 0
        while True:
            attempt += 1
            try:
                await asyncio.sleep(self.delay)
                text = await self.provider.complete(
                    SYSTEM_PROMPT, article_prompt(keyword), temperature=self.temperature, max_tokens=self.max_tokens
                )
                if not text.strip():
                    raise CompletionError(f"Empty completion for {keyword}")
                return text
            except Exception as e:
                logger.warning(f"Attempt {attempt} failed for {keyword}: {e}")
                if attempt >= self.max_attempts:
                    raise CompletionError(
                        f"Article generation for {keyword} failed after {attempt} attempt(s): {e}"
                    ) from e
                await asyncio.sleep(self.delay * attempt)


# --------------------------- Sitemap processor ----------------------------- #


class SitemapProcessor:
    """Runs fetch -> parse -> classify -> persist -> article for one sitemap."""

    def __init__(
        self,
        fetcher: Fetcher,
        generator: ArticleGenerator,
        store: OutputStore,
        *,
        delay: float = 1.0,
        max_attempts: int = 3,
        rng: Optional[random.Random] = None,
        clock: Callable[[], str] = file_timestamp,
    ) -> None:
        self.fetcher = fetcher
        self.generator = generator
        self.store = store
        self.delay = max(0.0, delay)
        self.max_attempts = max_attempts
        self.rng = rng or random.Random()
        self.clock = clock

    async def process(self, task: SitemapTask) -> ProcessingOutcome:
        domain = task.domain
        logger = get_domain_logger(domain)
        attempt = 0
        while True:
            attempt += 1
            try:
                result = await self._process_once(task, logger)
            except Exception as e:
                logger.error(f"Attempt {attempt} failed for {task.url}: {e}")
                if attempt >= self.max_attempts:
                    return Failure(domain=domain, url=task.url, error=f"{type(e).__name__}: {e}", attempts=attempt)
                await asyncio.sleep(self.delay * attempt)
                continue
            logger.info(
                f"Completed {domain}: {result.keyword_count} keywords, {result.phrase_count} phrases"
            )
            return Success(result)

    async def _process_once(self, task: SitemapTask, logger: logging.LoggerAdapter) -> DomainResult:
        domain = task.domain
        timestamp = self.clock()
        output_dir = self.store.make_run_dir(domain, timestamp)

        data = await self.fetcher.fetch(task.url)
        locs = parse_sitemap(data)
        keywords, phrases = partition_phrases(locs)
        logger.info(f"Parsed {len(locs)} URL(s) from {task.url}")

        self.store.write_text(output_dir / f"keywords_{timestamp}.txt", "\n".join(keywords))
        self.store.write_text(output_dir / f"phrases_{timestamp}.txt", "\n".join(phrases))

        processed_keyword = NO_KEYWORD
        article_path = None
        if keywords:
            processed_keyword = keywords[self.rng.randrange(len(keywords))]
            article = await self.generator.generate(processed_keyword, logger=logger)
            article_path = self.store.write_text(output_dir / article_filename(processed_keyword, timestamp), article)
            logger.info(f"Saved article for '{processed_keyword}' -> {article_path.name}")

        return DomainResult(
            domain=domain,
            output_dir=output_dir,
            timestamp=timestamp,
            keywords=tuple(keywords),
            phrases=tuple(phrases),
            processed_keyword=processed_keyword,
            article_path=article_path,
        )


def build_processor(
    cfg: Config, client: httpx.AsyncClient, llm: AsyncOpenAI, rng: Optional[random.Random] = None
) -> SitemapProcessor:
    generator = ArticleGenerator(
        OpenAICompletionProvider(llm, cfg.model),
        delay=cfg.rate_limit_delay,
        max_attempts=cfg.max_attempts,
        temperature=cfg.temperature,
        max_tokens=cfg.max_tokens,
    )
    return SitemapProcessor(
        HttpxFetcher(client, timeout=cfg.timeout),
        generator,
        OutputStore(Path(cfg.output_dir)),
        delay=cfg.rate_limit_delay,
        max_attempts=cfg.max_attempts,
        rng=rng,
    )


def build_llm_client(cfg: Config) -> AsyncOpenAI:
    return AsyncOpenAI(api_key=cfg.openai_api_key, timeout=cfg.timeout)


async def process_sitemap_task(task: SitemapTask, cfg: Config) -> ProcessingOutcome:
    async with build_http_client(cfg) as client, build_llm_client(cfg) as llm:
        return await build_processor(cfg, client, llm).process(task)


# -------------------------------- Units ------------------------------------ #


UnitRunner = Callable[[SitemapTask], Awaitable[ProcessingOutcome]]


class InProcessUnitRunner:
    """Runs units as asyncio tasks in the coordinator's own process.

    There is no `terminate_all`: cancelling the coordinator's tasks stops them.
    """

    def __init__(self, processor: SitemapProcessor) -> None:
        self.processor = processor

    async def __call__(self, task: SitemapTask) -> ProcessingOutcome:
        return await self.processor.process(task)


def _unit_main(task: SitemapTask, cfg: Config, conn) -> None:
    signal.signal(signal.SIGINT, signal.SIG_IGN)
    if not logging.getLogger(LOGGER_NAME).handlers:
        setup_root_logger(Path(cfg.output_dir))
    try:
        outcome = asyncio.run(process_sitemap_task(task, cfg))
    except Exception as e:
        outcome = Failure(domain=task.domain, url=task.url, error=f"{type(e).__name__}: {e}")
    try:
        conn.send(outcome)
    finally:
        conn.close()


def _receive_outcome(conn, task: SitemapTask) -> ProcessingOutcome:
    try:
        return conn.recv()
    except EOFError:
        return Failure(domain=task.domain, url=task.url, error="Worker exited without a result")
    finally:
        conn.close()


class ProcessUnitRunner:
    """Runs each unit in its own OS process; the outcome comes back over a pipe."""

    def __init__(self, cfg: Config) -> None:
        self.cfg = cfg
        # A forked child would inherit the coordinator's running event loop.
        self._ctx = multiprocessing.get_context("spawn")
        self._live: set[multiprocessing.process.BaseProcess] = set()

    async def __call__(self, task: SitemapTask) -> ProcessingOutcome:
        parent_conn, child_conn = self._ctx.Pipe(duplex=False)
        proc = self._ctx.Process(
            target=_unit_main, args=(task, self.cfg, child_conn), name=f"unit-{task.domain}", daemon=True
        )
        proc.start()
        child_conn.close()
        self._live.add(proc)
        try:
            return await asyncio.to_thread(_receive_outcome, parent_conn, task)
        finally:
            self._live.discard(proc)
            await asyncio.to_thread(proc.join)

    def live_units(self) -> list[multiprocessing.process.BaseProcess]:
        return list(self._live)

    def terminate_all(self) -> None:
        for proc in list(self._live):
            if proc.is_alive():
                proc.terminate()


# ------------------------------ Scheduler ---------------------------------- #


class UnitState(enum.Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    TERMINATED = "terminated"


ALLOWED_TRANSITIONS = {
    UnitState.PENDING: {UnitState.RUNNING},
    UnitState.RUNNING: {UnitState.SUCCEEDED, UnitState.FAILED},
    UnitState.SUCCEEDED: {UnitState.TERMINATED},
    UnitState.FAILED: {UnitState.TERMINATED},
    UnitState.TERMINATED: set(),
}


@dataclasses.dataclass
class BatchReport:
    outcomes: list[ProcessingOutcome]
    articles_generated: int
    timestamp: str

    @property
    def successes(self) -> list[DomainResult]:
        return [o.result for o in self.outcomes if isinstance(o, Success)]

    @property
    def failures(self) -> list[Failure]:
        return [o for o in self.outcomes if isinstance(o, Failure)]


class TaskScheduler:
    """Fans sitemap tasks out to units, at most `max_concurrency` at a time."""

    def __init__(
        self,
        runner: UnitRunner,
        *,
        max_concurrency: int = 5,
        inter_task_delay: float = 1.0,
        store: Optional[OutputStore] = None,
        clock: Callable[[], str] = file_timestamp,
    ) -> None:
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be at least 1")
        self.runner = runner
        self.max_concurrency = max_concurrency
        self.inter_task_delay = max(0.0, inter_task_delay)
        self.store = store
        self.clock = clock
        self.logger = get_domain_logger("ALL")
        self.states: dict[int, UnitState] = {}
        self.peak_running = 0

    @property
    def running(self) -> int:
        return sum(1 for s in self.states.values() if s is UnitState.RUNNING)

    def _transition(self, index: int, new: UnitState) -> None:
        current = self.states[index]
        if new not in ALLOWED_TRANSITIONS[current]:
            raise RuntimeError(f"Unit {index} cannot move from {current.value} to {new.value}")
        self.states[index] = new
        if new is UnitState.RUNNING:
            self.peak_running = max(self.peak_running, self.running)

    async def run(self, tasks: Sequence[SitemapTask]) -> BatchReport:
        self.logger.info(f"Processing {len(tasks)} sitemaps...")
        self.states = {i: UnitState.PENDING for i in range(len(tasks))}
        slots = asyncio.Semaphore(self.max_concurrency)
        pending: list[asyncio.Task[ProcessingOutcome]] = []
        try:
            for index, task in enumerate(tasks):
                await slots.acquire()
                self._transition(index, UnitState.RUNNING)
                pending.append(asyncio.create_task(self._run_unit(index, task, slots)))
                await asyncio.sleep(self.inter_task_delay)
            outcomes = list(await asyncio.gather(*pending))
        except asyncio.CancelledError:
            self.logger.warning("Shutting down: terminating all running units")
            for t in pending:
                t.cancel()
            terminate = getattr(self.runner, "terminate_all", None)
            if terminate is not None:
                terminate()
            raise

        timestamp = self.clock()
        report = BatchReport(outcomes=outcomes, articles_generated=0, timestamp=timestamp)
        self.write_summaries(report.successes, timestamp)
        report.articles_generated = sum(1 for r in report.successes if r.processed_keyword != NO_KEYWORD)
        self.logger.info(
            f"All processing complete. {report.articles_generated} articles generated, "
            f"{len(report.failures)} domain(s) failed. See output folders for details."
        )
        return report

    async def _run_unit(self, index: int, task: SitemapTask, slots: asyncio.Semaphore) -> ProcessingOutcome:
        try:
            try:
                outcome = await self.runner(task)
            except Exception as e:
                outcome = Failure(domain=task.domain, url=task.url, error=f"{type(e).__name__}: {e}")
            if isinstance(outcome, Success):
                self._transition(index, UnitState.SUCCEEDED)
            else:
                self._transition(index, UnitState.FAILED)
                self.logger.error(
                    f"Failed processing {task.url} ({outcome.domain}) after {outcome.attempts} attempt(s): {outcome.error}"
                )
            return outcome
        finally:
            if self.states[index] is not UnitState.RUNNING:
                self._transition(index, UnitState.TERMINATED)
            else:
                # Cancelled mid-run.
                self.states[index] = UnitState.TERMINATED
            slots.release()

    def write_summaries(self, results: Iterable[DomainResult], timestamp: str) -> None:
        for r in results:
            store = self.store or OutputStore(r.output_dir.parent)
            try:
                store.write_text(r.output_dir / f"summary_{timestamp}.txt", r.summary_line())
            except PersistenceError as e:
                get_domain_logger(r.domain).error(f"Could not write summary: {e}")


# ------------------------------- CLI --------------------------------------- #


def parse_args(argv: Optional[Iterable[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Mine sitemap URLs for keywords and generate articles.")
    parser.add_argument("--config", "-c", type=Path, help="Path to YAML configuration file.")
    parser.add_argument("--sitemaps", "-s", type=Path, help="Newline-delimited file of sitemap URLs.")
    parser.add_argument("--output", "-o", type=Path, help="Output root directory.")
    return parser.parse_args(argv)


def load_config(args: argparse.Namespace) -> Config:
    cfg = Config.from_yaml(args.config) if args.config else Config()
    overrides = {}
    if args.sitemaps:
        overrides["sitemaps_file"] = str(args.sitemaps)
    if args.output:
        overrides["output_dir"] = str(args.output)
    return dataclasses.replace(cfg, **overrides).with_environment()


def build_scheduler(cfg: Config, runner: UnitRunner) -> TaskScheduler:
    return TaskScheduler(
        runner,
        max_concurrency=cfg.max_workers,
        inter_task_delay=cfg.rate_limit_delay,
        store=OutputStore(Path(cfg.output_dir)),
    )


async def main_async(cfg: Config) -> BatchReport:
    root = get_domain_logger("ALL")
    tasks = load_sitemap_tasks(Path(cfg.sitemaps_file), root)
    if not tasks:
        root.warning(f"No valid sitemap URLs in {cfg.sitemaps_file}")
    if cfg.isolated_units:
        return await build_scheduler(cfg, ProcessUnitRunner(cfg)).run(tasks)
    async with build_http_client(cfg) as client, build_llm_client(cfg) as llm:
        runner = InProcessUnitRunner(build_processor(cfg, client, llm))
        return await build_scheduler(cfg, runner).run(tasks)


def main(argv: Optional[Iterable[str]] = None) -> None:
    args = parse_args(argv)
    cfg = load_config(args)
    output_root = Path(cfg.output_dir)
    ensure_dir(output_root)
    setup_root_logger(output_root)
    root = get_domain_logger("ALL")
    try:
        validate_startup(cfg)
        if not Path(cfg.sitemaps_file).is_file():
            raise StartupConfigurationError(f"Sitemap list not found: {cfg.sitemaps_file}")
    except StartupConfigurationError as e:
        root.error(str(e))
        sys.exit(1)
    try:
        asyncio.run(main_async(cfg))
    except KeyboardInterrupt:
        root.warning("Interrupted by user")
        sys.exit(130)


if __name__ == "__main__":
    main()
