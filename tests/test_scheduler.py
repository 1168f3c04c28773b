import asyncio
import random
import signal
import socket
import time

import pytest

import sitemap_keywords as sk
from conftest import FakeFetcher, FakeProvider, counting_clock, urlset


class RecordingRunner:
    """Fake unit runner that tracks how many units overlap."""

    def __init__(self, outcome_for, hold: float = 0.01) -> None:
        self.outcome_for = outcome_for
        self.hold = hold
        self.active = 0
        self.peak = 0
        self.started: list[str] = []
        self.terminated = False

    async def __call__(self, task):
        self.active += 1
        self.peak = max(self.peak, self.active)
        self.started.append(task.url)
        try:
            await asyncio.sleep(self.hold)
            return self.outcome_for(task)
        finally:
            self.active -= 1

    def terminate_all(self):
        self.terminated = True


def _tasks(n):
    return [sk.SitemapTask(f"https://site{i}.com/sitemap.xml") for i in range(n)]


def _result(task, tmp_path, processed="None"):
    out = tmp_path / f"{task.domain}_ts"
    out.mkdir(parents=True, exist_ok=True)
    return sk.Success(
        sk.DomainResult(
            domain=task.domain,
            output_dir=out,
            timestamp="ts",
            keywords=("A B NJ",) if processed != "None" else (),
            phrases=("C D",),
            processed_keyword=processed,
        )
    )


@pytest.mark.parametrize("limit", [1, 2, 3])
def test_never_more_than_max_concurrency_units_running(tmp_path, limit):
    runner = RecordingRunner(lambda t: _result(t, tmp_path), hold=0.02)
    scheduler = sk.TaskScheduler(runner, max_concurrency=limit, inter_task_delay=0, clock=counting_clock())
    report = asyncio.run(scheduler.run(_tasks(8)))
    assert runner.peak <= limit
    assert scheduler.peak_running <= limit
    assert len(report.outcomes) == 8
    assert set(scheduler.states.values()) == {sk.UnitState.TERMINATED}


def test_launches_in_input_order(tmp_path):
    runner = RecordingRunner(lambda t: _result(t, tmp_path), hold=0)
    tasks = _tasks(5)
    asyncio.run(sk.TaskScheduler(runner, max_concurrency=2, inter_task_delay=0).run(tasks))
    assert runner.started == [t.url for t in tasks]


def test_all_failures_still_complete(tmp_path):
    runner = RecordingRunner(lambda t: sk.Failure(t.domain, t.url, "FetchError: down", 3))
    report = asyncio.run(sk.TaskScheduler(runner, max_concurrency=2, inter_task_delay=0).run(_tasks(4)))
    assert report.successes == []
    assert len(report.failures) == 4
    assert report.articles_generated == 0


def test_runner_exception_becomes_failure(tmp_path):
    def outcome_for(task):
        if task.domain == "site1.com":
            raise RuntimeError("worker crashed")
        return _result(task, tmp_path, processed="A B NJ")

    report = asyncio.run(sk.TaskScheduler(RecordingRunner(outcome_for), inter_task_delay=0).run(_tasks(3)))
    assert [f.domain for f in report.failures] == ["site1.com"]
    assert report.failures[0].error == "RuntimeError: worker crashed"
    assert report.articles_generated == 2


def test_summaries_written_and_articles_counted(tmp_path):
    def outcome_for(task):
        return _result(task, tmp_path, processed="A B NJ" if task.domain == "site0.com" else "None")

    scheduler = sk.TaskScheduler(
        RecordingRunner(outcome_for), inter_task_delay=0, store=sk.OutputStore(tmp_path), clock=lambda: "END"
    )
    report = asyncio.run(scheduler.run(_tasks(2)))
    assert report.articles_generated == 1
    assert report.timestamp == "END"
    summary0 = (tmp_path / "site0.com_ts" / "summary_END.txt").read_text(encoding="utf-8")
    summary1 = (tmp_path / "site1.com_ts" / "summary_END.txt").read_text(encoding="utf-8")
    assert summary0 == "site0.com: 1 keywords, 1 phrases, processed keyword: A B NJ"
    assert summary1 == "site1.com: 0 keywords, 1 phrases, processed keyword: None"


def test_missing_output_dir_does_not_abort_summaries(tmp_path):
    def outcome_for(task):
        result = _result(task, tmp_path).result
        if task.domain == "site0.com":
            result = sk.DomainResult(
                domain=result.domain,
                output_dir=tmp_path / "gone",
                timestamp="ts",
                keywords=(),
                phrases=(),
            )
        return sk.Success(result)

    scheduler = sk.TaskScheduler(RecordingRunner(outcome_for), inter_task_delay=0, clock=lambda: "END")
    asyncio.run(scheduler.run(_tasks(2)))
    assert (tmp_path / "site1.com_ts" / "summary_END.txt").exists()


def test_inter_task_delay_applies_between_launches(tmp_path):
    runner = RecordingRunner(lambda t: _result(t, tmp_path), hold=0)

    async def go():
        loop = asyncio.get_running_loop()
        start = loop.time()
        await sk.TaskScheduler(runner, max_concurrency=10, inter_task_delay=0.05).run(_tasks(3))
        return loop.time() - start

    assert asyncio.run(go()) >= 0.14


def test_cancel_terminates_units(tmp_path):
    runner = RecordingRunner(lambda t: _result(t, tmp_path), hold=10)
    scheduler = sk.TaskScheduler(runner, max_concurrency=2, inter_task_delay=0)

    async def go():
        job = asyncio.create_task(scheduler.run(_tasks(4)))
        await asyncio.sleep(0.05)
        job.cancel()
        with pytest.raises(asyncio.CancelledError):
            await job

    asyncio.run(go())
    assert runner.terminated
    assert runner.started == [t.url for t in _tasks(2)]


def test_rejects_zero_concurrency():
    with pytest.raises(ValueError):
        sk.TaskScheduler(lambda t: None, max_concurrency=0)


def test_in_process_runner_end_to_end(tmp_path):
    sitemap = urlset("https://acme.com/drain-cleaning-nj", "https://acme.com/contact-us")
    store = sk.OutputStore(tmp_path / "output")
    processor = sk.SitemapProcessor(
        FakeFetcher(sitemap),
        sk.ArticleGenerator(FakeProvider("Body"), delay=0),
        store,
        delay=0,
        rng=random.Random(1),
        clock=counting_clock(),
    )
    scheduler = sk.TaskScheduler(sk.InProcessUnitRunner(processor), inter_task_delay=0, store=store, clock=lambda: "END")
    report = asyncio.run(scheduler.run([sk.SitemapTask("https://acme.com/sitemap.xml")]))
    (result,) = report.successes
    assert result.processed_keyword == "Drain Cleaning NJ"
    assert (result.output_dir / "summary_END.txt").exists()
    assert (result.output_dir / f"drain_cleaning_nj_{result.timestamp}.txt").read_text(encoding="utf-8") == "Body"
    assert report.articles_generated == 1


def test_process_runner_reports_failure_from_isolated_unit(tmp_path):
    cfg = sk.Config(
        output_dir=str(tmp_path),
        rate_limit_delay=0,
        max_attempts=1,
        timeout=2,
        openai_api_key="test-key",
    )
    runner = sk.ProcessUnitRunner(cfg)
    outcome = asyncio.run(runner(sk.SitemapTask("http://127.0.0.1:9/sitemap.xml")))
    assert isinstance(outcome, sk.Failure)
    assert outcome.domain == "127.0.0.1"
    assert outcome.attempts == 1


def test_terminate_all_kills_a_hanging_isolated_unit(tmp_path):
    # Accepts connections (via the backlog) but never sends a response.
    server = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    server.bind(("127.0.0.1", 0))
    server.listen(8)
    port = server.getsockname()[1]
    cfg = sk.Config(output_dir=str(tmp_path), rate_limit_delay=0, max_attempts=1, timeout=60, openai_api_key="k")
    runner = sk.ProcessUnitRunner(cfg)

    async def go():
        unit = asyncio.create_task(runner(sk.SitemapTask(f"http://127.0.0.1:{port}/sitemap.xml")))
        await asyncio.sleep(1.0)
        (proc,) = runner.live_units()
        assert proc.is_alive()
        unit.cancel()
        runner.terminate_all()
        start = time.monotonic()
        with pytest.raises(asyncio.CancelledError):
            await unit
        return proc, time.monotonic() - start

    try:
        proc, elapsed = asyncio.run(go())
    finally:
        server.close()
    assert proc.exitcode == -signal.SIGTERM
    assert elapsed < 5
    assert runner.live_units() == []
