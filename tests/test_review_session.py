import asyncio
from pathlib import Path
from typing import Any

import aiohttp
import pytest

from plan_review.browser import browser_command
from plan_review.errors import BrowserLaunchError
from plan_review.models import Decision, Proposal, ReviewEndReason, ReviewOutcome
from plan_review.server import ReviewServer, ServerState
from plan_review.session import ResolutionGuard, run_review_session
from plan_review.settings import RuntimeSettings

APPROVE_BODY = {
    "decision": "approve",
    "selectedPhases": [1, 2],
    "priority": "high",
    "approach": "balanced",
    "requirements": [],
    "constraints": [],
    "notes": "",
}


class Recorder:
    def __init__(self) -> None:
        self.submitted: list[Decision] = []
        self.cancelled: list[ReviewEndReason] = []
        self.done = asyncio.Event()

    def on_submit(self, decision: Decision) -> None:
        self.submitted.append(decision)
        self.done.set()

    def on_cancel(self, reason: ReviewEndReason) -> None:
        self.cancelled.append(reason)
        self.done.set()


def _server(proposal: Proposal, recorder: Recorder, **kwargs: Any) -> ReviewServer:
    kwargs.setdefault("grace_delay", 0.05)
    return ReviewServer(
        proposal=proposal,
        on_submit=recorder.on_submit,
        on_cancel=recorder.on_cancel,
        cwd="/work/project",
        **kwargs,
    )


def _endpoint(url: str, path: str, token: str) -> str:
    return f"{url.split('/?')[0]}{path}?session={token}"


def _settings(tmp_path: Path, *, idle: float = 5.0, heartbeat: float = 1.0) -> RuntimeSettings:
    return RuntimeSettings(idle_timeout=idle, heartbeat_interval=heartbeat, grace_delay=0.05, plans_dir=str(tmp_path))


def test_browser_command_per_platform() -> None:
    url = "http://127.0.0.1:8000/?session=abc"
    assert browser_command(url, "darwin") == ["open", url]
    assert browser_command(url, "win32") == ["cmd", "/c", "start", "", url]
    assert browser_command(url, "linux") == ["xdg-open", url]


@pytest.mark.asyncio
async def test_resolution_guard_first_resolution_wins() -> None:
    guard = ResolutionGuard()
    assert guard.resolve(ReviewOutcome(reason=ReviewEndReason.CANCELLED))
    assert not guard.resolve(ReviewOutcome(reason=ReviewEndReason.TIMEOUT))
    assert (await guard.wait()).reason is ReviewEndReason.CANCELLED


@pytest.mark.asyncio
async def test_server_serves_page_assets_and_heartbeat(proposal: Proposal) -> None:
    server = _server(proposal, Recorder(), timeout=30.0)
    url = await server.start()
    try:
        assert url.startswith("http://127.0.0.1:")
        async with aiohttp.ClientSession() as client:
            async with client.get(url) as response:
                assert response.status == 200
                assert response.headers["Cache-Control"].startswith("no-store")
                assert response.headers["Access-Control-Allow-Origin"] == "*"
                html = await response.text()
            assert "Add rate limiting" in html
            assert server.token in html
            assert "__PLAN_DATA_JSON__" not in html
            assert "__SESSION_TOKEN__" not in html

            async with client.get(_endpoint(url, "/styles.css", server.token)) as response:
                assert response.status == 200
                assert response.content_type == "text/css"
            async with client.get(_endpoint(url, "/script.js", server.token)) as response:
                assert response.status == 200

            async with client.get(_endpoint(url, "/heartbeat", server.token)) as response:
                payload = await response.json()
            assert payload["ok"] is True
            assert 0 < payload["remaining"] <= 30

            async with client.options(_endpoint(url, "/submit", server.token)) as response:
                assert response.status == 200
                assert "POST" in response.headers["Access-Control-Allow-Methods"]
    finally:
        await server.close()


def test_server_page_data_escapes_script_close(proposal: Proposal) -> None:
    hostile = proposal.model_copy(update={"overview": "</script><script>alert(1)</script>"})
    server = _server(hostile, Recorder())
    html = server.render_index()
    assert "</script><script>alert(1)" not in html
    assert server.page_data()["cwd"] == "/work/project"


@pytest.mark.asyncio
async def test_server_rejects_foreign_session_token(proposal: Proposal) -> None:
    recorder = Recorder()
    server = _server(proposal, recorder)
    url = await server.start()
    try:
        async with aiohttp.ClientSession() as client:
            async with client.get(_endpoint(url, "/", "not-the-token")) as response:
                assert response.status == 403
            async with client.post(_endpoint(url, "/submit", "not-the-token"), json=APPROVE_BODY) as response:
                assert response.status == 403
            async with client.post(_endpoint(url, "/cancel", "not-the-token")) as response:
                assert response.status == 403
        assert server.is_serving
    finally:
        await server.close()
    assert recorder.submitted == []
    assert recorder.cancelled == []


@pytest.mark.asyncio
async def test_server_bad_submissions_keep_session_open(proposal: Proposal) -> None:
    recorder = Recorder()
    server = _server(proposal, recorder)
    url = await server.start()
    submit = _endpoint(url, "/submit", server.token)
    try:
        async with aiohttp.ClientSession() as client:
            async with client.post(submit, data=b"{not json", headers={"Content-Type": "application/json"}) as response:
                assert response.status == 400
                assert (await response.json())["error"] == "Invalid JSON"
            async with client.post(submit, json={"decision": "perhaps"}) as response:
                assert response.status == 400
            async with client.post(submit, json={**APPROVE_BODY, "selectedPhases": [1, 7]}) as response:
                assert response.status == 400
                assert "7" in (await response.json())["error"]
        assert server.is_serving
    finally:
        await server.close()
    assert recorder.submitted == []


@pytest.mark.asyncio
async def test_server_accepts_exactly_one_terminal_action(proposal: Proposal) -> None:
    recorder = Recorder()
    server = _server(proposal, recorder)
    url = await server.start()
    try:
        async with aiohttp.ClientSession() as client:
            async with client.post(_endpoint(url, "/submit", server.token), json=APPROVE_BODY) as response:
                assert response.status == 200
                assert await response.json() == {"success": True}
            async with client.post(_endpoint(url, "/cancel", server.token)) as response:
                assert response.status == 409
            async with client.post(_endpoint(url, "/submit", server.token), json=APPROVE_BODY) as response:
                assert response.status == 409
            async with client.get(_endpoint(url, "/heartbeat", server.token)) as response:
                assert (await response.json())["ok"] is False

        await asyncio.wait_for(recorder.done.wait(), timeout=2.0)
        await asyncio.sleep(0.1)
    finally:
        await server.close()

    assert server.resolution is ReviewEndReason.SUBMITTED
    assert len(recorder.submitted) == 1
    assert recorder.submitted[0].priority == "high"
    assert recorder.cancelled == []


@pytest.mark.asyncio
async def test_server_cancel_fires_after_grace_delay(proposal: Proposal) -> None:
    recorder = Recorder()
    server = _server(proposal, recorder, grace_delay=0.3)
    url = await server.start()
    try:
        async with aiohttp.ClientSession() as client:
            async with client.post(_endpoint(url, "/cancel", server.token)) as response:
                assert response.status == 200
        assert recorder.cancelled == []
        await asyncio.wait_for(recorder.done.wait(), timeout=2.0)
    finally:
        await server.close()
    assert recorder.cancelled == [ReviewEndReason.CANCELLED]


@pytest.mark.asyncio
async def test_server_idle_timeout_cancels(proposal: Proposal) -> None:
    recorder = Recorder()
    server = _server(proposal, recorder, timeout=0.3)
    loop = asyncio.get_running_loop()
    await server.start()
    started = loop.time()
    try:
        await asyncio.wait_for(recorder.done.wait(), timeout=3.0)
        elapsed = loop.time() - started
    finally:
        await server.close()
    assert recorder.cancelled == [ReviewEndReason.TIMEOUT]
    assert 0.25 <= elapsed < 1.5


@pytest.mark.asyncio
async def test_server_foreign_token_requests_do_not_extend_deadline(proposal: Proposal) -> None:
    recorder = Recorder()
    server = _server(proposal, recorder, timeout=0.4)
    url = await server.start()
    loop = asyncio.get_running_loop()
    started = loop.time()
    try:
        async with aiohttp.ClientSession() as client:
            while not recorder.done.is_set() and loop.time() - started < 3.0:
                async with client.get(_endpoint(url, "/heartbeat", "not-the-token")) as response:
                    await response.read()
                async with client.get(_endpoint(url, "/", "not-the-token")) as response:
                    assert response.status == 403
                await asyncio.sleep(0.05)
        elapsed = loop.time() - started
    finally:
        await server.close()
    assert recorder.cancelled == [ReviewEndReason.TIMEOUT]
    assert elapsed < 1.5


@pytest.mark.asyncio
async def test_server_heartbeats_keep_session_alive(proposal: Proposal) -> None:
    recorder = Recorder()
    server = _server(proposal, recorder, timeout=0.5, heartbeat_interval=0.05)
    url = await server.start()
    heartbeat = _endpoint(url, "/heartbeat", server.token)
    loop = asyncio.get_running_loop()
    try:
        async with aiohttp.ClientSession() as client:
            until = loop.time() + 2.5
            while loop.time() < until:
                async with client.get(heartbeat) as response:
                    assert (await response.json())["ok"] is True
                await asyncio.sleep(0.05)
        assert recorder.cancelled == []
        assert server.is_serving

        await asyncio.wait_for(recorder.done.wait(), timeout=3.0)
    finally:
        await server.close()
    assert recorder.cancelled == [ReviewEndReason.TIMEOUT]


@pytest.mark.asyncio
async def test_server_close_is_idempotent_and_releases_port(proposal: Proposal) -> None:
    server = _server(proposal, Recorder())
    url = await server.start()
    await server.close()
    await server.close()
    assert server.state is ServerState.CLOSED

    async with aiohttp.ClientSession() as client:
        with pytest.raises(aiohttp.ClientConnectionError):
            async with client.get(url):
                pass


async def _perform(actions: list[str], url: str, abort: asyncio.Event) -> None:
    token = url.split("session=")[1]
    async with aiohttp.ClientSession() as client:
        for action in actions:
            if action == "abort":
                abort.set()
            elif action == "submit":
                async with client.post(_endpoint(url, "/submit", token), json=APPROVE_BODY) as response:
                    await response.read()
            else:
                async with client.post(_endpoint(url, "/cancel", token)) as response:
                    await response.read()
            await asyncio.sleep(0.01)


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("actions", "expected"),
    [
        (["submit", "cancel", "abort"], ReviewEndReason.SUBMITTED),
        (["submit", "abort", "cancel"], ReviewEndReason.SUBMITTED),
        (["cancel", "submit", "abort"], ReviewEndReason.CANCELLED),
        (["cancel", "abort", "submit"], ReviewEndReason.CANCELLED),
        (["abort", "submit", "cancel"], ReviewEndReason.ABORTED),
        (["abort", "cancel", "submit"], ReviewEndReason.ABORTED),
    ],
)
async def test_review_session_first_action_wins(
    proposal: Proposal, tmp_path: Path, actions: list[str], expected: ReviewEndReason
) -> None:
    abort = asyncio.Event()
    servers: list[ReviewServer] = []

    def factory(**kwargs: Any) -> ReviewServer:
        servers.append(ReviewServer(**kwargs))
        return servers[-1]

    async def launcher(url: str) -> None:
        await _perform(actions, url, abort)

    outcome = await asyncio.wait_for(
        run_review_session(
            proposal, abort, settings=_settings(tmp_path), cwd=tmp_path, launcher=launcher, server_factory=factory
        ),
        timeout=5.0,
    )

    assert outcome.reason is expected
    if expected is ReviewEndReason.SUBMITTED:
        assert outcome.decision is not None
        assert outcome.decision.selected_phases == [1, 2]
    else:
        assert outcome.decision is None
    assert servers[0].state is ServerState.CLOSED


@pytest.mark.asyncio
async def test_review_session_times_out_without_interaction(proposal: Proposal, tmp_path: Path) -> None:
    async def launcher(url: str) -> None:
        return None

    outcome = await asyncio.wait_for(
        run_review_session(proposal, settings=_settings(tmp_path, idle=0.3, heartbeat=0.1), launcher=launcher),
        timeout=5.0,
    )
    assert outcome.reason is ReviewEndReason.TIMEOUT
    assert outcome.decision is None
    assert outcome.abandoned


@pytest.mark.asyncio
async def test_review_session_reports_launch_failure(proposal: Proposal, tmp_path: Path) -> None:
    servers: list[ReviewServer] = []

    def factory(**kwargs: Any) -> ReviewServer:
        servers.append(ReviewServer(**kwargs))
        return servers[-1]

    async def launcher(url: str) -> None:
        raise BrowserLaunchError("xdg-open not found", url=url)

    outcome = await asyncio.wait_for(
        run_review_session(proposal, settings=_settings(tmp_path), launcher=launcher, server_factory=factory),
        timeout=5.0,
    )
    assert outcome.reason is ReviewEndReason.LAUNCH_FAILED
    assert outcome.error == "xdg-open not found"
    assert outcome.url == servers[0].url
    assert servers[0].state is ServerState.CLOSED


@pytest.mark.asyncio
async def test_review_session_reports_server_start_failure(proposal: Proposal, tmp_path: Path) -> None:
    launched: list[str] = []

    def factory(**kwargs: Any) -> ReviewServer:
        return ReviewServer(**{**kwargs, "host": "192.0.2.1"})

    async def launcher(url: str) -> None:
        launched.append(url)

    outcome = await asyncio.wait_for(
        run_review_session(proposal, settings=_settings(tmp_path), launcher=launcher, server_factory=factory),
        timeout=5.0,
    )
    assert outcome.reason is ReviewEndReason.SERVER_ERROR
    assert "Failed to start review server" in (outcome.error or "")
    assert launched == []
