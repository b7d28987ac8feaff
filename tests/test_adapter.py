from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

from leafctl.core.adapter import ElmAdapter
from leafctl.core.catalog_loader import load_catalog
from leafctl.core.clock import VirtualClock, settle
from leafctl.core.errors import AdapterInitFailure, AdapterResponseError, CommandTimeout
from leafctl.core.model import CommandCatalog
from leafctl.core.simulator import SimulatedLink, SimulatedResponder, preset_named
from leafctl.transports.base import NotificationHandler

INIT_SEQUENCE = [
    "ATZ",
    "ATE0",
    "ATL0",
    "ATS0",
    "ATH1",
    "ATSP6",
    "ATCAF0",
    "ATSH79B",
    "ATFCSH79B",
    "ATFCSD300000",
    "ATFCSM1",
]


class ScriptedLink:
    """Answers each command from ``replies``; unknown commands get OK, ``None`` stays silent."""

    def __init__(self, replies: dict[str, str | None] | None = None) -> None:
        self.replies = replies or {}
        self.sent: list[str] = []
        self.handler: NotificationHandler | None = None

    async def write(self, data: bytes) -> None:
        command = data.decode("ascii").strip()
        self.sent.append(command)
        reply = self.replies.get(command, "OK")
        if reply is None or self.handler is None:
            return
        asyncio.get_running_loop().call_soon(self.handler, f"{reply}\r\r>".encode("ascii"))


@pytest.fixture
def catalog(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> CommandCatalog:
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "cfg"))
    monkeypatch.setenv("XDG_DATA_HOME", str(tmp_path / "data"))
    return load_catalog().catalog


def _scripted(link: ScriptedLink, clock: VirtualClock | None = None, **kwargs) -> ElmAdapter:
    adapter = ElmAdapter(link.write, clock or VirtualClock(), default_header="79B", reset_delay=0.0, **kwargs)
    link.handler = adapter.feed
    return adapter


def _simulated(catalog: CommandCatalog, preset: str = "Medium Battery (64%)") -> tuple[ElmAdapter, SimulatedResponder]:
    responder = SimulatedResponder(catalog, preset_named(preset))
    link = SimulatedLink(responder)
    adapter = ElmAdapter(link.write, VirtualClock(), default_header=catalog.default_header, reset_delay=0.0)
    link.subscribe(adapter.feed)
    return adapter, responder


def test_initialize_sends_setup_sequence() -> None:
    async def scenario() -> None:
        link = ScriptedLink({"ATZ": "ELM327 v1.5"})
        adapter = _scripted(link)

        await adapter.initialize()

        assert link.sent == INIT_SEQUENCE
        assert adapter.initialized
        assert adapter.active_header == "79B"

    asyncio.run(scenario())


def test_initialize_waits_for_reset_delay() -> None:
    async def scenario() -> None:
        clock = VirtualClock()
        link = ScriptedLink({"ATZ": "ELM327 v1.5"})
        adapter = ElmAdapter(link.write, clock, default_header="79B")
        link.handler = adapter.feed

        task = asyncio.ensure_future(adapter.initialize())
        await clock.run_for(0.5)
        assert link.sent == ["ATZ"]
        assert not task.done()

        await clock.run_for(0.5)
        assert task.done()
        await task
        assert link.sent == INIT_SEQUENCE

    asyncio.run(scenario())


def test_unacknowledged_init_step_is_retried_then_fails() -> None:
    async def scenario() -> None:
        clock = VirtualClock()
        link = ScriptedLink({"ATL0": "?"})
        adapter = _scripted(link, clock)

        task = asyncio.ensure_future(adapter.initialize())
        await clock.run_for(1)

        with pytest.raises(AdapterInitFailure, match="ATL0"):
            await task
        assert link.sent.count("ATL0") == 3
        assert "ATS0" not in link.sent
        assert not adapter.initialized

    asyncio.run(scenario())


def test_multi_frame_battery_reply_is_decoded(catalog: CommandCatalog) -> None:
    async def scenario() -> None:
        adapter, _ = _simulated(catalog)
        await adapter.initialize()

        values = await adapter.run(catalog.get("lbc"))
        assert values["state_of_charge"] == 64
        assert values["hv_battery_health"] == 92
        assert values["hv_battery_Ah"] == 50
        assert values["hv_battery_voltage"] == 355

    asyncio.run(scenario())


def test_header_is_switched_only_when_it_changes(catalog: CommandCatalog) -> None:
    async def scenario() -> None:
        adapter, responder = _simulated(catalog)
        await adapter.initialize()
        range_remaining = catalog.get("range_remaining")

        first = await adapter.run(range_remaining, catalog.header_for(range_remaining))
        second = await adapter.run(range_remaining, catalog.header_for(range_remaining))

        assert first == second == {"range_remaining": pytest.approx(120.0)}
        assert responder.received.count("ATSH743") == 1
        assert responder.received.count("ATFCSH743") == 1
        assert adapter.active_header == "743"

    asyncio.run(scenario())


def test_command_without_prompt_times_out() -> None:
    async def scenario() -> None:
        clock = VirtualClock()
        link = ScriptedLink({"0100": None})
        adapter = _scripted(link, clock)

        task = asyncio.ensure_future(adapter.send_raw("0100"))
        await clock.run_for(4)
        assert not task.done()

        await clock.run_for(1)
        with pytest.raises(CommandTimeout, match="within 5s for '0100'"):
            await task
        assert not adapter.busy

    asyncio.run(scenario())


def test_error_reply_is_raised(catalog: CommandCatalog) -> None:
    async def scenario() -> None:
        link = ScriptedLink({"022101": "NO DATA"})
        adapter = _scripted(link)
        await adapter.initialize()

        with pytest.raises(AdapterResponseError, match="NO DATA"):
            await adapter.run(catalog.get("lbc"))

    asyncio.run(scenario())


def test_echo_and_searching_lines_are_dropped(catalog: CommandCatalog) -> None:
    async def scenario() -> None:
        link = ScriptedLink({"03220E24": "03220E24\rSEARCHING...\r763 05 62 0E 24 00 18"})
        adapter = _scripted(link)
        await adapter.initialize()

        values = await adapter.run(catalog.get("range_remaining"), "743")
        assert values == {"range_remaining": pytest.approx(2.4)}
        assert link.sent[-3:] == ["ATSH743", "ATFCSH743", "03220E24"]

    asyncio.run(scenario())


def test_concurrent_runs_are_serialized(catalog: CommandCatalog) -> None:
    async def scenario() -> None:
        adapter, responder = _simulated(catalog)
        await adapter.initialize()
        responder.received.clear()
        range_remaining = catalog.get("range_remaining")

        battery, remaining = await asyncio.gather(
            adapter.run(catalog.get("lbc")),
            adapter.run(range_remaining, catalog.header_for(range_remaining)),
        )

        assert battery["state_of_charge"] == 64
        assert remaining == {"range_remaining": pytest.approx(120.0)}
        assert responder.received == ["022101", "ATSH743", "ATFCSH743", "03220E24"]

    asyncio.run(scenario())


def test_send_raw_and_unsolicited_output() -> None:
    async def scenario() -> None:
        link = ScriptedLink({"ATRV": "12.6V"})
        adapter = _scripted(link)

        adapter.feed(b"STOPPED\r>")
        await settle()
        assert await adapter.send_raw("ATRV ") == ["12.6V"]

    asyncio.run(scenario())
