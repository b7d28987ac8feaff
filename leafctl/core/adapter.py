"""ELM327 dialogue: initialization, prompt-terminated exchanges, and command runs."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable

from leafctl.core.can_frames import flow_control_frame, parse_lines, reassemble
from leafctl.core.clock import Clock, wait_for
from leafctl.core.errors import AdapterInitFailure, AdapterResponseError, CommandTimeout
from leafctl.core.model import CommandSpec, Values

PROMPT = ">"
RESET_COMMAND = "ATZ"
RESET_DELAY = 1.0
INIT_RETRY_DELAY = 0.1
DEFAULT_COMMAND_TIMEOUT = 5.0
DEFAULT_INIT_RETRIES = 3

SETUP_COMMANDS = (
    "ATE0",  # echo off
    "ATL0",  # linefeeds off
    "ATS0",  # spaces off
    "ATH1",  # headers on
    "ATSP6",  # ISO 15765-4 CAN, 11 bit, 500 kbaud
    "ATCAF0",  # CAN auto formatting off
)
ERROR_REPLIES = (
    "NO DATA",
    "CAN ERROR",
    "STOPPED",
    "UNABLE TO CONNECT",
    "BUFFER FULL",
    "BUS INIT",
    "BUS ERROR",
    "ERROR",
    "?",
)

LOGGER = logging.getLogger(__name__)

WriteFunc = Callable[[bytes], Awaitable[None]]


class ElmAdapter:
    """Serialized command channel to an ELM327 over a write/notify link.

    ``write`` sends raw bytes to the adapter; every notification from the
    adapter must be passed to :meth:`feed`. Only one exchange is ever
    outstanding, so notifications always belong to the current command.
    """

    def __init__(
        self,
        write: WriteFunc,
        clock: Clock,
        *,
        default_header: str = "7DF",
        command_timeout: float = DEFAULT_COMMAND_TIMEOUT,
        init_retries: int = DEFAULT_INIT_RETRIES,
        strict_single_frame: bool = True,
        reset_delay: float = RESET_DELAY,
    ) -> None:
        self._write = write
        self._clock = clock
        self._default_header = default_header.upper()
        self._command_timeout = command_timeout
        self._init_retries = max(1, init_retries)
        self._strict_single_frame = strict_single_frame
        self._reset_delay = reset_delay
        self._lock = asyncio.Lock()
        self._pending: asyncio.Future[str] | None = None
        self._buffer = ""
        self._header: str | None = None
        self._initialized = False

    @property
    def initialized(self) -> bool:
        return self._initialized

    @property
    def active_header(self) -> str | None:
        return self._header

    @property
    def busy(self) -> bool:
        return self._lock.locked()

    def feed(self, data: bytes) -> None:
        text = data.decode("ascii", errors="replace").replace("\x00", "")
        pending = self._pending
        if pending is None or pending.done():
            LOGGER.debug("Dropping unsolicited adapter output %r", text)
            return
        LOGGER.debug("<< %r", text)
        self._buffer += text
        if PROMPT in self._buffer:
            response, _, _ = self._buffer.partition(PROMPT)
            self._buffer = ""
            pending.set_result(response)

    async def initialize(self) -> None:
        """Reset the adapter and configure it for raw CAN frames with flow control."""
        async with self._lock:
            self._initialized = False
            self._header = None
            LOGGER.info("Initializing adapter")
            await self._init_step(RESET_COMMAND, expect_ok=False)
            if self._reset_delay:
                await self._clock.sleep(self._reset_delay)
            for command in SETUP_COMMANDS:
                await self._init_step(command)
            await self._init_step(f"ATSH{self._default_header}")
            await self._init_step(f"ATFCSH{self._default_header}")
            await self._init_step(f"ATFCSD{flow_control_frame().hex().upper()}")
            await self._init_step("ATFCSM1")
            self._header = self._default_header
            self._initialized = True
            LOGGER.info("Adapter initialized")

    async def run(self, command: CommandSpec, header: str | None = None) -> Values:
        """Issue ``command`` and decode its reply. Timeouts are not retried."""
        target = (header or command.header or self._default_header).upper()
        async with self._lock:
            if target != self._header:
                await self._switch_header(target)
            lines = await self._exchange(command.request)

        _raise_for_error_reply(lines, command.request)
        payload = reassemble(parse_lines("\n".join(lines)), strict_single_frame=self._strict_single_frame)
        LOGGER.debug("%s payload: %s", command.name, payload.hex(" ").upper())
        values = command.decode_response(payload)
        LOGGER.info("%s -> %s", command.name, values)
        return values

    async def send_raw(self, text: str) -> list[str]:
        """Send one line verbatim and return the reply lines, for debugging."""
        async with self._lock:
            return await self._exchange(text.strip())

    async def _init_step(self, command: str, *, expect_ok: bool = True) -> None:
        last_reply = ""
        for attempt in range(1, self._init_retries + 1):
            try:
                lines = await self._exchange(command)
            except CommandTimeout as exc:
                last_reply = str(exc)
            else:
                if not expect_ok or _is_ok(lines):
                    return
                last_reply = " / ".join(lines) or "<empty>"
            LOGGER.warning(
                "Adapter did not acknowledge %s (attempt %d/%d): %s",
                command,
                attempt,
                self._init_retries,
                last_reply,
            )
            if attempt < self._init_retries:
                await self._clock.sleep(INIT_RETRY_DELAY)
        raise AdapterInitFailure(f"Adapter did not acknowledge {command}: {last_reply}")

    async def _switch_header(self, header: str) -> None:
        for command in (f"ATSH{header}", f"ATFCSH{header}"):
            lines = await self._exchange(command)
            if not _is_ok(lines):
                self._header = None
                raise AdapterResponseError(f"Adapter rejected {command}: {' / '.join(lines) or '<empty>'}")
        self._header = header

    async def _exchange(self, command: str) -> list[str]:
        future: asyncio.Future[str] = asyncio.get_running_loop().create_future()
        self._pending = future
        self._buffer = ""

        async def roundtrip() -> str:
            LOGGER.debug(">> %s", command)
            await self._write(f"{command}\r".encode("ascii"))
            return await future

        try:
            text = await wait_for(
                self._clock,
                roundtrip(),
                self._command_timeout,
                lambda: CommandTimeout(
                    f"No prompt from adapter within {self._command_timeout:g}s for '{command}'"
                ),
            )
        finally:
            self._pending = None
            self._buffer = ""
        return _reply_lines(text, command)


def _reply_lines(text: str, command: str) -> list[str]:
    lines: list[str] = []
    for raw in text.replace("\n", "\r").split("\r"):
        line = raw.strip()
        if not line or line.upper().startswith("SEARCHING"):
            continue
        if line.replace(" ", "").upper() == command.replace(" ", "").upper():
            continue
        lines.append(line)
    return lines


def _is_ok(lines: list[str]) -> bool:
    return any(line.upper() == "OK" for line in lines)


def _raise_for_error_reply(lines: list[str], request: str) -> None:
    if not lines:
        raise AdapterResponseError(f"Empty reply to {request}")
    for line in lines:
        upper = line.upper()
        if upper in ERROR_REPLIES or any(upper.startswith(reply) for reply in ERROR_REPLIES[:-1]):
            raise AdapterResponseError(f"Adapter answered '{line}' to {request}")
