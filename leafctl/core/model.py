"""Core data models used across the catalog, adapter, manager, and CLI."""

from __future__ import annotations

import enum
from collections.abc import Callable, Iterator, Mapping
from dataclasses import dataclass, field

from leafctl.core.errors import AdapterResponseError, CommandResolutionError, FrameParseError

Number = int | float
Values = dict[str, Number]
Decoder = Callable[[bytes], Values]
Encoder = Callable[[Mapping[str, Number]], bytes]

NEGATIVE_RESPONSE = 0x7F
POSITIVE_RESPONSE_OFFSET = 0x40


@dataclass(frozen=True)
class CharacteristicDescriptor:
    uuid: str
    properties: tuple[str, ...] = ()


@dataclass(frozen=True)
class ServiceDescriptor:
    uuid: str
    characteristics: tuple[CharacteristicDescriptor, ...] = ()


@dataclass(frozen=True)
class DeviceRecord:
    address: str
    name: str
    rssi: int | None = None
    service_uuids: tuple[str, ...] = ()
    manufacturer_data: dict[int, bytes] = field(default_factory=dict, compare=False)

    @property
    def label(self) -> str:
        return f"{self.name or '<unknown-device>'} ({self.address})"


class ConnectionStatus(str, enum.Enum):
    DISCONNECTED = "disconnected"
    SCANNING = "scanning"
    CONNECTING = "connecting"
    PROBING = "probing"
    CONNECTED = "connected"
    ERROR = "error"


@dataclass(frozen=True)
class StatusEvent:
    status: ConnectionStatus
    reason: str | None = None

    def __str__(self) -> str:
        if self.reason:
            return f"{self.status.value}: {self.reason}"
        return self.status.value


@dataclass
class RetryState:
    consecutive_failures: int = 0
    last_error: str | None = None
    backoff: float = 0.0

    def record_failure(self, message: str) -> None:
        self.consecutive_failures += 1
        self.last_error = message

    def reset(self) -> None:
        self.consecutive_failures = 0
        self.backoff = 0.0


@dataclass
class DeviceErrorStats:
    """Connection outcomes for one adapter address, keyed by error type."""

    total_errors: int = 0
    total_connections: int = 0
    successful_connections: int = 0
    consecutive_failures: int = 0
    error_counts: dict[str, int] = field(default_factory=dict)

    def record_error(self, error_type: str) -> None:
        self.total_errors += 1
        self.total_connections += 1
        self.consecutive_failures += 1
        self.error_counts[error_type] = self.error_counts.get(error_type, 0) + 1

    def record_success(self) -> None:
        self.total_connections += 1
        self.successful_connections += 1
        self.consecutive_failures = 0

    @property
    def has_successful_connections(self) -> bool:
        return self.successful_connections > 0

    @property
    def success_rate(self) -> float:
        if not self.total_connections:
            return 0.0
        return self.successful_connections / self.total_connections

    @property
    def has_timeout_errors(self) -> bool:
        return any("timeout" in name.lower() for name in self.error_counts)


@dataclass(frozen=True)
class FieldSpec:
    """One metric inside a response body, addressed after the mode/PID echo."""

    name: str
    start: int
    end: int
    signed: bool = False
    scale: float = 1
    divisor: float = 1
    offset: float = 0
    truncate: bool = False
    mask: int | None = None
    one_of: tuple[int, ...] = ()
    labels: dict[int, str] = field(default_factory=dict, compare=False)

    @property
    def width(self) -> int:
        return self.end - self.start

    @property
    def is_flag(self) -> bool:
        return bool(self.one_of)

    def label_for(self, value: Number) -> str | None:
        if isinstance(value, bool) or not self.labels:
            return None
        return self.labels.get(int(value))


@dataclass(frozen=True)
class CommandSpec:
    name: str
    description: str
    mode: int
    pid: bytes
    decode: Decoder = field(compare=False, repr=False)
    header: str | None = None
    expected_length: int = 0
    response_frames: int | None = None
    fields: tuple[FieldSpec, ...] = ()
    encode: Encoder | None = field(default=None, compare=False, repr=False)

    @property
    def echo(self) -> bytes:
        return bytes([self.mode + POSITIVE_RESPONSE_OFFSET]) + self.pid

    @property
    def request(self) -> str:
        body = bytes([self.mode]) + self.pid
        text = f"{len(body):02X}{body.hex().upper()}"
        if self.response_frames:
            text += f" {self.response_frames}"
        return text

    def field_named(self, name: str) -> FieldSpec | None:
        for spec in self.fields:
            if spec.name == name:
                return spec
        return None

    def decode_response(self, payload: bytes) -> Values:
        if not payload:
            raise FrameParseError(f"Empty response for command '{self.name}'")
        if payload[0] == NEGATIVE_RESPONSE:
            nrc = payload[2] if len(payload) > 2 else None
            code = f"0x{nrc:02X}" if nrc is not None else "unknown"
            raise AdapterResponseError(
                f"Command '{self.name}' rejected by ECU (negative response, NRC {code})"
            )
        echo = self.echo
        if payload[: len(echo)] != echo:
            raise AdapterResponseError(
                f"Command '{self.name}' expected echo {echo.hex().upper()}, "
                f"got {payload[: len(echo)].hex().upper()}"
            )
        if len(payload) < self.expected_length:
            raise FrameParseError(
                f"Command '{self.name}' response has {len(payload)} bytes, "
                f"expected at least {self.expected_length}"
            )
        return self.decode(payload[len(echo) :])

    def encode_response(self, values: Mapping[str, Number]) -> bytes:
        if self.encode is None:
            return self.echo
        return self.echo + self.encode(values)


@dataclass(frozen=True)
class CommandCatalog:
    id: str
    name: str
    default_header: str
    probe_name: str
    commands: dict[str, CommandSpec]

    def __iter__(self) -> Iterator[CommandSpec]:
        return iter(self.commands.values())

    def __len__(self) -> int:
        return len(self.commands)

    def get(self, name: str) -> CommandSpec:
        command = self.commands.get(name)
        if command is None:
            available = ", ".join(self.commands)
            raise CommandResolutionError(f"Unknown command '{name}'. Available: {available}")
        return command

    @property
    def probe(self) -> CommandSpec:
        return self.get(self.probe_name)

    def header_for(self, command: CommandSpec) -> str:
        return command.header or self.default_header

    def readable(self) -> list[CommandSpec]:
        return [command for command in self if command.name != self.probe_name]
