"""PortDiscovery - published port mappings and listening-port probes."""

from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any

import structlog

from berth.runtime.base import ContainerRuntime

logger = structlog.get_logger()

LISTEN_PROBE = "ss -ltn 2>/dev/null || netstat -tln 2>/dev/null"
PROC_PROBE = "cat /proc/net/tcp /proc/net/tcp6 2>/dev/null"

# /proc/net/tcp state code for LISTEN
_TCP_LISTEN = "0A"


@dataclass(frozen=True)
class PortMapping:
    container_port: int
    host_port: int
    status: str = "available"

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def parse_port_bindings(info: dict[str, Any]) -> list[PortMapping]:
    """Extract published TCP ports from a container inspection."""
    ports = (info.get("NetworkSettings") or {}).get("Ports") or {}
    mappings: list[PortMapping] = []
    for port_key, bindings in ports.items():
        if not bindings:
            continue
        port_str, _, proto = port_key.partition("/")
        if proto and proto != "tcp":
            continue
        host_port = bindings[0].get("HostPort")
        try:
            mappings.append(PortMapping(container_port=int(port_str), host_port=int(host_port)))
        except (TypeError, ValueError):
            continue
    return sorted(mappings, key=lambda m: m.container_port)


def listening_in_socket_table(output: str, port: int) -> bool:
    """Check ``ss -ltn`` / ``netstat -tln`` output for a local ``:port``."""
    target = str(port)
    for line in output.splitlines():
        for token in line.split():
            if ":" in token and token.rsplit(":", 1)[1] == target:
                return True
    return False


def listening_in_proc_net(output: str, port: int) -> bool:
    """Check /proc/net/tcp{,6} rows for a LISTEN socket on ``port``."""
    for line in output.splitlines():
        parts = line.split()
        if len(parts) < 4 or ":" not in parts[1]:
            continue
        try:
            local_port = int(parts[1].rsplit(":", 1)[1], 16)
        except ValueError:
            continue
        if local_port == port and parts[3] == _TCP_LISTEN:
            return True
    return False


class PortDiscovery:
    """Answers which container ports are published and which are served."""

    def __init__(self, runtime: ContainerRuntime) -> None:
        self._runtime = runtime
        self._log = logger.bind(component="ports")

    async def list_port_mappings(self, user_id: str) -> list[PortMapping]:
        info = await self._runtime.inspect(user_id)
        if not info:
            return []
        mappings = parse_port_bindings(info)
        self._log.debug("ports.mappings", user_id=user_id, count=len(mappings))
        return mappings

    async def is_port_active(self, user_id: str, port: int) -> bool:
        """True only when a listener on ``port`` is positively observed."""
        if self._runtime.get_record(user_id) is None:
            return False

        try:
            result = await self._runtime.run_command(user_id, ["sh", "-c", LISTEN_PROBE])
            if result.output.strip():
                return listening_in_socket_table(result.output, port)

            result = await self._runtime.run_command(user_id, ["sh", "-c", PROC_PROBE])
            return listening_in_proc_net(result.output, port)
        except Exception as e:
            self._log.warning("ports.probe_failed", user_id=user_id, port=port, error=str(e))
            return False
