"""Guest address discovery for kdeploy."""

from __future__ import annotations

import time
from typing import Callable, List, Optional, Tuple

from kdeploy.constants import MAC_ADDRESS_RE, NETWORK_ATTEMPTS, NETWORK_INTERVAL
from kdeploy.exceptions import DiscoveryTimeoutError
from kdeploy.hypervisor import Hypervisor
from kdeploy.models import NetworkLease
from kdeploy.utils import log


def _ipv4_from_row(parts: List[str]) -> Optional[str]:
    for part in parts:
        if "/" in part and "." in part:
            return part.split("/", 1)[0]
    return None


def parse_interface_mac(text: str) -> Optional[str]:
    """First MAC address listed by ``virsh domiflist``."""
    for line in text.splitlines():
        match = MAC_ADDRESS_RE.search(line)
        if match:
            return match.group(1).lower()
    return None


def parse_agent_addresses(text: str) -> List[str]:
    """Non-loopback IPv4 addresses from ``virsh domifaddr --source agent``."""
    addresses = []
    for line in text.splitlines():
        parts = line.split()
        if "ipv4" not in (p.lower() for p in parts):
            continue
        ip = _ipv4_from_row(parts)
        if ip and not ip.startswith("127."):
            addresses.append(ip)
    return addresses


def parse_dhcp_leases(text: str) -> List[Tuple[str, str]]:
    """(mac, ip) pairs from ``virsh net-dhcp-leases``."""
    leases = []
    for line in text.splitlines():
        parts = line.split()
        if "ipv4" not in (p.lower() for p in parts):
            continue
        match = MAC_ADDRESS_RE.search(line)
        ip = _ipv4_from_row(parts)
        if match and ip:
            leases.append((match.group(1).lower(), ip))
    return leases


class NetworkBootstrap:
    """Polls the guest agent, then the DHCP lease table, for an IPv4 address."""

    def __init__(
        self,
        hypervisor: Hypervisor,
        network: str = "default",
        attempts: int = NETWORK_ATTEMPTS,
        interval: float = NETWORK_INTERVAL,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.hypervisor = hypervisor
        self.network = network
        self.attempts = attempts
        self.interval = interval
        self._sleep = sleep

    def from_agent(self, name: str) -> Optional[str]:
        addresses = parse_agent_addresses(self.hypervisor.agent_addresses(name))
        return addresses[0] if addresses else None

    def from_dhcp(self, mac: Optional[str]) -> Optional[str]:
        if not mac:
            return None
        for lease_mac, ip in parse_dhcp_leases(self.hypervisor.dhcp_leases(self.network)):
            if lease_mac == mac:
                return ip
        return None

    def discover(self, name: str) -> NetworkLease:
        log("INFO", f"Waiting for {name} to obtain an IPv4 address...")
        mac: Optional[str] = None
        for attempt in range(1, self.attempts + 1):
            if mac is None:
                mac = parse_interface_mac(self.hypervisor.interface_list(name))
            ip = self.from_agent(name)
            if ip:
                return self._found(name, mac, ip, "agent")
            # The lease table works without a guest agent, so it is always consulted.
            ip = self.from_dhcp(mac)
            if ip:
                return self._found(name, mac, ip, "dhcp")
            log("DEBUG", f"No address for {name} yet (attempt {attempt}/{self.attempts}, mac={mac or 'unknown'})")
            self._sleep(self.interval)
        raise DiscoveryTimeoutError(
            f"Timed out waiting for an IP address for {name} after "
            f"{self.attempts} attempts ({int(self.attempts * self.interval)}s). "
            f"Inspect the guest with: virsh console {name}  "
            f"(or check: virsh net-dhcp-leases {self.network})"
        )

    def _found(self, name: str, mac: Optional[str], ip: str, via: str) -> NetworkLease:
        log("SUCCESS", f"{name} is reachable at {ip} (via {via})")
        return NetworkLease(mac=mac, ip=ip, discovered_via=via)
