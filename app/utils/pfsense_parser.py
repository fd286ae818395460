"""Utilities for parsing pfSense console output into a metrics summary."""

from __future__ import annotations

import ipaddress
import re
from dataclasses import dataclass
from typing import Optional

from app.models.summary import (
    DiskUsage,
    Gateway,
    GatewayStatus,
    InterfaceAddress,
    LoadAverages,
    Summary,
)

MAX_RAW_CHARS = 20000
TRUNCATION_MARKER = "\n...TRUNCATED..."

GATEWAYS_SECTION = "===GATEWAYS==="
DPINGER_SECTION = "===DPINGER==="

_IPV4 = r"\d{1,3}(?:\.\d{1,3}){3}"


# ---------------------------------------------------------------------------
# Cleaning helpers
# ---------------------------------------------------------------------------

_ANSI_RE = re.compile(r"\x1B\[[0-?]*[ -/]*[@-~]")
_BACKSPACE_RE = re.compile(r"\x08")
_SECTION_RE = re.compile(r"^===[A-Z_]+===$")


def clean_output(raw: str) -> str:
    """Remove ANSI escape sequences and backspaces."""
    return _BACKSPACE_RE.sub("", _ANSI_RE.sub("", raw))


def truncate_raw(text: str, limit: int = MAX_RAW_CHARS) -> str:
    if len(text) <= limit:
        return text
    return text[:limit] + TRUNCATION_MARKER


def human_bytes(value: float) -> str:
    """Format a byte count with one decimal, e.g. ``16.0 GB``."""
    units = ["B", "KB", "MB", "GB", "TB"]
    n = float(value)
    i = 0
    while n >= 1024 and i < len(units) - 1:
        n /= 1024
        i += 1
    return f"{n:.1f} {units[i]}"


def _as_ipv4(text: str) -> ipaddress.IPv4Address | None:
    try:
        return ipaddress.IPv4Address(text)
    except ValueError:
        return None


_RFC1918_NETS = tuple(
    ipaddress.IPv4Network(n)
    for n in ("10.0.0.0/8", "172.16.0.0/12", "192.168.0.0/16")
)
_LOOPBACK_NET = ipaddress.IPv4Network("127.0.0.0/8")


def is_rfc1918(ip: str) -> bool:
    addr = _as_ipv4(ip)
    return addr is not None and any(addr in net for net in _RFC1918_NETS)


def is_private_ipv4(ip: str) -> bool:
    """RFC1918 or loopback."""
    addr = _as_ipv4(ip)
    if addr is None:
        return False
    return addr in _LOOPBACK_NET or any(addr in net for net in _RFC1918_NETS)


def _section(lines: list[str], marker: str) -> list[str]:
    """Lines after the *marker* line up to the next ``===X===`` line."""
    out: list[str] = []
    inside = False
    for line in lines:
        stripped = line.strip()
        if stripped == marker:
            inside = True
            continue
        if inside and _SECTION_RE.match(stripped):
            break
        if inside:
            out.append(line)
    return out


def _number(text: str) -> float:
    digits = re.sub(r"[^0-9.]", "", text)
    try:
        return float(digits)
    except ValueError:
        return 0.0


# ---------------------------------------------------------------------------
# Uptime / OS / hardware
# ---------------------------------------------------------------------------

_UPTIME_RE = re.compile(r"load averages?:|\bup\s+\d+", re.IGNORECASE)
_LOAD_RE = re.compile(
    r"load averages?:\s*(\d+(?:\.\d+)?)[,\s]+(\d+(?:\.\d+)?)[,\s]+(\d+(?:\.\d+)?)",
    re.IGNORECASE,
)
OS_MARKERS: tuple[str, ...] = ("FreeBSD", "pfSense", "Darwin", "Linux", "BSD")

_NCPU_RE = re.compile(r"hw\.ncpu:\s*(\d+)")
_PHYSMEM_RE = re.compile(r"hw\.physmem:\s*(\d+)")
# "/dev/ada0s1a  20G  1.2G  17G  7%  /" (ZFS datasets have no /dev prefix)
_DF_ROOT_RE = re.compile(r"^(\S+)\s+(\S+)\s+(\S+)\s+(\S+)\s+(\d+)%\s+/\s*$")


def parse_uptime(lines: list[str]) -> tuple[Optional[str], Optional[LoadAverages]]:
    for line in lines:
        if not _UPTIME_RE.search(line):
            continue
        loads = None
        m = _LOAD_RE.search(line)
        if m:
            loads = LoadAverages(
                m1=float(m.group(1)),
                m5=float(m.group(2)),
                m15=float(m.group(3)),
            )
        return line.strip(), loads
    return None, None


def parse_os_identifier(lines: list[str]) -> Optional[str]:
    for line in lines:
        if any(marker in line for marker in OS_MARKERS):
            return line.strip()
    return None


def parse_hardware(
    lines: list[str],
) -> tuple[Optional[int], Optional[str], Optional[DiskUsage]]:
    """Return (cpu_count, memory_human, disk) from sysctl and df output."""
    cpu_count: Optional[int] = None
    memory: Optional[str] = None
    disk: Optional[DiskUsage] = None
    for line in lines:
        m = _NCPU_RE.search(line)
        if m:
            cpu_count = int(m.group(1))
        m = _PHYSMEM_RE.search(line)
        if m:
            memory = human_bytes(int(m.group(1)))
        m = _DF_ROOT_RE.match(line.strip())
        if m:
            disk = DiskUsage(
                size=m.group(2),
                used=m.group(3),
                avail=m.group(4),
                percent=int(m.group(5)),
            )
    return cpu_count, memory, disk


# ---------------------------------------------------------------------------
# ifconfig parsing
# ---------------------------------------------------------------------------

_IFACE_HEADER_RE = re.compile(r"^([A-Za-z0-9_.]+):\s+flags=")
_IFACE_DESC_RE = re.compile(r"^\s*description:\s*(.+?)\s*$", re.IGNORECASE)
_INET_RE = re.compile(rf"\binet\s+({_IPV4})")


def parse_interfaces(lines: list[str]) -> tuple[list[InterfaceAddress], list[str]]:
    """Return interface addresses and the flat address list, in output order."""
    found: list[tuple[str, str]] = []
    labels: dict[str, str] = {}
    current: str | None = None

    for line in lines:
        hm = _IFACE_HEADER_RE.match(line)
        if hm:
            current = hm.group(1)
            continue
        if current is None:
            continue
        dm = _IFACE_DESC_RE.match(line)
        if dm:
            labels[current] = dm.group(1)
            continue
        im = _INET_RE.search(line)
        if im:
            found.append((current, im.group(1)))

    interfaces = [
        InterfaceAddress(name=name, ip=ip, friendly_label=labels.get(name))
        for name, ip in found
    ]
    return interfaces, [ip for _, ip in found]


# ---------------------------------------------------------------------------
# Gateway monitoring (dpinger sockets, ping results, status lines)
# ---------------------------------------------------------------------------

_PING_RE = re.compile(rf"^(PING_OK|PING_FAIL):([^:]+):({_IPV4})$")
# dpinger_WANGW~203.0.113.10~203.0.113.9.sock
_DPINGER_SOCK_RE = re.compile(r"dpinger_(.+?)~(.+?)~(.+?)\.sock")

DEGRADED_LOSS_PERCENT = 5.0
DEGRADED_DELAY_MS = 500.0


@dataclass
class _Probe:
    name: str
    ip: str
    status: GatewayStatus
    loss: Optional[float] = None
    delay: Optional[float] = None
    local_ip: Optional[str] = None
    from_ping: bool = False


def classify_gateway(status_text: str, loss: float, delay: float) -> GatewayStatus:
    lowered = status_text.lower()
    if loss >= 100 or "down" in lowered or "offline" in lowered:
        return GatewayStatus.down
    if loss > DEGRADED_LOSS_PERCENT or delay > DEGRADED_DELAY_MS:
        return GatewayStatus.degraded
    return GatewayStatus.online


def parse_dpinger_section(lines: list[str]) -> dict[str, _Probe]:
    """Live gateway state keyed by monitored IP."""
    probes: dict[str, _Probe] = {}
    for line in _section(lines, DPINGER_SECTION):
        stripped = line.strip()
        if not stripped:
            continue

        pm = _PING_RE.match(stripped)
        if pm:
            ok = pm.group(1) == "PING_OK"
            name, ip = pm.group(2), pm.group(3)
            previous = probes.get(ip)
            probes[ip] = _Probe(
                name=name,
                ip=ip,
                status=GatewayStatus.online if ok else GatewayStatus.down,
                loss=0.0 if ok else 100.0,
                delay=0.0,
                local_ip=previous.local_ip if previous else None,
                from_ping=True,
            )
            continue

        sm = _DPINGER_SOCK_RE.search(stripped)
        if sm:
            name, local_ip, ip = sm.group(1), sm.group(2), sm.group(3)
            if _as_ipv4(ip) is None:
                continue
            existing = probes.get(ip)
            if existing is None:
                probes[ip] = _Probe(
                    name=name,
                    ip=ip,
                    status=GatewayStatus.unknown,
                    loss=0.0,
                    delay=0.0,
                    local_ip=local_ip,
                )
            elif existing.local_ip is None:
                existing.local_ip = local_ip
            continue

        # GWNAME~192.0.2.1~online~10ms~2ms~0.5%
        if "~" in stripped and "dpinger_" not in stripped and ".sock" not in stripped:
            parts = stripped.split("~")
            if len(parts) < 4:
                continue
            name, ip, status_text, delay_text = parts[:4]
            if not name or _as_ipv4(ip) is None:
                continue
            existing = probes.get(ip)
            if existing is not None and existing.from_ping:
                continue
            delay = _number(delay_text)
            loss = _number(parts[5]) if len(parts) > 5 else 0.0
            probes[ip] = _Probe(
                name=name,
                ip=ip,
                status=classify_gateway(status_text or "online", loss, delay),
                loss=loss,
                delay=delay,
                local_ip=existing.local_ip if existing else None,
            )
    return probes


# ---------------------------------------------------------------------------
# config.xml gateway names
# ---------------------------------------------------------------------------

_XML_NAME_RE = re.compile(r"<name>([^<]+)</name>")
_XML_GATEWAY_RE = re.compile(r"<gateway>([^<]+)</gateway>")


def parse_configured_gateways(lines: list[str]) -> dict[str, str]:
    """Map gateway IP -> configured name from the config.xml excerpt.

    ``<name>`` and ``<gateway>`` tags are paired in the order they appear,
    whichever comes first.  Non-address gateways (``dynamic``) are skipped.
    """
    names: dict[str, str] = {}
    pending_name: str | None = None
    pending_ip: str | None = None
    skip_name = False

    for line in _section(lines, GATEWAYS_SECTION):
        nm = _XML_NAME_RE.search(line)
        if nm:
            name = nm.group(1).strip()
            if skip_name:
                # name of a dynamic gateway
                skip_name = False
            elif pending_ip is not None:
                names.setdefault(pending_ip, name)
                pending_ip = None
            else:
                pending_name = name
        gm = _XML_GATEWAY_RE.search(line)
        if gm:
            value = gm.group(1).strip()
            if _as_ipv4(value) is None:
                # its <name> may already be pending or may follow
                skip_name = pending_name is None
                pending_name = None
                pending_ip = None
            else:
                skip_name = False
                if pending_name is not None:
                    names.setdefault(value, pending_name)
                    pending_name = None
                else:
                    pending_ip = value
    return names


# ---------------------------------------------------------------------------
# Console menu WANs and routing table
# ---------------------------------------------------------------------------

# " WAN (wan)       -> em0        -> v4/DHCP4: 203.0.113.10/29"
_MENU_WAN_RE = re.compile(
    rf"(\S+)\s+\((wan|opt\d+)\)\s+->\s+(\S+)\s+->\s+(?:v4.*?)?({_IPV4})/\d+",
)
INTERNAL_LABEL_RE = re.compile(
    r"WLAN|GUEST|ADM|OFFICE|VISITA|INVITADO|CHROME|SONOS|REDUNDANCIA",
    re.IGNORECASE,
)
_DEFAULT_ROUTE_RE = re.compile(r"^(?:default|0\.0\.0\.0)\s+")
# "198.51.100.0/24   203.0.113.1   UGS   igb2"
_ROUTE_RE = re.compile(rf"^(\d[\d./]*)\s+({_IPV4})\s+([A-Za-z0-9]+)\s+(\S+)")


@dataclass
class _MenuWan:
    label: str
    iface: str
    ip: str


def parse_menu_wans(lines: list[str]) -> list[_MenuWan]:
    """Public WAN entries from the console menu, one per interface."""
    wans: list[_MenuWan] = []
    seen: set[str] = set()
    for line in lines:
        m = _MENU_WAN_RE.search(line)
        if not m:
            continue
        label, iface, ip = m.group(1), m.group(3), m.group(4)
        if is_rfc1918(ip) or INTERNAL_LABEL_RE.search(label):
            continue
        if iface in seen:
            continue
        seen.add(iface)
        wans.append(_MenuWan(label=label, iface=iface, ip=ip))
    return wans


def parse_default_route(lines: list[str]) -> tuple[Optional[str], Optional[str]]:
    """Return (gateway_ip, interface) of the first default route."""
    for line in lines:
        stripped = line.strip()
        if not _DEFAULT_ROUTE_RE.match(stripped):
            continue
        parts = stripped.split()
        gateway = parts[1] if _as_ipv4(parts[1]) is not None else None
        iface = parts[3] if len(parts) >= 4 else None
        return gateway, iface
    return None, None


def parse_route_gateways(lines: list[str]) -> list[tuple[str, str]]:
    """Distinct (gateway_ip, interface) pairs of non-default routes."""
    routes: list[tuple[str, str]] = []
    seen: set[str] = set()
    for line in lines:
        if "link#" in line.lower():
            continue
        m = _ROUTE_RE.match(line.strip())
        if not m:
            continue
        destination, gateway, iface = m.group(1), m.group(2), m.group(4)
        if destination in ("0.0.0.0", "0.0.0.0/0"):
            continue
        if gateway in ("0.0.0.0", "127.0.0.1") or gateway in seen:
            continue
        seen.add(gateway)
        routes.append((gateway, iface))
    return routes


# ---------------------------------------------------------------------------
# Gateway assembly
# ---------------------------------------------------------------------------


def build_gateways(
    probes: dict[str, _Probe],
    configured: dict[str, str],
    menu_wans: list[_MenuWan],
    routes: list[tuple[str, str]],
    interfaces: list[InterfaceAddress],
    default_gateway: Optional[str],
    wan_iface: Optional[str],
) -> list[Gateway]:
    """Merge live probes, configured names, menu WANs and routes."""
    # Configured but unmonitored gateways are assumed unreachable
    for ip, name in configured.items():
        if ip not in probes:
            probes[ip] = _Probe(
                name=name, ip=ip, status=GatewayStatus.down, loss=100.0, delay=0.0,
            )

    iface_by_ip = {a.ip: a.name for a in interfaces}
    ifaces_with_ip = {a.name for a in interfaces}
    by_local_ip = {p.local_ip: p for p in probes.values() if p.local_ip}

    candidates: list[tuple[str, str, str]] = []  # (name, monitored ip, iface)
    for wan in menu_wans:
        probe = by_local_ip.get(wan.ip)
        if probe is not None:
            monitored = probe.ip
        elif default_gateway and wan.iface == wan_iface:
            monitored = default_gateway
        else:
            monitored = wan.ip
        candidates.append((wan.label, monitored, wan.iface))

    menu_ifaces = {wan.iface for wan in menu_wans}
    for gateway_ip, iface in routes:
        if iface in menu_ifaces:
            continue
        name = configured.get(gateway_ip)
        if not name:
            name = f"WAN_{iface.upper()}" if iface in ifaces_with_ip else f"GW_{iface}"
        candidates.append((name, gateway_ip, iface))

    def _active(ip: str, iface: Optional[str]) -> bool:
        return (wan_iface is not None and iface == wan_iface) or (
            default_gateway is not None and ip == default_gateway
        )

    gateways: list[Gateway] = []
    used: set[str] = set()
    for name, ip, iface in candidates:
        if ip in used:
            continue
        used.add(ip)
        probe = probes.get(ip)
        gateways.append(
            Gateway(
                name=probe.name if probe else name,
                monitored_ip=ip,
                status=probe.status if probe else GatewayStatus.online,
                interface=iface,
                loss_percent=probe.loss if probe else None,
                delay_ms=probe.delay if probe else None,
                is_active=_active(ip, iface),
            ),
        )

    for ip, probe in probes.items():
        if ip in used:
            continue
        used.add(ip)
        iface = iface_by_ip.get(probe.local_ip) if probe.local_ip else None
        gateways.append(
            Gateway(
                name=probe.name,
                monitored_ip=ip,
                status=probe.status,
                interface=iface,
                loss_percent=probe.loss,
                delay_ms=probe.delay,
                is_active=_active(ip, iface),
            ),
        )

    if not gateways and default_gateway:
        gateways.append(
            Gateway(
                name=f"GW_{wan_iface}" if wan_iface else "WAN",
                monitored_ip=default_gateway,
                status=GatewayStatus.online,
                interface=wan_iface,
                is_active=True,
            ),
        )

    gateways.sort(key=lambda g: (not g.is_active, g.interface or "", g.name))
    return gateways


def select_primary_ip(
    interfaces: list[InterfaceAddress],
    ips: list[str],
    wan_iface: Optional[str],
) -> Optional[str]:
    if wan_iface:
        for addr in interfaces:
            if addr.name == wan_iface:
                return addr.ip
    for ip in ips:
        if not is_private_ipv4(ip):
            return ip
    return ips[0] if ips else None


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def parse_pfsense_output(raw: str | bytes) -> Summary:
    """Parse a full diagnostic transcript into a :class:`Summary`.

    Best effort: absent data leaves fields empty, malformed lines are
    skipped, nothing is raised.
    """
    if isinstance(raw, bytes):
        raw = raw.decode("utf-8", errors="replace")
    cleaned = clean_output(raw or "")
    lines = re.split(r"\r?\n", cleaned)

    uptime_text, load_averages = parse_uptime(lines)
    os_identifier = parse_os_identifier(lines)
    cpu_count, memory_human, disk = parse_hardware(lines)
    interfaces, ips = parse_interfaces(lines)

    probes = parse_dpinger_section(lines)
    configured = parse_configured_gateways(lines)
    menu_wans = parse_menu_wans(lines)
    default_gateway, wan_iface = parse_default_route(lines)
    routes = parse_route_gateways(lines)

    gateways = build_gateways(
        probes, configured, menu_wans, routes, interfaces, default_gateway, wan_iface,
    )

    primary_ip = select_primary_ip(interfaces, ips, wan_iface)
    if primary_ip:
        ips = [primary_ip] + [ip for ip in ips if ip != primary_ip]
    if not ips:
        fallback = _INET_RE.search(cleaned)
        if fallback:
            ips = [fallback.group(1)]

    return Summary(
        uptime_text=uptime_text,
        load_averages=load_averages,
        os_identifier=os_identifier,
        cpu_count=cpu_count,
        memory_human=memory_human,
        disk=disk,
        interfaces=interfaces,
        ips=ips,
        primary_ip=primary_ip,
        wan_interface_name=wan_iface,
        default_gateway_ip=default_gateway,
        gateways=gateways,
        raw_truncated=truncate_raw(cleaned),
    )
