"""Collect a diagnostic snapshot from a pfSense box and parse it."""

from __future__ import annotations

import secrets

from app.models.commands import FetchResult
from app.models.firewall import ConnectionTarget
from app.services.ssh_manager import SSHSessionManager
from app.utils.logging import get_logger
from app.utils.pfsense_parser import (
    DPINGER_SECTION,
    GATEWAYS_SECTION,
    parse_pfsense_output,
)

log = get_logger(__name__)

_GATEWAY_GREP = (
    "(grep -A 10 '<gateway>' /cf/conf/config.xml 2>/dev/null"
    " || grep -A 10 '<gateway>' /conf/config.xml 2>/dev/null)"
    " | grep -E '<name>|<gateway>|<monitor>' | head -30"
)

# One ping per dpinger socket: PING_OK:<name>:<ip> / PING_FAIL:<name>:<ip>
_PING_LOOP = (
    'for sock in /var/run/dpinger_*.sock; do if [ -S "$sock" ]; then '
    "gwip=`echo \"$sock\" | sed 's/.*~\\([0-9.]*\\)\\.sock/\\1/'`; "
    "gwname=`echo \"$sock\" | sed 's/.*dpinger_\\(.*\\)~.*/\\1/'`; "
    'ping -c 2 -W 1 "$gwip" >/dev/null 2>&1; '
    'if [ $? -eq 0 ]; then echo "PING_OK:$gwname:$gwip"; '
    'else echo "PING_FAIL:$gwname:$gwip"; fi; fi; done'
)


def new_end_marker() -> str:
    return f"__END__{secrets.token_hex(16)}__"


def build_command_bundle(end_marker: str) -> str:
    """The single shell line run after leaving the console menu."""
    parts = [
        "uname -a",
        "uptime",
        "sysctl hw.ncpu",
        "sysctl hw.physmem",
        "ifconfig -a",
        "netstat -rn",
        "df -h /",
        f'echo "{GATEWAYS_SECTION}"',
        _GATEWAY_GREP,
        f'echo "{DPINGER_SECTION}"',
        "ls -la /var/run/dpinger_*.sock 2>/dev/null",
        _PING_LOOP,
        f"printf '%s\\n' '{end_marker}'",
    ]
    return "; ".join(parts)


async def fetch_stats(
    sessions: SSHSessionManager,
    target: ConnectionTarget,
    *,
    timeout: float | None = None,
) -> FetchResult:
    """Run the command bundle against *target* and return the parsed summary.

    Never raises: session failures and unexpected errors come back as
    ``success=False`` with the error text.
    """
    end_marker = new_end_marker()
    try:
        result = await sessions.run_session(
            target, build_command_bundle(end_marker), end_marker, timeout=timeout,
        )
        if not result.success:
            return FetchResult(
                success=False, transcript=result.transcript, error=result.error,
            )
        summary = parse_pfsense_output(result.transcript)
    except Exception as exc:
        log.exception("fetch.unexpected_error", host=target.host)
        return FetchResult(success=False, error=str(exc) or exc.__class__.__name__)

    log.info(
        "fetch.completed",
        host=target.host,
        gateways=len(summary.gateways),
        primary_ip=summary.primary_ip,
    )
    return FetchResult(success=True, summary=summary, transcript=result.transcript)
