"""
Remote shell helpers built on asyncssh.

Nodes are freshly created and have no known host key, so host key checking is
disabled. Every session is closed on exit, success or not.

Usage:
    from clusterplane.providers.ssh import fetch_kubeconfig

    text = await fetch_kubeconfig("203.0.113.7", "ubuntu", private_key_pem)
"""

from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass

import asyncssh

from clusterplane.errors import KeyMaterialMissing, KubeconfigUnavailable

logger = logging.getLogger(__name__)

K3S_KUBECONFIG_PATH = "/etc/rancher/k3s/k3s.yaml"

# 127.0.0.0/8, IPv6 loopback, and a "localhost" host part in URLs.
_LOOPBACK_RE = re.compile(r"\b127(?:\.\d{1,3}){3}\b|\[::1\]|(?<=//)localhost\b")


@dataclass
class CommandResult:
    stdout: str
    stderr: str
    exit_status: int | None


def rewrite_loopback(text: str, address: str) -> str:
    """Point every loopback address in *text* at *address*."""
    return _LOOPBACK_RE.sub(address, text)


async def run_command(
    host: str,
    username: str,
    private_key: str,
    command: str,
    *,
    port: int = 22,
    timeout: float = 20.0,
) -> CommandResult:
    """Open a session, run one command, close the session.

    Raises asyncssh.Error / OSError / TimeoutError on connection problems,
    asyncssh.KeyImportError (a ValueError) for an unreadable key, and
    KeyMaterialMissing when no key is given.
    """
    if not private_key:
        raise KeyMaterialMissing(f"No SSH private key available for {username}@{host}")

    key = asyncssh.import_private_key(private_key)
    async with asyncssh.connect(
        host,
        port=port,
        username=username,
        client_keys=[key],
        known_hosts=None,
        connect_timeout=timeout,
    ) as conn:
        result = await asyncio.wait_for(conn.run(command, check=False), timeout)

    return CommandResult(
        stdout=str(result.stdout or ""),
        stderr=str(result.stderr or ""),
        exit_status=result.exit_status,
    )


async def fetch_kubeconfig(
    host: str,
    username: str,
    private_key: str,
    *,
    port: int = 22,
    timeout: float = 20.0,
) -> str:
    """Read the k3s kubeconfig from a node, rewritten to use *host* instead of loopback."""
    try:
        result = await run_command(
            host, username, private_key, f"cat {K3S_KUBECONFIG_PATH}", port=port, timeout=timeout
        )
    except KeyMaterialMissing:
        raise
    except (asyncssh.Error, OSError, TimeoutError, ValueError) as e:
        logger.warning("Kubeconfig retrieval from %s failed: %s", host, e)
        raise KubeconfigUnavailable(f"Kubeconfig retrieval failed: {e}") from e

    if result.exit_status not in (0, None) or not result.stdout.strip():
        detail = result.stderr.strip() or "empty kubeconfig"
        raise KubeconfigUnavailable(f"Kubeconfig retrieval failed on {host}: {detail}")

    return rewrite_loopback(result.stdout, host)
