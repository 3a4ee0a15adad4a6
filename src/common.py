"""Common process and SSH utilities shared by provider adapters."""

import ipaddress
import logging
import shlex
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from errors import ProviderError, RejectedError, TransientError, UnauthenticatedError

logger = logging.getLogger(__name__)

# ssh(1) exits 255 for its own failures (connect, auth, host key)
SSH_FAILURE = 255

_AUTH_MARKERS = ('permission denied', 'authentication failed', 'too many authentication failures')
_TRANSIENT_MARKERS = (
    'timed out',
    'connection refused',
    'connection reset',
    'no route to host',
    'network is unreachable',
    'could not resolve hostname',
    'temporary failure',
    'broken pipe',
)


@dataclass(frozen=True)
class SSHTarget:
    """Where and how to reach a host over SSH."""
    host: str
    user: str = 'root'
    port: int = 22
    key_path: Optional[Path] = None


def run_command(
    cmd: list[str],
    cwd: Optional[Path] = None,
    timeout: float = 600,
    capture: bool = True,
    env: Optional[dict] = None,
    input_text: Optional[str] = None,
) -> tuple[int, str, str]:
    """Run a command and return (returncode, stdout, stderr)."""
    logger.debug(f"Running: {' '.join(cmd)}")
    try:
        result = subprocess.run(
            cmd,
            cwd=cwd,
            capture_output=capture,
            text=True,
            timeout=timeout,
            env=env,
            input=input_text,
            check=False  # We handle return codes explicitly
        )
        return result.returncode, result.stdout, result.stderr
    except subprocess.TimeoutExpired:
        return -1, '', f'Command timed out after {timeout}s'
    except OSError as e:
        return -1, '', str(e)


def run_ssh(
    target: SSHTarget,
    command: str,
    timeout: float = 60,
    input_text: Optional[str] = None,
) -> tuple[int, str, str]:
    """Run command over SSH."""
    # Appliances are rebuilt often in labs; host keys are not pinned
    ssh_opts = '-o StrictHostKeyChecking=no -o UserKnownHostsFile=/dev/null -o LogLevel=ERROR -o BatchMode=yes'
    cmd = ['ssh'] + ssh_opts.split() + [
        '-o', f'ConnectTimeout={max(1, int(timeout))}',
        '-p', str(target.port),
    ]
    if target.key_path:
        cmd += ['-i', str(target.key_path)]
    cmd += [f'{target.user}@{target.host}', command]
    return run_command(cmd, timeout=timeout, input_text=input_text)


def classify_ssh_failure(rc: int, stderr: str, provider: str = '') -> ProviderError:
    """Map a failed ssh invocation to the provider failure taxonomy.

    Timeouts and unreachable hosts are transient, refused credentials are
    unauthenticated, anything the remote command itself rejected is rejected.
    """
    text = (stderr or '').strip()
    lowered = text.lower()
    if rc == -1 or any(marker in lowered for marker in _TRANSIENT_MARKERS):
        return TransientError(text or 'ssh failed', provider=provider)
    if any(marker in lowered for marker in _AUTH_MARKERS):
        return UnauthenticatedError(text, provider=provider)
    if rc == SSH_FAILURE:
        return TransientError(text or 'ssh connection failed', provider=provider)
    return RejectedError(text or f'remote command exited {rc}', provider=provider)


def ssh_check(target: SSHTarget, command: str, timeout: float, provider: str = '') -> str:
    """Run command over SSH and return stdout, raising a ProviderError on failure."""
    rc, out, err = run_ssh(target, command, timeout=timeout)
    if rc != 0:
        raise classify_ssh_failure(rc, err, provider=provider)
    return out


def wg_peers(target: SSHTarget, interface: str, timeout: float, sudo: bool = False,
             provider: str = '') -> set[str]:
    """Public keys currently accepted on a WireGuard interface."""
    prefix = 'sudo ' if sudo else ''
    out = ssh_check(target, f'{prefix}wg show {shlex.quote(interface)} peers', timeout, provider=provider)
    return {line.strip() for line in out.splitlines() if line.strip()}


def wg_handshakes(target: SSHTarget, interface: str, timeout: float, sudo: bool = False,
                  provider: str = '') -> dict[str, float]:
    """Latest handshake (epoch seconds, 0 for never) per peer public key."""
    prefix = 'sudo ' if sudo else ''
    out = ssh_check(target, f'{prefix}wg show {shlex.quote(interface)} latest-handshakes', timeout,
                    provider=provider)
    handshakes = {}
    for line in out.splitlines():
        parts = line.split()
        if len(parts) != 2:
            continue
        try:
            handshakes[parts[0]] = float(parts[1])
        except ValueError:
            logger.debug(f"Skipping unparsable handshake line: {line}")
    return handshakes


def slot_allowed_ips(allowed: str, slot: int) -> list[str]:
    """Half of each allowed-ips network reserved for one key generation.

    WireGuard routes a prefix to a single peer, so the two keys alive during a
    rotation get disjoint halves: slot 0 the lower, slot 1 the upper.

    Raises:
        ValueError: On an unparsable network, or one too small to split
    """
    halves = []
    for cidr in allowed.split(','):
        net = ipaddress.ip_network(cidr.strip())
        if net.prefixlen == net.max_prefixlen:
            raise ValueError(f"allowed-ips {net} cannot be split between two keys")
        halves.append(str(list(net.subnets(prefixlen_diff=1))[slot % 2]))
    return halves
