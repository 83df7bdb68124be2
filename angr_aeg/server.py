"""FastMCP tool registrations around :mod:`angr_aeg.driver`."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from mcp.server.fastmcp import FastMCP

from .config import AegConfig
from .driver import describe_target as _describe_target
from .driver import generate_exploit as _generate_exploit
from .errors import AegError

_NOISY_LOGGERS = (
    "angr",
    "angr.analyses",
    "angr.exploration_techniques",
    "angr.project",
    "cle",
    "claripy",
    "pwnlib",
)

for _logger_name in _NOISY_LOGGERS:
    logging.getLogger(_logger_name).setLevel(logging.WARNING)


mcp = FastMCP("angr-aeg", log_level="WARNING")


def _config(
    binary_path: str,
    libc_path: Optional[str],
    config_path: Optional[str],
    **overrides: Any,
) -> AegConfig:
    overrides["elf_filename"] = binary_path
    overrides["libc_filename"] = libc_path
    if config_path:
        return AegConfig.from_file(config_path, **overrides)
    return AegConfig.from_dict({k: v for k, v in overrides.items() if v is not None})


@mcp.tool()
def describe_target(
    binary_path: str,
    *,
    libc_path: Optional[str] = None,
    techniques: Optional[List[str]] = None,
) -> Dict[str, Any]:
    """Report the mitigations of a binary and which exploitation techniques apply.

    Use this before ``generate_exploit`` to see whether a leak-free chain is
    possible and which secrets (canary, ELF base) must be leaked first.

    Args:
        binary_path: Path to the x86-64 ELF target.
        libc_path: Path to the libc the target runs with. Techniques that reuse
            libc code (e.g. ``Ret2syscall``) are unavailable without it.
        techniques: Technique names to evaluate; defaults to the configured set.

    Returns:
        Dictionary with ``checksec`` flags, ``leak_targets``, a ``techniques``
        mapping of name to requirement status, and resolved ``gadgets``.
    """

    try:
        return _describe_target(_config(binary_path, libc_path, None, techniques=techniques))
    except AegError as exc:
        return {"error": str(exc)}


@mcp.tool()
def generate_exploit(
    binary_path: str,
    *,
    libc_path: Optional[str] = None,
    config_path: Optional[str] = None,
    output_path: Optional[str] = None,
    max_states: Optional[int] = None,
) -> Dict[str, Any]:
    """Symbolically explore a binary until control flow is hijacked and write an exploit.

    Exploration starts at the entry point with symbolic stdin. When the
    return address becomes attacker-controlled, the selected technique's ROP
    chain is laid out on the stack and a pwntools script replaying the
    recorded I/O is written.

    Args:
        binary_path: Path to the x86-64 ELF target.
        libc_path: Path to the libc the target runs with.
        config_path: Optional JSON configuration file (see ``AegConfig``).
        output_path: Where to write the script; defaults to ``exploit.py``.
        max_states: Upper bound on live states before exploration is aborted.

    Returns:
        Dictionary with ``exploit_path`` (``None`` when nothing was generated),
        the ``technique`` used, final ``stashes`` sizes, ``budget_exceeded`` and
        ``errors``.
    """

    try:
        config = _config(
            binary_path,
            libc_path,
            config_path,
            output_filename=output_path,
            max_states=max_states,
        )
        return _generate_exploit(config).to_dict()
    except AegError as exc:
        return {"error": str(exc)}


__all__ = ["describe_target", "generate_exploit", "mcp"]
