"""Load a target with angr, explore it and write the exploit script."""

from __future__ import annotations

import logging
import pathlib
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional, Tuple

import angr
import claripy
from angr.storage.file import SimFileStream

from .config import AegConfig
from .errors import ConfigError
from .exploit import Exploit
from .session import ExploitSession
from .utils.binary import checksec, load_elf
from .utils.exploration import (
    HIJACKED_STASH,
    TERMINATED_STASH,
    ExploitExploration,
    StateBudgetExceeded,
    StateBudgetLimiter,
)

logger = logging.getLogger(__name__)


@dataclass
class GenerationResult:
    exploit_path: Optional[str]
    technique: Optional[str]
    stashes: Dict[str, int] = field(default_factory=dict)
    budget_exceeded: bool = False
    errors: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _resolve(path: str, what: str) -> str:
    resolved = pathlib.Path(path).expanduser().resolve()
    if not resolved.is_file():
        raise ConfigError(f"{what} not found: {resolved}")
    return str(resolved)


def load_target(config: AegConfig) -> Tuple[angr.Project, Exploit]:
    """Create the angr project and the exploit sink for ``config``."""

    elf_path = _resolve(config.elf_filename, "target binary")
    libc_path = _resolve(config.libc_filename, "libc") if config.libc_filename else None

    load_kwargs: Dict[str, Any] = {
        "auto_load_libs": config.auto_load_libs,
        "use_sim_procedures": config.use_sim_procedures,
    }
    if libc_path and config.auto_load_libs:
        load_kwargs["force_load_libs"] = [libc_path]
    project = angr.Project(elf_path, **load_kwargs)

    exploit = Exploit(load_elf(elf_path), load_elf(libc_path) if libc_path else None, elf_filename=config.elf_filename)
    main_object = project.loader.main_object
    exploit.emulated_elf_base = main_object.mapped_base
    exploit.emulated_elf_end = main_object.max_addr + 1
    logger.info("Loaded %s at %#x", elf_path, exploit.emulated_elf_base)
    return project, exploit


def create_entry_state(project: angr.Project, config: AegConfig) -> Any:
    """Entry state whose stdin is ``stdin_size`` unconstrained bytes."""

    stdin = SimFileStream(name="stdin", content=claripy.BVS("stdin", config.stdin_size * 8), has_end=True)
    return project.factory.entry_state(
        stdin=stdin,
        add_options={
            angr.options.ZERO_FILL_UNCONSTRAINED_MEMORY,
            angr.options.ZERO_FILL_UNCONSTRAINED_REGISTERS,
        },
    )


def create_session(config: AegConfig, exploit: Exploit) -> ExploitSession:
    return ExploitSession(config, exploit)


def generate_exploit(config: AegConfig) -> GenerationResult:
    """Explore the target until one exploit script has been written."""

    project, exploit = load_target(config)
    session = create_session(config, exploit)

    simgr = project.factory.simulation_manager(create_entry_state(project, config), save_unconstrained=True)
    simgr.use_technique(ExploitExploration(session))
    simgr.use_technique(StateBudgetLimiter(config.max_states))

    result = GenerationResult(exploit_path=None, technique=None)
    try:
        simgr.run(until=lambda sm: bool(session.generated))
    except StateBudgetExceeded as exc:
        logger.warning("Exploration stopped: %s", exc)
        result.budget_exceeded = True
        result.errors.append(str(exc))

    result.stashes = {name: len(states) for name, states in simgr.stashes.items() if states}
    for record in simgr.errored:
        result.errors.append(f"{record.state}: {record.error}")

    if session.generated:
        result.exploit_path = str(session.generated[-1])
        technique = session.select_technique()
        result.technique = technique.name if technique is not None else None
    else:
        logger.error(
            "No exploit generated (%d hijacked, %d terminated)",
            result.stashes.get(HIJACKED_STASH, 0),
            result.stashes.get(TERMINATED_STASH, 0),
        )
    return result


def describe_target(config: AegConfig) -> Dict[str, Any]:
    """Mitigations of the target and which techniques can attack it."""

    elf_path = _resolve(config.elf_filename, "target binary")
    libc_path = _resolve(config.libc_filename, "libc") if config.libc_filename else None
    exploit = Exploit(load_elf(elf_path), load_elf(libc_path) if libc_path else None, elf_filename=config.elf_filename)

    # Techniques only need the binaries; no module hooks are required.
    static_config = AegConfig(
        elf_filename=config.elf_filename,
        libc_filename=config.libc_filename,
        modules=[],
        techniques=list(config.techniques),
    )
    session = create_session(static_config, exploit)
    mitigations = checksec(exploit.elf)
    return {
        "binary": elf_path,
        "libc": libc_path,
        "checksec": asdict(mitigations),
        "leak_targets": list(mitigations.leak_requirements()),
        "techniques": {
            technique.name: technique.check_requirements()
            for technique in session.techniques
        },
        "gadgets": {name: f"{address:#x}" for name, address in exploit.variables.items()},
    }


__all__ = [
    "GenerationResult",
    "create_entry_state",
    "create_session",
    "describe_target",
    "generate_exploit",
    "load_target",
]
