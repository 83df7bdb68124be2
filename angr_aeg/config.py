"""Run configuration, loaded from keyword arguments or a JSON file."""

from __future__ import annotations

import json
import pathlib
from dataclasses import dataclass, field, fields
from typing import Any, Dict, List, Optional

from .errors import ConfigError

DEFAULT_MODULES = ("IOStates", "DynamicRop")
DEFAULT_TECHNIQUES = ("Ret2syscall",)


@dataclass
class AegConfig:
    """Settings for one exploit generation run."""

    elf_filename: str = ""
    libc_filename: Optional[str] = None
    modules: List[str] = field(default_factory=lambda: list(DEFAULT_MODULES))
    techniques: List[str] = field(default_factory=lambda: list(DEFAULT_TECHNIQUES))
    show_instructions: bool = False
    show_syscalls: bool = True
    disable_native_forking: bool = False
    user_specified_elf_base: Optional[int] = None
    # Entries of the form {"input": n}, {"output": true} or {"sleep": n}.
    user_specified_state_info_list: List[Dict[str, Any]] = field(default_factory=list)
    # Each group is a list of {"register": name, "value": n} or
    # {"address": n, "value": n, "size": bytes} entries.
    dynamic_rop_constraints: List[List[Dict[str, Any]]] = field(default_factory=list)
    output_filename: str = "exploit.py"
    stdin_size: int = 0x400
    max_states: int = 256
    # With SimProcedures only read, write and nanosleep reach the I/O tracker;
    # output from printf or puts is seen when libc runs natively.
    auto_load_libs: bool = False
    use_sim_procedures: bool = True

    def __post_init__(self) -> None:
        self.validate()

    def validate(self) -> None:
        for entry in self.user_specified_state_info_list:
            if not isinstance(entry, dict) or len(entry) != 1 or next(iter(entry)) not in ("input", "output", "sleep"):
                raise ConfigError(f"invalid state info entry: {entry!r}")
        for group in self.dynamic_rop_constraints:
            if not isinstance(group, list):
                raise ConfigError(f"constraint group must be a list: {group!r}")
            for constraint in group:
                if "value" not in constraint or not ("register" in constraint or "address" in constraint):
                    raise ConfigError(f"invalid dynamic ROP constraint: {constraint!r}")
        if self.stdin_size <= 0:
            raise ConfigError("stdin_size must be positive")
        if self.max_states <= 0:
            raise ConfigError("max_states must be positive")

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AegConfig":
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ConfigError(f"unknown configuration keys: {', '.join(unknown)}")
        return cls(**data)

    @classmethod
    def from_file(cls, path: str | pathlib.Path, **overrides: Any) -> "AegConfig":
        try:
            data = json.loads(pathlib.Path(path).read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            raise ConfigError(f"cannot load configuration from {path}: {exc}") from exc
        if not isinstance(data, dict):
            raise ConfigError(f"configuration root must be an object: {path}")
        data.update({k: v for k, v in overrides.items() if v is not None})
        return cls.from_dict(data)


__all__ = ["AegConfig", "DEFAULT_MODULES", "DEFAULT_TECHNIQUES"]
