import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, List, Mapping, Optional

import yaml


@dataclass
class LoxConfig:
    """Settings for one interpreter session.

    ``load_path`` seeds the script's ``LOAD_PATH`` array. With ``use_print_buf``
    output is collected as side effects instead of written to stdout.
    """
    load_path: List[str] = field(default_factory=lambda: ["."])
    use_print_buf: bool = False
    silence_errors: bool = False
    debug_keys: List[str] = field(default_factory=list)
    argv: List[str] = field(default_factory=list)

    @classmethod
    def from_mapping(cls, data: Optional[Mapping[str, Any]]) -> 'LoxConfig':
        data = dict(data or {})
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ValueError(f"Unknown config keys: {', '.join(unknown)}")
        for key in ("load_path", "debug_keys", "argv"):
            if key in data:
                value = data[key]
                if isinstance(value, str):
                    value = [value]
                data[key] = [str(v) for v in value or []]
        return cls(**data)

    @classmethod
    def from_yaml(cls, path) -> 'LoxConfig':
        text = Path(path).read_text(encoding="utf-8")
        data = yaml.safe_load(text)
        if data is not None and not isinstance(data, dict):
            raise ValueError(f"{path}: config must be a mapping")
        return cls.from_mapping(data)

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> 'LoxConfig':
        return cls().apply_env(environ)

    def apply_env(self, environ: Optional[Mapping[str, str]] = None) -> 'LoxConfig':
        env: Mapping[str, str] = os.environ if environ is None else environ
        keys = [k.strip() for k in env.get("LOX_DEBUG", "").split(",") if k.strip()]
        for key in keys:
            if key not in self.debug_keys:
                self.debug_keys.append(key)
        extra = [p for p in env.get("LOX_PATH", "").split(":") if p]
        for entry in extra:
            if entry not in self.load_path:
                self.load_path.append(entry)
        return self

    def debug_enabled(self, key: str) -> bool:
        keys = self.debug_keys
        if os.environ.get("LOX_DEBUG"):
            keys = keys + os.environ["LOX_DEBUG"].split(",")
        return key in keys or "all" in keys
