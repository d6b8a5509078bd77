import os
import re
from collections.abc import Mapping
from pathlib import Path
from typing import Any, Dict, Iterable, Optional

import yaml
from dotenv import load_dotenv

load_dotenv()

DEFAULT_CONFIG_PATH = Path(__file__).parent / 'config.yaml'

# ${NAME} or ${NAME:-fallback}, anywhere inside a scalar
_ENV_PATTERN = re.compile(r'\$\{([A-Za-z_][A-Za-z0-9_]*)(?::-([^}]*))?\}')


def _wrap(value: Any) -> Any:
    return SectionProxy(value) if isinstance(value, dict) else value


def expand_env(node: Any) -> Any:
    """Substitute environment placeholders throughout a parsed YAML tree.

    Unset variables without a fallback become empty strings so optional
    credentials read as falsy instead of leaking the placeholder text.
    """
    if isinstance(node, dict):
        return {key: expand_env(value) for key, value in node.items()}
    if isinstance(node, list):
        return [expand_env(item) for item in node]
    if isinstance(node, str) and '${' in node:
        return _ENV_PATTERN.sub(lambda m: os.getenv(m.group(1), m.group(2) or ''), node)
    return node


class SectionProxy(Mapping):
    """Read-only view of one config section; nested dicts come back wrapped."""

    def __init__(self, data: Optional[Dict[str, Any]]):
        self._data = data or {}

    def __getitem__(self, key: str) -> Any:
        return _wrap(self._data[key])

    def __getattr__(self, name: str) -> Any:
        if name.startswith('_'):
            raise AttributeError(name)
        value = self._data.get(name)
        if value is None:
            raise AttributeError(f"Config key '{name}' not found")
        return _wrap(value)

    def __iter__(self):
        return iter(self._data)

    def __len__(self) -> int:
        return len(self._data)

    def get(self, key: str, default: Any = None) -> Any:
        return _wrap(self._data.get(key, default))

    def to_dict(self) -> Dict[str, Any]:
        return self._data


class Config(SectionProxy):
    """Market-maker settings loaded from YAML.

    The path comes from the argument, then ``MM_CONFIG_PATH``, then the
    ``config.yaml`` shipped beside this module.
    """

    def __init__(self, config_path: Optional[str] = None):
        path = config_path or os.getenv('MM_CONFIG_PATH') or DEFAULT_CONFIG_PATH
        self.config_path = Path(path)
        super().__init__(self._load())

    def _load(self) -> Dict[str, Any]:
        if not self.config_path.exists():
            raise RuntimeError(f"Configuration file not found at {self.config_path}")
        try:
            raw = yaml.safe_load(self.config_path.read_text()) or {}
        except yaml.YAMLError as exc:
            raise RuntimeError(f"Error parsing YAML configuration: {exc}") from exc
        if not isinstance(raw, dict):
            raise RuntimeError(f"Configuration root must be a mapping in {self.config_path}")
        return expand_env(raw)

    def section(self, key: str) -> SectionProxy:
        """Return a section as a proxy, empty when the section is missing."""
        value = self._data.get(key)
        return SectionProxy(value if isinstance(value, dict) else {})

    def require(self, sections: Iterable[str]) -> None:
        missing = [name for name in sections if not self.section(name)]
        if missing:
            raise RuntimeError(f"Missing config sections in {self.config_path}: {', '.join(missing)}")

    def reload(self) -> None:
        self._data = self._load()


config = Config()
