import os
import re
from collections.abc import Mapping
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from dotenv import load_dotenv

load_dotenv()

DEFAULT_CONFIG_PATH = Path(__file__).parent / 'config.yaml'
ENV_PREFIX = 'SIGNALBOT_'

# ${NAME} or ${NAME:-fallback}
_ENV_REF = re.compile(r'^\$\{(?P<name>[A-Za-z_][A-Za-z0-9_]*)(?::-(?P<default>.*))?\}$')

EXCHANGE_MODES = ('paper', 'binance')


class ConfigError(RuntimeError):
    pass


class SectionProxy(Mapping):
    """Read-only view of one YAML mapping; nested mappings come back wrapped."""

    def __init__(self, data: Optional[Dict[str, Any]]):
        self._data = data or {}

    def __getitem__(self, key: str) -> Any:
        return _wrap(self._data[key])

    def __iter__(self):
        return iter(self._data)

    def __len__(self) -> int:
        return len(self._data)

    def get(self, key: str, default: Any = None) -> Any:
        return _wrap(self._data.get(key, default))

    def to_dict(self) -> Dict[str, Any]:
        return self._data


def _wrap(value: Any) -> Any:
    return SectionProxy(value) if isinstance(value, dict) else value


class Config:
    """YAML settings with ``${ENV}`` references and ``SIGNALBOT_SECTION__KEY`` overrides.

    Components read their own section through ``section()`` and fall back to
    built-in defaults for anything missing, so a partial file is valid.
    """

    def __init__(self, config_path: Optional[str] = None, environ: Optional[Mapping] = None):
        path = config_path or os.getenv('SIGNALBOT_CONFIG') or DEFAULT_CONFIG_PATH
        self.config_path = Path(path)
        self._environ = os.environ if environ is None else environ
        self._data = self._load_config()

    def _load_config(self) -> Dict[str, Any]:
        if not self.config_path.exists():
            raise ConfigError(f"Configuration file not found at {self.config_path}")
        with self.config_path.open('r') as fh:
            try:
                raw = yaml.safe_load(fh) or {}
            except yaml.YAMLError as exc:
                raise ConfigError(f"Error parsing YAML configuration: {exc}") from exc
        if not isinstance(raw, dict):
            raise ConfigError(f"{self.config_path} must contain a mapping at the top level")
        data = self._resolve_env_refs(raw)
        self._apply_overrides(data)
        self._validate(data)
        return data

    def _resolve_env_refs(self, node: Any) -> Any:
        if isinstance(node, dict):
            return {key: self._resolve_env_refs(value) for key, value in node.items()}
        if isinstance(node, list):
            return [self._resolve_env_refs(item) for item in node]
        if isinstance(node, str):
            match = _ENV_REF.match(node.strip())
            if match:
                return self._environ.get(match.group('name'), match.group('default') or '')
        return node

    def _apply_overrides(self, data: Dict[str, Any]) -> None:
        for name, raw in self._environ.items():
            if not name.startswith(ENV_PREFIX) or '__' not in name:
                continue
            section, _, key = name[len(ENV_PREFIX):].lower().partition('__')
            if not section or not key:
                continue
            # YAML scalars keep numbers and booleans typed
            try:
                value = yaml.safe_load(raw) if raw != '' else ''
            except yaml.YAMLError:
                value = raw
            data.setdefault(section, {})[key] = value

    @staticmethod
    def _validate(data: Dict[str, Any]) -> None:
        mode = str((data.get('exchange') or {}).get('mode', 'paper')).lower()
        if mode not in EXCHANGE_MODES:
            raise ConfigError(f"exchange.mode must be one of {EXCHANGE_MODES}, got {mode!r}")
        fraction = (data.get('execution') or {}).get('buy_fraction', 0.10)
        if not 0 < float(fraction) <= 1:
            raise ConfigError(f"execution.buy_fraction must be within (0, 1], got {fraction}")
        window = (data.get('signals') or {}).get('window_minutes', 10)
        if float(window) <= 0:
            raise ConfigError(f"signals.window_minutes must be positive, got {window}")

    def get(self, key: str, default: Any = None) -> Any:
        return _wrap(self._data.get(key, default))

    def section(self, key: str) -> SectionProxy:
        """Return a section proxy, empty when the section is absent."""
        value = self._data.get(key)
        return SectionProxy(value if isinstance(value, dict) else {})

    def __getattr__(self, name: str) -> Any:
        if name.startswith('_'):
            raise AttributeError(name)
        try:
            return _wrap(self._data[name])
        except KeyError as exc:
            raise AttributeError(f"Config key '{name}' not found") from exc

    def reload(self) -> None:
        self._data = self._load_config()


config = Config()
