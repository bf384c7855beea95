"""
Builder configuration.

Each setting kind is its own variant class that knows how to coerce and
validate a raw value (from JSON or the environment). `BuilderConfig` is
assembled from a settings dictionary through the `SETTINGS` registry.
"""

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional
from urllib.parse import urlparse

from .exceptions import ConfigurationError
from .settings_manager import SettingsManager, get_settings_manager, lookup_path


@dataclass(frozen=True)
class Setting:
    """A named setting with a default"""
    key: str
    attr: str
    default: Any = None

    def coerce(self, raw: Any) -> Any:
        return raw

    def resolve(self, settings: Dict[str, Any]) -> Any:
        raw = lookup_path(settings, self.key)
        if raw is None or raw == '':
            return self.default
        return self.coerce(raw)


@dataclass(frozen=True)
class PathSetting(Setting):

    def coerce(self, raw: Any) -> Path:
        return Path(str(raw)).expanduser()


@dataclass(frozen=True)
class UrlSetting(Setting):

    def coerce(self, raw: Any) -> str:
        url = str(raw).strip().rstrip('/')
        parsed = urlparse(url)
        if parsed.scheme not in ('http', 'https') or not parsed.netloc:
            raise ConfigurationError(self.key, f"'{raw}' is not an http(s) URL")
        return url


@dataclass(frozen=True)
class SecretSetting(Setting):

    def coerce(self, raw: Any) -> str:
        return str(raw).strip()


@dataclass(frozen=True)
class IntSetting(Setting):
    minimum: int = 0

    def coerce(self, raw: Any) -> int:
        if isinstance(raw, bool):
            raise ConfigurationError(self.key, f"expected an integer, got {raw!r}")
        try:
            value = int(raw)
        except (TypeError, ValueError):
            raise ConfigurationError(self.key, f"expected an integer, got {raw!r}")
        if value < self.minimum:
            raise ConfigurationError(self.key, f"must be >= {self.minimum}")
        return value


@dataclass(frozen=True)
class FloatSetting(Setting):
    minimum: float = 0.0

    def coerce(self, raw: Any) -> float:
        try:
            value = float(raw)
        except (TypeError, ValueError):
            raise ConfigurationError(self.key, f"expected a number, got {raw!r}")
        if value < self.minimum:
            raise ConfigurationError(self.key, f"must be >= {self.minimum}")
        return value


@dataclass(frozen=True)
class BoolSetting(Setting):

    def coerce(self, raw: Any) -> bool:
        if isinstance(raw, bool):
            return raw
        text = str(raw).strip().lower()
        if text in ('1', 'true', 'yes', 'on'):
            return True
        if text in ('0', 'false', 'no', 'off'):
            return False
        raise ConfigurationError(self.key, f"expected true/false, got {raw!r}")


SETTINGS = (
    PathSetting('cache.dir', 'cache_dir', Path('cache')),
    PathSetting('markets.file', 'markets_file', Path('sampled_markets.csv')),
    UrlSetting('channels.url', 'channels_url'),
    SecretSetting('channels.token', 'channels_token'),
    IntSetting('harvest.market_safety_buffer', 'market_safety_buffer', 2),
    IntSetting('enhancement.safety_buffer', 'enhancement_safety_buffer', 50),
    IntSetting('enhancement.checkpoint_interval', 'enhancement_checkpoint_interval', 25, minimum=1),
    FloatSetting('enhancement.request_delay', 'enhancement_delay', 0.05),
    BoolSetting('enhancement.enabled', 'enhancement_enabled', True),
    IntSetting('api.timeout', 'api_timeout', 30, minimum=1),
    IntSetting('backup.max_user_backups', 'max_user_backups', 5, minimum=1),
)


@dataclass
class BuilderConfig:
    cache_dir: Path = Path('cache')
    markets_file: Path = Path('sampled_markets.csv')
    channels_url: Optional[str] = None
    channels_token: Optional[str] = None
    market_safety_buffer: int = 2
    enhancement_safety_buffer: int = 50
    enhancement_checkpoint_interval: int = 25
    enhancement_delay: float = 0.05
    enhancement_enabled: bool = True
    api_timeout: int = 30
    max_user_backups: int = 5

    @classmethod
    def from_settings(cls, settings: Dict[str, Any]) -> 'BuilderConfig':
        values = {setting.attr: setting.resolve(settings) for setting in SETTINGS}
        return cls(**values)

    @classmethod
    def load(cls, manager: Optional[SettingsManager] = None) -> 'BuilderConfig':
        manager = manager or get_settings_manager()
        return cls.from_settings(manager.load_settings())

    # File layout under cache_dir

    @property
    def user_stations_file(self) -> Path:
        return self.cache_dir / 'user_stations.json'

    @property
    def base_stations_file(self) -> Path:
        return self.cache_dir / 'base_stations.json'

    @property
    def base_markets_file(self) -> Path:
        return self.cache_dir / 'base_markets.csv'

    @property
    def combined_stations_file(self) -> Path:
        return self.cache_dir / 'combined_stations.json'

    @property
    def ledger_file(self) -> Path:
        return self.cache_dir / 'ledger.db'

    @property
    def raw_scratch_file(self) -> Path:
        return self.cache_dir / 'temp_user_stations.jsonl'

    @property
    def scratch_file(self) -> Path:
        return self.cache_dir / 'temp_user_stations.json'

    @property
    def enhanced_scratch_file(self) -> Path:
        return self.cache_dir / 'temp_enhanced_stations.jsonl'

    @property
    def backup_dir(self) -> Path:
        return self.cache_dir / 'backups'

    def checkpoint_file(self, operation: str) -> Path:
        return self.cache_dir / f'{operation}_progress.json'

    def ensure_dirs(self):
        self.cache_dir.mkdir(parents=True, exist_ok=True)
        self.backup_dir.mkdir(parents=True, exist_ok=True)
