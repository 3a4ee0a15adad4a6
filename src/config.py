"""Configuration management.

Configuration is loaded from a directory of YAML files:
- settings.yaml: Defaults plus reconcile, keys and state tuning
- providers/*.yaml: One provider connection per file (file stem = name)
- secrets.yaml: All sensitive values, referenced by key from provider files

Directory resolution order:
1. $BBCTL_CONFIG environment variable
2. ~/.config/bbctl/
3. /etc/bbctl/

The core never parses these files; it only accepts the dataclasses below.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml

PROVIDER_TYPES = ('proxmox', 'vyos')

DEFAULT_API_PORTS = {'proxmox': 8006, 'vyos': 443}
DEFAULT_SSH_USERS = {'proxmox': 'root', 'vyos': 'vyos'}
LOG_LEVELS = ('debug', 'info', 'warning', 'error')


class ConfigError(Exception):
    """Configuration error."""


@dataclass
class RegionConfig:
    """A region of one provider and its allocation pools.

    vrf_range/vni_range are inclusive (low, high) pairs; None means the
    allocator partitions the global range among scopes.
    """
    name: str
    supernet: str = '10.0.0.0/16'
    vrf_range: Optional[tuple[int, int]] = None
    vni_range: Optional[tuple[int, int]] = None


@dataclass
class ProviderConfig:
    """Connection parameters for one provider.

    Secret values (api_token, api_key) are resolved from secrets.yaml at load
    time and kept out of repr().
    """
    name: str
    type: str
    host: str
    regions: list[RegionConfig] = field(default_factory=list)
    api_port: int = 0
    ssh_user: str = ''
    ssh_port: int = 22
    ssh_key: Optional[Path] = None
    verify_ssl: bool = True
    timeout: float = 30.0

    # Proxmox placement
    node: str = ''
    storage: str = 'local-lvm'
    bridge: str = 'vmbr0'
    sdn_zone: str = 'bbctl'
    volume_owner_vmid: int = 9999

    # Network appliance
    bgp_asn: int = 65000

    # Management channel
    wg_interface: str = 'wg0'
    wg_allowed_ips: str = ''

    api_token: str = field(default='', repr=False)
    api_key: str = field(default='', repr=False)

    def __post_init__(self):
        if self.type not in PROVIDER_TYPES:
            raise ConfigError(
                f"Provider '{self.name}': unknown type '{self.type}' "
                f"(expected one of: {', '.join(PROVIDER_TYPES)})"
            )
        if not self.host:
            raise ConfigError(f"Provider '{self.name}': host is required")
        if not self.api_port:
            self.api_port = DEFAULT_API_PORTS[self.type]
        if not self.ssh_user:
            self.ssh_user = DEFAULT_SSH_USERS[self.type]
        if isinstance(self.ssh_key, str):
            self.ssh_key = Path(self.ssh_key).expanduser()
        if not self.node:
            self.node = self.host.split('.')[0]
        if not self.regions:
            self.regions = [RegionConfig(name='default')]

    @property
    def api_endpoint(self) -> str:
        return f"https://{self.host}:{self.api_port}"

    def region(self, name: str) -> RegionConfig:
        for region in self.regions:
            if region.name == name:
                return region
        raise ConfigError(
            f"Provider '{self.name}' has no region '{name}' "
            f"(available: {', '.join(r.name for r in self.regions)})"
        )


@dataclass
class ReconcileSettings:
    """Retry, timeout and worker tuning for the engine."""
    max_attempts: int = 5
    base_delay: float = 1.0
    max_delay: float = 30.0
    timeout: float = 30.0
    lease_ttl: float = 900.0
    sweep_interval: float = 300.0
    workers: int = 4
    sweep_workers: int = 2


@dataclass
class KeySettings:
    """Key rotation schedule."""
    rotation_days: float = 7.0
    grace_hours: float = 48.0
    tick_interval: float = 60.0

    @property
    def rotation_interval(self) -> float:
        return self.rotation_days * 86400

    @property
    def grace_period(self) -> float:
        return self.grace_hours * 3600


@dataclass
class Settings:
    """User settings from settings.yaml."""
    config_dir: Path
    default_provider: Optional[str] = None
    default_region: Optional[str] = None
    log_level: str = 'info'
    reconcile: ReconcileSettings = field(default_factory=ReconcileSettings)
    keys: KeySettings = field(default_factory=KeySettings)
    state_path: Optional[Path] = None
    state_key: str = field(default='', repr=False)

    def __post_init__(self):
        if self.log_level not in LOG_LEVELS:
            raise ConfigError(
                f"Invalid log_level '{self.log_level}'. Use: {', '.join(LOG_LEVELS)}"
            )
        if self.state_path is None:
            self.state_path = self.config_dir / 'state.json'


def _parse_yaml(path: Path) -> dict:
    """Parse a YAML file and return contents."""
    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Cannot parse {path}: {e}")
    if not isinstance(data, dict):
        raise ConfigError(f"{path}: expected a mapping at top level")
    return data


def _load_secrets(config_dir: Path) -> dict:
    """Load secrets.yaml (empty when absent)."""
    secrets_file = config_dir / 'secrets.yaml'
    if not secrets_file.exists():
        return {}
    return _parse_yaml(secrets_file)


def _resolve_secret(secrets: dict, section: str, ref: Optional[str], owner: str) -> str:
    """Resolve a secret reference like api_token: pve1 against secrets[section]."""
    if not ref:
        return ''
    values = secrets.get(section) or {}
    if ref not in values:
        raise ConfigError(
            f"{owner}: secret '{ref}' not found in secrets.yaml ({section}.{ref})"
        )
    return str(values[ref])


def _int_range(value: Any, what: str) -> Optional[tuple[int, int]]:
    if value is None:
        return None
    try:
        low, high = (int(v) for v in value)
    except (TypeError, ValueError):
        raise ConfigError(f"{what}: expected [low, high], got {value!r}")
    if low > high:
        raise ConfigError(f"{what}: low {low} is above high {high}")
    return (low, high)


def get_config_dir() -> Path:
    """Discover the configuration directory."""
    if env_path := os.environ.get('BBCTL_CONFIG'):
        path = Path(env_path)
        if path.exists():
            return path
        raise ConfigError(f"BBCTL_CONFIG={env_path} does not exist")

    user_dir = Path.home() / '.config' / 'bbctl'
    if user_dir.exists():
        return user_dir

    system_dir = Path('/etc/bbctl')
    if system_dir.exists():
        return system_dir

    raise ConfigError(
        "bbctl configuration not found. "
        "Set BBCTL_CONFIG or create ~/.config/bbctl/settings.yaml"
    )


def load_settings(config_dir: Optional[Path] = None) -> Settings:
    """Load settings.yaml, falling back to defaults for missing keys."""
    config_dir = config_dir or get_config_dir()
    settings_file = config_dir / 'settings.yaml'
    data = _parse_yaml(settings_file) if settings_file.exists() else {}
    secrets = _load_secrets(config_dir)

    defaults = data.get('defaults') or {}
    try:
        reconcile = ReconcileSettings(**(data.get('reconcile') or {}))
        keys = KeySettings(**(data.get('keys') or {}))
    except TypeError as e:
        raise ConfigError(f"{settings_file}: {e}")
    state = data.get('state') or {}

    state_path = state.get('path')
    if state_path:
        state_path = Path(state_path).expanduser()
        if not state_path.is_absolute():
            state_path = config_dir / state_path

    return Settings(
        config_dir=config_dir,
        default_provider=defaults.get('provider'),
        default_region=defaults.get('region'),
        log_level=str(defaults.get('log_level', 'info')).lower(),
        reconcile=reconcile,
        keys=keys,
        state_path=state_path or None,
        state_key=str(secrets.get('state_key') or ''),
    )


def load_provider_config(name: str, config_dir: Optional[Path] = None) -> ProviderConfig:
    """Load configuration for a named provider."""
    config_dir = config_dir or get_config_dir()
    provider_file = config_dir / 'providers' / f'{name}.yaml'
    if not provider_file.exists():
        available = list_providers(config_dir)
        raise ConfigError(
            f"Provider '{name}' not found: {provider_file}\n"
            f"Available providers: {', '.join(available) if available else 'none configured'}"
        )

    data = _parse_yaml(provider_file)
    secrets = _load_secrets(config_dir)
    owner = f"providers/{name}.yaml"

    regions = []
    for region_name, region_data in (data.get('regions') or {}).items():
        region_data = region_data or {}
        regions.append(RegionConfig(
            name=str(region_name),
            supernet=region_data.get('supernet', '10.0.0.0/16'),
            vrf_range=_int_range(region_data.get('vrf_range'), f"{owner} regions.{region_name}.vrf_range"),
            vni_range=_int_range(region_data.get('vni_range'), f"{owner} regions.{region_name}.vni_range"),
        ))

    ssh = data.get('ssh') or {}
    wireguard = data.get('wireguard') or {}
    return ProviderConfig(
        name=name,
        type=str(data.get('type', '')).lower(),
        host=data.get('host', ''),
        regions=regions,
        api_port=int(data.get('api_port', 0)),
        ssh_user=ssh.get('user', ''),
        ssh_port=int(ssh.get('port', 22)),
        ssh_key=ssh.get('key'),
        verify_ssl=bool(data.get('verify_ssl', True)),
        timeout=float(data.get('timeout', 30.0)),
        node=data.get('node', ''),
        storage=data.get('storage', 'local-lvm'),
        bridge=data.get('bridge', 'vmbr0'),
        sdn_zone=data.get('sdn_zone', 'bbctl'),
        volume_owner_vmid=int(data.get('volume_owner_vmid', 9999)),
        bgp_asn=int(data.get('bgp_asn', 65000)),
        wg_interface=wireguard.get('interface', 'wg0'),
        wg_allowed_ips=wireguard.get('allowed_ips', ''),
        api_token=_resolve_secret(secrets, 'api_tokens', data.get('api_token'), owner),
        api_key=_resolve_secret(secrets, 'api_keys', data.get('api_key'), owner),
    )


def list_providers(config_dir: Optional[Path] = None) -> list[str]:
    """List configured provider names."""
    try:
        config_dir = config_dir or get_config_dir()
    except ConfigError:
        return []
    providers_dir = config_dir / 'providers'
    if not providers_dir.exists():
        return []
    return sorted(f.stem for f in providers_dir.glob('*.yaml') if f.is_file())


def load_providers(config_dir: Optional[Path] = None) -> dict[str, ProviderConfig]:
    """Load every configured provider, keyed by name."""
    config_dir = config_dir or get_config_dir()
    return {name: load_provider_config(name, config_dir) for name in list_providers(config_dir)}
