"""Configuration loading and environment variable parsing for vmctl."""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

try:
    import yaml  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit("PyYAML is required but not installed") from exc

from vmctl.constants import (
    CONFIG_FILE_NAME,
    DEFAULT_BOOT_TIMEOUT,
    DEFAULT_CPUS,
    DEFAULT_DISK_SIZE,
    DEFAULT_IMAGE,
    DEFAULT_MEMORY,
    DEFAULT_NET_TYPE,
    DEFAULT_STOP_TIMEOUT,
    DEFAULT_USERNAME,
    DEFAULT_WORK_ROOT,
    IMAGE_CATALOG,
    LOCK_TIMEOUT,
    NET_TYPE_ALIASES,
    NET_TYPES,
    SUPPORTED_ARCHES,
    VIRT_TYPE_ALIASES,
    VIRT_TYPES,
)
from vmctl.exceptions import ManagerError
from vmctl.utils import (
    get_env,
    get_env_bool,
    host_arch,
    log,
    normalize_arch,
    parse_int_env,
    validate_disk_size,
    validate_memory,
)


@dataclass
class Settings:
    work_root: Path
    images_dir: Path
    vms_dir: Path
    default_username: str = DEFAULT_USERNAME
    default_memory: str = DEFAULT_MEMORY
    default_cpus: int = DEFAULT_CPUS
    default_disk_size: str = DEFAULT_DISK_SIZE
    default_image: str = DEFAULT_IMAGE
    default_arch: str = "x86_64"
    default_net_type: str = DEFAULT_NET_TYPE
    brew_prefix: Path = Path("/opt/homebrew")
    socket_vmnet_client: Optional[Path] = None
    socket_vmnet_socket: Optional[Path] = None
    bridge_use_sudo: bool = True
    boot_timeout: int = DEFAULT_BOOT_TIMEOUT
    stop_timeout: int = DEFAULT_STOP_TIMEOUT
    lock_timeout: float = LOCK_TIMEOUT
    images: Dict[str, Dict[str, Any]] = field(default_factory=lambda: copy.deepcopy(IMAGE_CATALOG))

    def __post_init__(self) -> None:
        if self.socket_vmnet_client is None:
            self.socket_vmnet_client = self.brew_prefix / "opt/socket_vmnet/bin/socket_vmnet_client"
        if self.socket_vmnet_socket is None:
            self.socket_vmnet_socket = self.brew_prefix / "var/run/socket_vmnet"

    @classmethod
    def for_root(cls, work_root: Path, **overrides: Any) -> "Settings":
        """Settings with every path rooted in ``work_root``."""
        return cls(
            work_root=work_root,
            images_dir=work_root / "images",
            vms_dir=work_root / "vms",
            **overrides,
        )


def normalize_net_type(raw: str) -> str:
    lowered = raw.strip().lower()
    net_type = NET_TYPE_ALIASES.get(lowered, lowered)
    if net_type not in NET_TYPES:
        supported = ", ".join(sorted(NET_TYPES))
        raise ManagerError(f"Unsupported network type '{raw}'. Supported: {supported}")
    return net_type


def normalize_virt_type(raw: str) -> str:
    lowered = raw.strip().lower()
    virt_type = VIRT_TYPE_ALIASES.get(lowered, lowered)
    if virt_type not in VIRT_TYPES:
        supported = ", ".join(sorted(VIRT_TYPES))
        raise ManagerError(f"Unsupported virtualization type '{raw}'. Supported: {supported}")
    return virt_type


def resolve_arch(raw: str) -> str:
    arch = normalize_arch(raw)
    if arch not in SUPPORTED_ARCHES:
        supported = ", ".join(sorted(SUPPORTED_ARCHES))
        raise ManagerError(f"Unsupported architecture '{raw}'. Supported: {supported}")
    return arch


def _default_brew_prefix() -> Path:
    if Path("/opt/homebrew").exists():
        return Path("/opt/homebrew")
    return Path("/usr/local")


def _expand(raw: str) -> Path:
    return Path(raw).expanduser()


def load_config_file(path: Path) -> Dict[str, Any]:
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as exc:
        raise ManagerError(f"Config file {path} contains invalid YAML: {exc}")
    except OSError as exc:
        raise ManagerError(f"Cannot read config file {path}: {exc}")
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ManagerError(f"Config file {path} must contain a YAML mapping")
    return data


def _merge_images(settings: Settings, raw: Any) -> None:
    if not isinstance(raw, dict):
        raise ManagerError("'images' in the config file must be a mapping")
    for key, entry in raw.items():
        if not isinstance(entry, dict) or not isinstance(entry.get("urls"), dict):
            raise ManagerError(f"Image '{key}' must define a 'urls' mapping")
        urls = {resolve_arch(arch): str(url) for arch, url in entry["urls"].items()}
        settings.images[str(key)] = {"name": str(entry.get("name", key)), "urls": urls}


def load_settings(config_path: Optional[Path] = None) -> Settings:
    """Resolve settings from defaults, an optional YAML file and the environment."""
    work_root = _expand(get_env("VM_HOME") or str(DEFAULT_WORK_ROOT))
    if config_path is None:
        env_config = get_env("VM_CONFIG")
        config_path = _expand(env_config) if env_config else work_root / CONFIG_FILE_NAME
    file_cfg: Dict[str, Any] = {}
    if config_path.exists():
        log("DEBUG", f"Loading config from {config_path}")
        file_cfg = load_config_file(config_path)

    if "work_root" in file_cfg and get_env("VM_HOME") is None:
        work_root = _expand(str(file_cfg["work_root"]))

    brew_prefix = _expand(str(file_cfg.get("brew_prefix", _default_brew_prefix())))
    settings = Settings(
        work_root=work_root,
        images_dir=_expand(str(file_cfg.get("images_dir", work_root / "images"))),
        vms_dir=_expand(str(file_cfg.get("vms_dir", work_root / "vms"))),
        brew_prefix=brew_prefix,
    )

    settings.default_username = (
        get_env("VM_DEFAULT_USER") or str(file_cfg.get("default_username", DEFAULT_USERNAME))
    ).strip()
    settings.default_memory = validate_memory(get_env("VM_MEMORY") or str(file_cfg.get("default_memory", DEFAULT_MEMORY)))
    settings.default_cpus = parse_int_env("VM_CPUS", str(file_cfg.get("default_cpus", DEFAULT_CPUS)), max_val=256)
    settings.default_disk_size = validate_disk_size(
        get_env("VM_DISK_SIZE") or str(file_cfg.get("default_disk_size", DEFAULT_DISK_SIZE))
    )
    settings.default_image = get_env("VM_IMAGE") or str(file_cfg.get("default_image", DEFAULT_IMAGE))
    native = host_arch()
    fallback_arch = native if native in SUPPORTED_ARCHES else "x86_64"
    settings.default_arch = resolve_arch(get_env("VM_ARCH") or str(file_cfg.get("default_arch", fallback_arch)))
    settings.default_net_type = normalize_net_type(
        get_env("VM_NET_TYPE") or str(file_cfg.get("default_net_type", DEFAULT_NET_TYPE))
    )

    client = get_env("SOCKET_VMNET_CLIENT") or file_cfg.get("socket_vmnet_client")
    if client:
        settings.socket_vmnet_client = _expand(str(client))
    socket_path = get_env("SOCKET_VMNET_SOCKET") or file_cfg.get("socket_vmnet_path")
    if socket_path:
        settings.socket_vmnet_socket = _expand(str(socket_path))
    settings.bridge_use_sudo = get_env_bool("VM_BRIDGE_SUDO", bool(file_cfg.get("bridge_use_sudo", True)))

    settings.boot_timeout = parse_int_env(
        "VM_BOOT_TIMEOUT", str(file_cfg.get("boot_timeout", DEFAULT_BOOT_TIMEOUT))
    )
    settings.stop_timeout = parse_int_env(
        "VM_STOP_TIMEOUT", str(file_cfg.get("stop_timeout", DEFAULT_STOP_TIMEOUT))
    )

    if "images" in file_cfg:
        _merge_images(settings, file_cfg["images"])
    if settings.default_image not in settings.images:
        available = ", ".join(sorted(settings.images))
        raise ManagerError(f"Unknown default image '{settings.default_image}'. Available: {available}")
    return settings
