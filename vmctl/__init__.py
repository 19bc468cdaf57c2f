"""vmctl package."""

__all__ = [
    "boot",
    "cli",
    "cloudinit",
    "config",
    "constants",
    "exceptions",
    "identity",
    "images",
    "manager",
    "models",
    "network",
    "process",
    "qemu",
    "store",
    "utils",
]
