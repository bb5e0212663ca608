from .base import ModuleCall, Operation, is_windows
from .common import (
    PackageOperation,
    PingOperation,
    PipOperation,
    RebootOperation,
    RemoveFileOperation,
    ShellOperation,
)
from .windows import (
    DnsClientOperation,
    DomainCheckOperation,
    DomainMembershipOperation,
    DomainOperation,
    DomainUserOperation,
    DownloadOperation,
    FeatureOperation,
    LocalUserOperation,
    RegistryOperation,
    ServiceOperation,
)

OPERATION_REGISTRY = {
    "ping": PingOperation,
    "reboot": RebootOperation,
    "install-package": PackageOperation,
    "install-pip": PipOperation,
    "shell": ShellOperation,
    "remove-file": RemoveFileOperation,
    "set-local-password": LocalUserOperation,
    "install-feature": FeatureOperation,
    "create-domain": DomainOperation,
    "check-domain": DomainCheckOperation,
    "create-user": DomainUserOperation,
    "set-dns": DnsClientOperation,
    "join-domain": DomainMembershipOperation,
    "set-registry": RegistryOperation,
    "ensure-service": ServiceOperation,
    "download-file": DownloadOperation,
}

__all__ = [
    "ModuleCall",
    "Operation",
    "is_windows",
    "PingOperation",
    "RebootOperation",
    "PackageOperation",
    "PipOperation",
    "ShellOperation",
    "RemoveFileOperation",
    "LocalUserOperation",
    "FeatureOperation",
    "DomainOperation",
    "DomainCheckOperation",
    "DomainUserOperation",
    "DnsClientOperation",
    "DomainMembershipOperation",
    "RegistryOperation",
    "ServiceOperation",
    "DownloadOperation",
    "OPERATION_REGISTRY",
]
