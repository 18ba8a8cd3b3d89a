from .base import Operation
from .copy import CopyOperation
from .exec import ExecOperation
from .file import FileOperation
from .package import PackageOperation
from .service import ServiceOperation

OPERATION_REGISTRY = {
    "package": PackageOperation,
    "copy": CopyOperation,
    "file": FileOperation,
    "service": ServiceOperation,
    "exec": ExecOperation,
    "command": ExecOperation,
}

__all__ = [
    "Operation",
    "CopyOperation",
    "ExecOperation",
    "FileOperation",
    "PackageOperation",
    "ServiceOperation",
    "OPERATION_REGISTRY",
]
