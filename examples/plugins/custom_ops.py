"""
Example plugin module for Marionette.

Drop this file into a plugin directory (see plugin_dirs in main.conf) or make it
importable (plugin_modules) and it will register a new operation called
`motd` that keeps /etc/motd in sync with a message.
"""

from marionette.executors import sha256_bytes
from marionette.operations.base import Operation
from marionette.types import HostConfig


class MotdOperation(Operation):
    def __init__(self, spec: dict):
        super().__init__(spec)
        self.message = str(spec.get("message", "managed by marionette")) + "\n"

    def check(self, host: HostConfig, executor) -> bool:
        return executor.file_checksum("/etc/motd") == sha256_bytes(self.message.encode())

    def apply(self, host: HostConfig, executor) -> str:
        executor.write_file("/etc/motd", content=self.message, mode=0o644)
        return "motd updated"


def register_operations(registry) -> None:
    registry["motd"] = MotdOperation
