from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import Callable, Optional, Sequence, TypeVar, Union
import hashlib
import logging
import os
import shlex
import shutil
import socket
import stat
import subprocess
import uuid

import paramiko

from .errors import ConnectionError, TimeoutError
from .secrets import SecretResolver
from .types import HostConfig

logger = logging.getLogger(__name__)

PathLike = Union[str, Path, PurePosixPath]
T = TypeVar("T")


@dataclass
class CommandResult:
    command: list[str]
    stdout: str
    stderr: str
    returncode: int


class Executor:
    """Base executor abstraction used by operations.

    An executor is the session to one host: commands run through ``run`` and
    file primitives act on the host's filesystem. Read-only calls pass
    ``mutable=False`` so probes and dry-runs can tell them apart.
    """

    def __init__(self, host: HostConfig, *, dry_run: bool = False, timeout: Optional[float] = None):
        self.host = host
        self.dry_run = dry_run
        self.timeout = timeout

    def connect(self) -> None:
        """Open the transport. Local execution has nothing to open."""

    def close(self) -> None:
        """Release the transport."""

    def run(
        self,
        command: Sequence[str],
        *,
        check: bool = True,
        mutable: bool = True,
        env: Optional[dict[str, str]] = None,
        cwd: Optional[PathLike] = None,
        timeout: Optional[float] = None,
    ) -> CommandResult:
        raise NotImplementedError

    # File primitives -----------------------------------------------------
    def read_file(self, path: PathLike) -> Optional[str]:
        raise NotImplementedError

    def file_checksum(self, path: PathLike) -> Optional[str]:
        raise NotImplementedError

    def file_mode(self, path: PathLike) -> Optional[int]:
        raise NotImplementedError

    def path_exists(self, path: PathLike) -> bool:
        raise NotImplementedError

    def is_dir(self, path: PathLike) -> bool:
        raise NotImplementedError

    def copy_file(self, src: Path, dst: PathLike, *, mode: Optional[int] = None) -> None:
        raise NotImplementedError

    def write_file(self, path: PathLike, *, content: str, mode: Optional[int] = None) -> None:
        raise NotImplementedError

    def ensure_directory(self, path: PathLike, *, mode: Optional[int] = None) -> None:
        raise NotImplementedError

    def chmod(self, path: PathLike, mode: int) -> None:
        raise NotImplementedError

    def remove_path(self, path: PathLike) -> bool:
        raise NotImplementedError

    def _timeout_for(self, timeout: Optional[float]) -> Optional[float]:
        return timeout if timeout is not None else self.timeout

    @staticmethod
    def _check_result(result: CommandResult) -> CommandResult:
        if result.returncode != 0:
            raise subprocess.CalledProcessError(
                result.returncode,
                result.command,
                result.stdout,
                result.stderr,
            )
        return result


def sha256_bytes(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


class LocalExecutor(Executor):
    """Executor that acts directly on the local host."""

    def run(
        self,
        command: Sequence[str],
        *,
        check: bool = True,
        mutable: bool = True,
        env: Optional[dict[str, str]] = None,
        cwd: Optional[PathLike] = None,
        timeout: Optional[float] = None,
    ) -> CommandResult:
        """Run ``command`` and optionally skip it during dry-runs."""

        cmd_list = list(command)
        if self.dry_run and mutable:
            return CommandResult(cmd_list, "", "skipped (dry-run)", 0)

        exec_env = None
        if env:
            exec_env = os.environ.copy()
            exec_env.update(env)

        limit = self._timeout_for(timeout)
        try:
            proc = subprocess.run(
                cmd_list,
                capture_output=True,
                text=True,
                check=False,
                env=exec_env,
                cwd=str(cwd) if cwd is not None else None,
                timeout=limit,
            )
        except subprocess.TimeoutExpired:
            raise TimeoutError(f"command timed out after {limit}s: {shlex.join(cmd_list)}") from None
        result = CommandResult(cmd_list, proc.stdout, proc.stderr, proc.returncode)
        if check:
            self._check_result(result)
        return result

    def read_file(self, path: PathLike) -> Optional[str]:
        try:
            return Path(path).read_text()
        except FileNotFoundError:
            return None

    def file_checksum(self, path: PathLike) -> Optional[str]:
        try:
            return sha256_bytes(Path(path).read_bytes())
        except (FileNotFoundError, IsADirectoryError):
            return None

    def file_mode(self, path: PathLike) -> Optional[int]:
        try:
            return stat.S_IMODE(Path(path).stat().st_mode)
        except FileNotFoundError:
            return None

    def path_exists(self, path: PathLike) -> bool:
        return Path(path).exists()

    def is_dir(self, path: PathLike) -> bool:
        return Path(path).is_dir()

    def copy_file(self, src: Path, dst: PathLike, *, mode: Optional[int] = None) -> None:
        target = Path(dst)
        target.parent.mkdir(parents=True, exist_ok=True)
        shutil.copyfile(src, target)
        if mode is not None:
            os.chmod(target, mode)

    def write_file(self, path: PathLike, *, content: str, mode: Optional[int] = None) -> None:
        target = Path(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(content)
        if mode is not None:
            os.chmod(target, mode)

    def ensure_directory(self, path: PathLike, *, mode: Optional[int] = None) -> None:
        target = Path(path)
        if target.exists() and not target.is_dir():
            self.remove_path(target)
        target.mkdir(parents=True, exist_ok=True)
        if mode is not None:
            os.chmod(target, mode)

    def chmod(self, path: PathLike, mode: int) -> None:
        os.chmod(path, mode)

    def remove_path(self, path: PathLike) -> bool:
        target = Path(path)
        if not target.exists() and not target.is_symlink():
            return False
        if target.is_dir() and not target.is_symlink():
            shutil.rmtree(target)
        else:
            target.unlink()
        return True


class SSHExecutor(Executor):
    """Executor that reaches a remote host through paramiko.

    Commands run over an exec channel, file primitives over SFTP. When the
    host variable ``become`` is true, commands are wrapped in ``sudo`` and
    uploads are staged in ``/tmp`` before being moved into place.
    """

    KEY_TYPES = (paramiko.Ed25519Key, paramiko.RSAKey, paramiko.ECDSAKey)

    def __init__(
        self,
        host: HostConfig,
        *,
        dry_run: bool = False,
        timeout: Optional[float] = None,
        connect_timeout: float = 10.0,
        host_key_policy: str = "auto-add",
        known_hosts: Optional[Path] = None,
        secret_resolver: Optional[SecretResolver] = None,
        client_factory: Callable[[], paramiko.SSHClient] = paramiko.SSHClient,
    ):
        super().__init__(host, dry_run=dry_run, timeout=timeout)
        self.connect_timeout = connect_timeout
        self.host_key_policy = host_key_policy
        self.known_hosts = known_hosts
        self.secret_resolver = secret_resolver or SecretResolver()
        self.client_factory = client_factory
        self.become = bool(host.variables.get("become", False))
        self._client: Optional[paramiko.SSHClient] = None
        self._sftp: Optional[paramiko.SFTPClient] = None
        self._broken = False

    # Connection ----------------------------------------------------------
    def connect(self) -> None:
        if self._broken:
            raise ConnectionError(f"connection to {self.host.name} is broken", host=self.host.name)
        if self._client is not None:
            return
        credential = self.secret_resolver.resolve_credential(self.host.credential)
        pkey = self._load_key(credential.key_file) if credential.key_file else None
        client = self.client_factory()
        if self.known_hosts is not None:
            client.load_host_keys(str(self.known_hosts))
        else:
            client.load_system_host_keys()
        client.set_missing_host_key_policy(self._missing_key_policy())
        logger.debug(
            "connecting host=%s address=%s port=%s user=%s",
            self.host.name,
            self.host.target,
            self.host.port,
            self.host.user,
        )
        try:
            client.connect(
                hostname=self.host.target,
                port=self.host.port,
                username=self.host.user,
                password=credential.password,
                pkey=pkey,
                timeout=self.connect_timeout,
                banner_timeout=self.connect_timeout,
                auth_timeout=self.connect_timeout,
                allow_agent=pkey is None and credential.password is None,
                look_for_keys=pkey is None and credential.password is None,
            )
        except (paramiko.SSHException, OSError, EOFError) as exc:
            client.close()
            raise ConnectionError(
                f"unable to connect to {self.host.user}@{self.host.target}:{self.host.port}: {exc}",
                host=self.host.name,
            ) from exc
        self._client = client

    def close(self) -> None:
        if self._sftp is not None:
            try:
                self._sftp.close()
            except (paramiko.SSHException, OSError):
                logger.debug("Unable to close sftp session for %s", self.host.name, exc_info=True)
            self._sftp = None
        if self._client is not None:
            self._client.close()
            self._client = None

    def _missing_key_policy(self) -> paramiko.MissingHostKeyPolicy:
        if self.host_key_policy == "reject":
            return paramiko.RejectPolicy()
        if self.host_key_policy == "warn":
            return paramiko.WarningPolicy()
        return paramiko.AutoAddPolicy()

    def _load_key(self, key_file: Path) -> paramiko.PKey:
        for key_cls in self.KEY_TYPES:
            try:
                return key_cls.from_private_key_file(str(key_file))
            except paramiko.SSHException:
                continue
        raise ConnectionError(f"unsupported private key format: {key_file}", host=self.host.name)

    def _require_client(self) -> paramiko.SSHClient:
        if self._broken:
            raise ConnectionError(f"connection to {self.host.name} is broken", host=self.host.name)
        if self._client is None:
            self.connect()
        assert self._client is not None
        return self._client

    def _mark_broken(self, exc: BaseException) -> ConnectionError:
        self._broken = True
        self.close()
        return ConnectionError(f"connection to {self.host.name} lost: {exc}", host=self.host.name)

    # Commands ------------------------------------------------------------
    def render_command(
        self,
        command: Sequence[str],
        *,
        env: Optional[dict[str, str]] = None,
        cwd: Optional[PathLike] = None,
    ) -> str:
        text = shlex.join(list(command))
        if env:
            assignments = " ".join(f"{key}={shlex.quote(value)}" for key, value in env.items())
            text = f"env {assignments} {text}"
        if cwd is not None:
            text = f"cd {shlex.quote(str(cwd))} && {text}"
        if self.become:
            text = f"sudo -n sh -c {shlex.quote(text)}"
        return text

    def run(
        self,
        command: Sequence[str],
        *,
        check: bool = True,
        mutable: bool = True,
        env: Optional[dict[str, str]] = None,
        cwd: Optional[PathLike] = None,
        timeout: Optional[float] = None,
    ) -> CommandResult:
        cmd_list = list(command)
        if self.dry_run and mutable:
            return CommandResult(cmd_list, "", "skipped (dry-run)", 0)

        client = self._require_client()
        text = self.render_command(cmd_list, env=env, cwd=cwd)
        limit = self._timeout_for(timeout)
        try:
            _, stdout, stderr = client.exec_command(text, timeout=limit)
            out = stdout.read().decode(errors="replace")
            err = stderr.read().decode(errors="replace")
            rc = stdout.channel.recv_exit_status()
        except socket.timeout:
            raise TimeoutError(f"command timed out after {limit}s: {text}") from None
        except (paramiko.SSHException, OSError, EOFError) as exc:
            raise self._mark_broken(exc) from exc
        result = CommandResult(cmd_list, out, err, rc)
        if check:
            self._check_result(result)
        return result

    # File primitives -----------------------------------------------------
    def _sftp_client(self) -> paramiko.SFTPClient:
        if self._sftp is None:
            client = self._require_client()
            try:
                self._sftp = client.open_sftp()
            except (paramiko.SSHException, OSError, EOFError) as exc:
                raise self._mark_broken(exc) from exc
        return self._sftp

    def _sftp_call(self, action: Callable[[paramiko.SFTPClient], T]) -> T:
        """Run ``action`` on the SFTP session; transport errors break the connection."""
        client = self._sftp_client()
        try:
            return action(client)
        except (FileNotFoundError, PermissionError):
            raise
        except (paramiko.SSHException, OSError, EOFError) as exc:
            raise self._mark_broken(exc) from exc

    def _stat(self, path: PathLike) -> Optional[paramiko.SFTPAttributes]:
        try:
            return self._sftp_call(lambda sftp: sftp.stat(str(path)))
        except (FileNotFoundError, PermissionError):
            return None

    def read_file(self, path: PathLike) -> Optional[str]:
        result = self.run(["cat", "--", str(path)], check=False, mutable=False)
        if result.returncode != 0:
            return None
        return result.stdout

    def file_checksum(self, path: PathLike) -> Optional[str]:
        result = self.run(["sha256sum", "--", str(path)], check=False, mutable=False)
        if result.returncode != 0 or not result.stdout.strip():
            return None
        return result.stdout.split()[0].lower()

    def file_mode(self, path: PathLike) -> Optional[int]:
        attrs = self._stat(path)
        if attrs is None or attrs.st_mode is None:
            return None
        return stat.S_IMODE(attrs.st_mode)

    def path_exists(self, path: PathLike) -> bool:
        return self._stat(path) is not None

    def is_dir(self, path: PathLike) -> bool:
        attrs = self._stat(path)
        return attrs is not None and attrs.st_mode is not None and stat.S_ISDIR(attrs.st_mode)

    def copy_file(self, src: Path, dst: PathLike, *, mode: Optional[int] = None) -> None:
        target = str(dst)
        self.run(["mkdir", "-p", "--", str(PurePosixPath(target).parent)])
        staging = self._staging_path() if self.become else target
        self._sftp_call(lambda sftp: sftp.put(str(src), staging))
        self._finish_upload(staging, target, mode)

    def write_file(self, path: PathLike, *, content: str, mode: Optional[int] = None) -> None:
        target = str(path)
        self.run(["mkdir", "-p", "--", str(PurePosixPath(target).parent)])
        staging = self._staging_path() if self.become else target

        def upload(sftp: paramiko.SFTPClient) -> None:
            with sftp.open(staging, "w") as handle:
                handle.write(content)

        self._sftp_call(upload)
        self._finish_upload(staging, target, mode)

    def ensure_directory(self, path: PathLike, *, mode: Optional[int] = None) -> None:
        target = str(path)
        if self.path_exists(target) and not self.is_dir(target):
            self.remove_path(target)
        self.run(["mkdir", "-p", "--", target])
        if mode is not None:
            self.chmod(target, mode)

    def chmod(self, path: PathLike, mode: int) -> None:
        self.run(["chmod", f"{mode:04o}", "--", str(path)])

    def remove_path(self, path: PathLike) -> bool:
        target = str(path)
        if not self.path_exists(target):
            return False
        self.run(["rm", "-rf", "--", target])
        return True

    def _staging_path(self) -> str:
        return f"/tmp/.marionette.upload.{uuid.uuid4().hex}"

    def _finish_upload(self, staging: str, target: str, mode: Optional[int]) -> None:
        if staging != target:
            self.run(["mv", "-f", "--", staging, target])
        if mode is not None:
            self.chmod(target, mode)


def executor_for(
    host: HostConfig,
    *,
    dry_run: bool = False,
    timeout: Optional[float] = None,
    connect_timeout: float = 10.0,
    host_key_policy: str = "auto-add",
    known_hosts: Optional[Path] = None,
    secret_resolver: Optional[SecretResolver] = None,
) -> Executor:
    if host.connection == "local":
        return LocalExecutor(host, dry_run=dry_run, timeout=timeout)
    if host.connection == "ssh":
        return SSHExecutor(
            host,
            dry_run=dry_run,
            timeout=timeout,
            connect_timeout=connect_timeout,
            host_key_policy=host_key_policy,
            known_hosts=known_hosts,
            secret_resolver=secret_resolver,
        )
    raise ValueError(f"Unknown connection type '{host.connection}'")
