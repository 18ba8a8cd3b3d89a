from __future__ import annotations

import base64
import json
import os
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

try:  # pragma: no cover
    import boto3  # type: ignore
except Exception:  # pragma: no cover
    boto3 = None


@dataclass(frozen=True)
class Credential:
    """Resolved authentication material for one host."""

    password: Optional[str] = None
    key_file: Optional[Path] = None


class SecretResolver:
    """Resolves secret references in variable mappings and host credentials."""

    def __init__(self):
        self._cache: dict[str, str] = {}
        self._lock = threading.Lock()

    def resolve(self, values: dict[str, Any]) -> dict[str, Any]:
        return {k: self._resolve_value(v) for k, v in values.items()}

    def resolve_credential(self, reference: Any) -> Credential:
        if reference is None:
            return Credential()
        if isinstance(reference, (str, Path)):
            return Credential(key_file=Path(reference).expanduser())
        if not isinstance(reference, dict):
            raise ValueError("credential must be a key path or a mapping")
        if "key_file" in reference:
            return Credential(key_file=Path(str(reference["key_file"])).expanduser())
        if "password" in reference:
            password = self._resolve_value(reference["password"])
            return Credential(password=str(password))
        password = self._resolve_value(reference)
        if isinstance(password, dict):
            raise ValueError(f"unsupported credential reference: {sorted(reference)}")
        return Credential(password=str(password))

    def _resolve_value(self, value: Any) -> Any:
        if isinstance(value, dict):
            if "aws_secret" in value:
                return self._resolve_aws_secret(value)
            if "env" in value and len(value) == 1:
                return self._resolve_env(str(value["env"]))
            return {k: self._resolve_value(v) for k, v in value.items()}
        if isinstance(value, list):
            return [self._resolve_value(v) for v in value]
        return value

    @staticmethod
    def _resolve_env(name: str) -> str:
        try:
            return os.environ[name]
        except KeyError:
            raise ValueError(f"environment variable {name} is not set") from None

    def _resolve_aws_secret(self, reference: dict[str, Any]) -> Any:
        name = str(reference["aws_secret"])
        with self._lock:
            secret = self._cache.get(name)
        if secret is None:
            secret = fetch_aws_secret(name)
            with self._lock:
                self._cache[name] = secret
        key = reference.get("key")
        return secret if key is None else _field(secret, str(key))


def fetch_aws_secret(name: str) -> str:
    """Read one secret from AWS Secrets Manager as text."""
    if boto3 is None:
        raise RuntimeError("boto3 is required to resolve aws_secret references")
    response = boto3.client("secretsmanager").get_secret_value(SecretId=name)
    if response.get("SecretString") is not None:
        return response["SecretString"]
    if response.get("SecretBinary") is None:
        raise RuntimeError(f"Secret {name} has no SecretString or SecretBinary")
    return base64.b64decode(response["SecretBinary"]).decode()


def _field(secret: str, key: str) -> Any:
    """Pick ``key`` out of a JSON secret; plaintext secrets are returned whole."""
    try:
        payload = json.loads(secret)
    except json.JSONDecodeError:
        return secret
    return payload[key] if isinstance(payload, dict) else secret
