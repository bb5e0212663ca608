from __future__ import annotations

import base64
import json
import os
import threading
from dataclasses import dataclass, field
from typing import Any, Optional

try:  # pragma: no cover
    import boto3  # type: ignore
except Exception:  # pragma: no cover
    boto3 = None

from .errors import CredentialUnavailable


@dataclass(frozen=True)
class Credentials:
    username: str
    password: str = field(repr=False)


class CredentialStore:
    """Resolves credential references without storing secrets on targets.

    Supported references:

    * ``env:PREFIX`` reads ``PREFIX_USERNAME`` and ``PREFIX_PASSWORD``.
    * ``aws:SECRET_ID`` reads a JSON secret with ``username``/``password``
      keys from AWS Secrets Manager.

    Action parameters may embed ``{"credential": ref, "key": "password"}``
    mappings which :meth:`resolve_params` replaces with the selected field.
    """

    def __init__(self, environ: Optional[dict[str, str]] = None):
        self._environ = environ
        self._cache: dict[str, dict[str, str]] = {}
        self._lock = threading.Lock()

    def resolve(self, reference: str) -> Credentials:
        payload = self._lookup(reference)
        username = payload.get("username")
        password = payload.get("password")
        if not username or password is None:
            raise CredentialUnavailable(reference, "username and password are required")
        return Credentials(username=str(username), password=str(password))

    def resolve_params(self, values: dict[str, Any]) -> dict[str, Any]:
        return {k: self._resolve_value(v) for k, v in values.items()}

    def _resolve_value(self, value: Any) -> Any:
        if isinstance(value, dict):
            if "credential" in value:
                return self._resolve_field(value)
            return {k: self._resolve_value(v) for k, v in value.items()}
        if isinstance(value, list):
            return [self._resolve_value(v) for v in value]
        return value

    def _resolve_field(self, spec: dict[str, Any]) -> str:
        reference = str(spec["credential"])
        key = str(spec.get("key", "password"))
        payload = self._lookup(reference)
        if key not in payload:
            raise CredentialUnavailable(reference, f"missing field '{key}'")
        return str(payload[key])

    def _lookup(self, reference: str) -> dict[str, str]:
        with self._lock:
            cached = self._cache.get(reference)
        if cached is not None:
            return cached
        scheme, sep, name = reference.partition(":")
        if not sep or not name:
            raise CredentialUnavailable(reference, "expected '<scheme>:<name>'")
        if scheme == "env":
            payload = self._from_env(reference, name)
        elif scheme == "aws":
            payload = self._from_aws(reference, name)
        else:
            raise CredentialUnavailable(reference, f"unknown scheme '{scheme}'")
        with self._lock:
            self._cache[reference] = payload
        return payload

    def _from_env(self, reference: str, prefix: str) -> dict[str, str]:
        environ = self._environ if self._environ is not None else os.environ
        prefix = prefix.upper()
        username = environ.get(f"{prefix}_USERNAME")
        password = environ.get(f"{prefix}_PASSWORD")
        if username is None and password is None:
            raise CredentialUnavailable(reference, f"{prefix}_USERNAME/{prefix}_PASSWORD not set")
        payload: dict[str, str] = {}
        if username is not None:
            payload["username"] = username
        if password is not None:
            payload["password"] = password
        return payload

    def _from_aws(self, reference: str, name: str) -> dict[str, str]:
        if boto3 is None:
            raise CredentialUnavailable(reference, "boto3 is required to resolve aws references")
        try:
            client = boto3.client("secretsmanager")
            response = client.get_secret_value(SecretId=name)
        except Exception as exc:  # noqa: BLE001
            raise CredentialUnavailable(reference, type(exc).__name__) from None
        secret_str = response.get("SecretString")
        if secret_str is None:
            binary = response.get("SecretBinary")
            if binary is None:
                raise CredentialUnavailable(reference, "secret has no SecretString or SecretBinary")
            secret_str = base64.b64decode(binary).decode()
        try:
            payload = json.loads(secret_str)
        except json.JSONDecodeError:
            raise CredentialUnavailable(reference, "secret is not a JSON object") from None
        if not isinstance(payload, dict):
            raise CredentialUnavailable(reference, "secret is not a JSON object")
        return {str(k): str(v) for k, v in payload.items()}
