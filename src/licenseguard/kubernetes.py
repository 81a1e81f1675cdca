"""Kubernetes-backed secret store and cluster identity.

Talks to the Kubernetes REST API directly over :mod:`requests`.  Inside a
pod, :meth:`KubernetesClient.from_in_cluster` picks up the API server
address from ``KUBERNETES_SERVICE_HOST``/``KUBERNETES_SERVICE_PORT`` and
the service account token and CA bundle mounted under
``/var/run/secrets/kubernetes.io/serviceaccount``.

The license lives in an ``Opaque`` secret with two data keys,
``user-id`` and ``key``, labelled so it can be found by selector.  The
cluster UUID is the UID of the ``kube-system`` namespace, which is
created once per cluster and never changes.
"""

from __future__ import annotations

import base64
import binascii
import logging
import os
import time
from pathlib import Path
from typing import Any, Optional
from urllib.parse import quote

import requests
from requests.exceptions import ConnectionError, RequestException, Timeout

from licenseguard.errors import ClusterIdentityUnavailable, SecretStoreError
from licenseguard.models import RawLicense
from licenseguard.sources import ClusterIdentitySource, SecretStore

logger = logging.getLogger(__name__)

SERVICE_ACCOUNT_DIR = Path("/var/run/secrets/kubernetes.io/serviceaccount")

_USER_ID_FIELD = "user-id"
_KEY_FIELD = "key"


class KubernetesError(Exception):
    """A Kubernetes API call failed."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


def parse_label_selector(selector: str) -> dict[str, str]:
    """Turn ``"a=b,c=d"`` into ``{"a": "b", "c": "d"}``."""
    labels: dict[str, str] = {}
    for term in selector.split(","):
        term = term.strip()
        if not term:
            continue
        name, sep, value = term.partition("=")
        if not sep or not name.strip():
            raise ValueError(f"unsupported label selector term: {term!r}")
        labels[name.strip()] = value.strip()
    return labels


class KubernetesClient:
    """Minimal Kubernetes REST client with retry on transient failures.

    Args:
        host: API server base URL (e.g. ``https://10.0.0.1:443``).
        token: Bearer token for authentication.
        ca_cert: Path to the CA bundle, or ``None`` to use system CAs.
        timeout: Request timeout in seconds.
        retries: Maximum attempts for connection errors, timeouts and
            HTTP 502/503/504.
    """

    _RETRYABLE_STATUS_CODES = {502, 503, 504}

    def __init__(
        self,
        host: str,
        token: str = "",
        *,
        ca_cert: str | None = None,
        timeout: float = 10,
        retries: int = 3,
    ) -> None:
        self.host = host.rstrip("/")
        self.timeout = timeout
        self.retries = max(1, retries)
        self._session = requests.Session()
        if token:
            self._session.headers.update({"Authorization": f"Bearer {token}"})
        if ca_cert:
            self._session.verify = ca_cert

    @classmethod
    def from_in_cluster(
        cls,
        *,
        token_path: Path | None = None,
        ca_path: Path | None = None,
        host: str | None = None,
        timeout: float = 10,
        retries: int = 3,
    ) -> KubernetesClient:
        """Build a client from the pod's service account."""
        if host is None:
            service_host = os.environ.get("KUBERNETES_SERVICE_HOST", "")
            service_port = os.environ.get("KUBERNETES_SERVICE_PORT", "443")
            if not service_host:
                raise KubernetesError("not running in a cluster: KUBERNETES_SERVICE_HOST is not set")
            if ":" in service_host:
                service_host = f"[{service_host}]"
            host = f"https://{service_host}:{service_port}"

        token_path = token_path or SERVICE_ACCOUNT_DIR / "token"
        ca_path = ca_path or SERVICE_ACCOUNT_DIR / "ca.crt"
        try:
            token = token_path.read_text(encoding="utf-8").strip()
        except OSError as exc:
            raise KubernetesError(f"cannot read service account token {token_path}: {exc}") from exc

        return cls(
            host,
            token,
            ca_cert=str(ca_path) if ca_path.is_file() else None,
            timeout=timeout,
            retries=retries,
        )

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _url(self, path: str) -> str:
        return f"{self.host}{path}"

    @staticmethod
    def _describe(response: requests.Response) -> str:
        try:
            body = response.json()
            return str(body.get("message") or response.text)
        except (ValueError, AttributeError):
            return response.text or response.reason or ""

    def _request(
        self,
        method: str,
        path: str,
        *,
        json: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Execute a request, retrying transient failures with exponential backoff."""
        url = self._url(path)
        last_error: KubernetesError | None = None

        for attempt in range(self.retries):
            try:
                response = self._session.request(
                    method,
                    url,
                    json=json,
                    params=params,
                    timeout=self.timeout,
                )
                if response.ok:
                    if not response.content:
                        return {}
                    try:
                        return response.json()
                    except ValueError:
                        return {}

                error = KubernetesError(
                    f"{method} {path} failed with HTTP {response.status_code}: {self._describe(response)}",
                    status_code=response.status_code,
                )
                if response.status_code not in self._RETRYABLE_STATUS_CODES:
                    raise error
                last_error = error

            except Timeout:
                last_error = KubernetesError(
                    f"request to {url} timed out after {self.timeout}s (attempt {attempt + 1}/{self.retries})"
                )
            except ConnectionError:
                last_error = KubernetesError(
                    f"could not connect to {self.host} (attempt {attempt + 1}/{self.retries})"
                )
            except RequestException as exc:
                raise KubernetesError(f"request error: {exc}") from exc

            if attempt < self.retries - 1:
                time.sleep(2**attempt)

        assert last_error is not None
        raise last_error

    # ------------------------------------------------------------------
    # Resources
    # ------------------------------------------------------------------

    def get_namespace(self, name: str) -> dict[str, Any]:
        return self._request("GET", f"/api/v1/namespaces/{quote(name, safe='')}")

    def list_secrets(self, namespace: str, label_selector: str = "") -> list[dict[str, Any]]:
        params = {"labelSelector": label_selector} if label_selector else None
        body = self._request("GET", f"/api/v1/namespaces/{quote(namespace, safe='')}/secrets", params=params)
        return list(body.get("items") or [])

    def create_secret(self, namespace: str, manifest: dict[str, Any]) -> dict[str, Any]:
        return self._request("POST", f"/api/v1/namespaces/{quote(namespace, safe='')}/secrets", json=manifest)

    def replace_secret(self, namespace: str, name: str, manifest: dict[str, Any]) -> dict[str, Any]:
        return self._request(
            "PUT",
            f"/api/v1/namespaces/{quote(namespace, safe='')}/secrets/{quote(name, safe='')}",
            json=manifest,
        )

    def delete_secret(self, namespace: str, name: str) -> bool:
        """Delete a secret.  Returns False if it did not exist."""
        try:
            self._request("DELETE", f"/api/v1/namespaces/{quote(namespace, safe='')}/secrets/{quote(name, safe='')}")
        except KubernetesError as exc:
            if exc.status_code == 404:
                return False
            raise
        return True


# ---------------------------------------------------------------------------
# Adapters
# ---------------------------------------------------------------------------


def _b64(value: str) -> str:
    return base64.b64encode(value.encode("utf-8")).decode("ascii")


def _unb64(value: str) -> str:
    return base64.b64decode(value, validate=True).decode("utf-8")


class KubernetesSecretStore(SecretStore):
    """Stores the license in a labelled Kubernetes secret."""

    def __init__(
        self,
        client: KubernetesClient,
        *,
        namespace: str,
        secret_name: str,
        label_selector: str,
    ) -> None:
        self._client = client
        self._namespace = namespace
        self._secret_name = secret_name
        self._label_selector = label_selector
        self._labels = parse_label_selector(label_selector)

    def _manifest(self, subject_id: str, encrypted_key: str) -> dict[str, Any]:
        return {
            "apiVersion": "v1",
            "kind": "Secret",
            "metadata": {
                "name": self._secret_name,
                "namespace": self._namespace,
                "labels": dict(self._labels),
            },
            "type": "Opaque",
            "data": {
                _USER_ID_FIELD: _b64(subject_id),
                _KEY_FIELD: _b64(encrypted_key),
            },
        }

    def get_raw_license(self) -> Optional[RawLicense]:
        try:
            items = self._client.list_secrets(self._namespace, self._label_selector)
        except KubernetesError as exc:
            raise SecretStoreError(f"error fetching license secret: {exc}", cause=exc) from exc

        for item in items:
            if (item.get("metadata") or {}).get("name") != self._secret_name:
                continue
            data = item.get("data") or {}
            try:
                subject_id = _unb64(data.get(_USER_ID_FIELD) or "")
                encrypted_key = _unb64(data.get(_KEY_FIELD) or "")
            except (binascii.Error, ValueError) as exc:
                raise SecretStoreError(f"license secret {self._secret_name} is not valid base64", cause=exc) from exc
            return RawLicense(subject_id=subject_id, encrypted_key=encrypted_key)
        return None

    def put_raw_license(self, subject_id: str, encrypted_key: str) -> None:
        manifest = self._manifest(subject_id, encrypted_key)
        try:
            try:
                secret = self._client.create_secret(self._namespace, manifest)
            except KubernetesError as exc:
                if exc.status_code != 409:
                    raise
                # Already exists: overwrite in place.
                secret = self._client.replace_secret(self._namespace, self._secret_name, manifest)
        except KubernetesError as exc:
            raise SecretStoreError(f"error creating license secret: {exc}", cause=exc) from exc

        metadata = secret.get("metadata") or {}
        logger.info(
            "Stored license secret %s/%s (uid %s)",
            self._namespace,
            metadata.get("name", self._secret_name),
            metadata.get("uid", "?"),
        )

    def delete_raw_license(self) -> None:
        try:
            existed = self._client.delete_secret(self._namespace, self._secret_name)
        except KubernetesError as exc:
            raise SecretStoreError(f"error deleting license secret: {exc}", cause=exc) from exc
        if not existed:
            logger.debug("License secret %s/%s was already absent", self._namespace, self._secret_name)


class KubeSystemIdentity(ClusterIdentitySource):
    """Cluster UUID from the UID of the ``kube-system`` namespace."""

    def __init__(self, client: KubernetesClient, namespace: str = "kube-system") -> None:
        self._client = client
        self._namespace = namespace

    def get_cluster_uuid(self) -> str:
        try:
            body = self._client.get_namespace(self._namespace)
        except KubernetesError as exc:
            raise ClusterIdentityUnavailable(
                f"error fetching uid of {self._namespace} namespace: {exc}", cause=exc
            ) from exc
        uid = (body.get("metadata") or {}).get("uid")
        if not uid:
            raise ClusterIdentityUnavailable(f"{self._namespace} namespace has no uid")
        return uid
